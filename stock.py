"""
Stock decrement for paid orders.

An order's stock is reduced at most once. The ``stock_reduced`` flag is
claimed with a single conditional write (paid and not yet reduced), so
duplicate webhooks, polling and manual retries racing on the same order
cannot decrement twice. Items are then processed one by one; a failed
item is reported and the rest still go through.

The claim stamps ``stock_reduction_started_at`` and the end of the item
loop stamps ``stock_reduction_completed_at`` with the per-item errors. An
order claimed but never completed (the process died in between) is not
retried automatically, since some of its items may already be decremented;
stalled_reductions() lists such orders for manual correction.
"""
import logging
from dataclasses import asdict, dataclass, field
from datetime import timedelta, timezone
from typing import Any, Dict, List, Optional, Tuple

from bson import ObjectId
from bson.errors import InvalidId
from pymongo import ReturnDocument
from pymongo.database import Database
from pymongo.errors import PyMongoError

import catalog
from database import now

logger = logging.getLogger(__name__)

MAX_WRITE_ATTEMPTS = 5


class StockWriteConflict(Exception):
    pass


@dataclass
class ItemStockResult:
    product_id: str
    success: bool
    name: Optional[str] = None
    color: Optional[str] = None
    quantity: int = 0
    original_stock: Optional[int] = None
    new_stock: Optional[int] = None
    shortfall: int = 0
    error: Optional[str] = None


@dataclass
class StockReductionResult:
    order_number: str
    applied: bool
    items: List[ItemStockResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return all(item.success for item in self.items)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "order_number": self.order_number,
            "applied": self.applied,
            "success": self.success,
            "items": [asdict(item) for item in self.items],
        }


def claim_order(db: Database, order_number: str) -> Optional[Dict[str, Any]]:
    """Flip stock_reduced for a paid order. Returns the order if this caller won the claim."""
    stamp = now()
    return db["order"].find_one_and_update(
        {"order_number": order_number, "payment_status": "paid", "stock_reduced": False},
        {"$set": {"stock_reduced": True, "stock_reduction_started_at": stamp, "updated_at": stamp}},
        return_document=ReturnDocument.AFTER,
    )


def _counter_path(index: Optional[int]) -> str:
    if index is None:
        return "stock_quantity"
    return f"frame_color_variants.{index}.stock_quantity"


def _read_counter(product: Dict[str, Any], index: Optional[int]) -> int:
    if index is None:
        return int(product.get("stock_quantity") or 0)
    return int(product["frame_color_variants"][index].get("stock_quantity") or 0)


def _take(db: Database, product_id: ObjectId, index: Optional[int], quantity: int) -> Tuple[int, int]:
    """
    Remove up to ``quantity`` units from one counter, never going below zero.
    Compare-and-set on the value read; returns (before, after).
    """
    path = _counter_path(index)
    for _ in range(MAX_WRITE_ATTEMPTS):
        product = db["product"].find_one({"_id": product_id})
        if product is None:
            raise LookupError("Product not found")
        before = _read_counter(product, index)
        after = max(before - quantity, 0)
        res = db["product"].update_one(
            {"_id": product_id, path: before},
            {"$set": {path: after, "updated_at": now()}},
        )
        if res.matched_count == 1:
            return before, after
        logger.debug("Stock write conflict on %s %s, retrying", product_id, path)
    raise StockWriteConflict(f"Could not update {path} for {product_id}")


def _refresh_in_stock(db: Database, product_id: ObjectId):
    product = db["product"].find_one({"_id": product_id})
    if product is not None:
        db["product"].update_one({"_id": product_id}, {"$set": catalog.in_stock_fields(product)})


def reduce_item(db: Database, item: Dict[str, Any]) -> ItemStockResult:
    product_id = item.get("product_id") or ""
    quantity = int(item.get("quantity") or 0)
    color = item.get("color")
    result = ItemStockResult(product_id=product_id, success=False, name=item.get("name"), color=color,
                             quantity=quantity)

    try:
        oid = ObjectId(product_id)
    except (InvalidId, TypeError):
        oid = None
    product = db["product"].find_one({"_id": oid}) if oid is not None else None
    if product is None:
        logger.error("Product not found while reducing stock: %s", product_id)
        result.error = "Product not found"
        return result

    try:
        if catalog.uses_variants(product):
            variants = product.get("frame_color_variants") or []
            if not variants:
                result.error = f"No color variants found for {product.get('name')}"
                return result
            if color:
                index = catalog.find_variant_index(product, color)
                if index is None:
                    result.error = f"Color variant '{color}' not found for {product.get('name')}"
                    return result
                before, after = _take(db, oid, index, quantity)
                result.original_stock, result.new_stock = before, after
                result.shortfall = quantity - (before - after)
            else:
                # no color recorded: drain variants in listed order
                result.original_stock = catalog.available_stock(product)
                remaining = quantity
                for index in range(len(variants)):
                    if remaining <= 0:
                        break
                    before, after = _take(db, oid, index, remaining)
                    remaining -= before - after
                result.shortfall = remaining
                result.new_stock = catalog.available_stock(db["product"].find_one({"_id": oid}))
        else:
            before, after = _take(db, oid, None, quantity)
            result.original_stock, result.new_stock = before, after
            result.shortfall = quantity - (before - after)
        _refresh_in_stock(db, oid)
    except (LookupError, StockWriteConflict, PyMongoError) as e:
        logger.exception("Failed to reduce stock for product %s", product_id)
        result.error = str(e)
        return result

    if result.shortfall > 0:
        logger.warning(
            "Stock anomaly: %s %s short by %d units (ordered %d), counter clamped at zero",
            product.get("name"), color or "", result.shortfall, quantity,
        )
    result.success = True
    logger.info("Stock for %s %s: %s -> %s", product.get("name"), color or "", result.original_stock, result.new_stock)
    return result


def reduce_stock(db: Database, order_number: str) -> StockReductionResult:
    order = claim_order(db, order_number)
    if order is None:
        logger.info("Stock already reduced or order %s not paid, nothing to do", order_number)
        return StockReductionResult(order_number=order_number, applied=False)

    logger.info("Reducing stock for order %s (%d items)", order_number, len(order.get("items", [])))
    items = [reduce_item(db, item) for item in order.get("items", [])]
    result = StockReductionResult(order_number=order_number, applied=True, items=items)
    errors = [{"product_id": i.product_id, "color": i.color, "error": i.error} for i in items if not i.success]
    db["order"].update_one(
        {"order_number": order_number},
        {"$set": {"stock_reduction_completed_at": now(), "stock_reduction_errors": errors}},
    )
    if not result.success:
        logger.warning("Stock reduction for order %s finished with failures", order_number)
    return result


def stalled_reductions(db: Database, older_than: timedelta = timedelta(minutes=10)) -> List[Dict[str, Any]]:
    """Orders whose stock claim was taken but whose item loop never finished."""
    cutoff = now() - older_than
    stalled = []
    for order in db["order"].find({
        "stock_reduction_started_at": {"$exists": True},
        "stock_reduction_completed_at": {"$exists": False},
    }):
        started = order["stock_reduction_started_at"]
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        if started <= cutoff:
            stalled.append({"order_number": order["order_number"], "started_at": started})
    return stalled
