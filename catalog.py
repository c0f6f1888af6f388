"""
Product catalog: availability rules, slugs, pricing lookups and admin stock
adjustments over the ``product`` collection.
"""
import logging
import re
from typing import Any, Dict, List, Optional

from bson import ObjectId
from bson.errors import InvalidId
from pymongo.database import Database

from database import get_documents, now
from schemas import VARIANT_PRODUCT_TYPES

logger = logging.getLogger(__name__)

PRICE_RANGE_TYPES = ("glasses", "sunglasses", "contacts", "accessory")


def normalize_color(color: Optional[str]) -> str:
    return (color or "").strip().casefold()


def uses_variants(product: Dict[str, Any]) -> bool:
    return product.get("product_type") in VARIANT_PRODUCT_TYPES


def find_variant_index(product: Dict[str, Any], color: Optional[str]) -> Optional[int]:
    wanted = normalize_color(color)
    for idx, variant in enumerate(product.get("frame_color_variants") or []):
        if normalize_color(variant.get("color")) == wanted:
            return idx
    return None


def available_stock(product: Dict[str, Any], color: Optional[str] = None) -> int:
    """Units that can be sold, for one color or for the whole product."""
    if uses_variants(product):
        variants = product.get("frame_color_variants") or []
        if color:
            idx = find_variant_index(product, color)
            if idx is None:
                return 0
            return int(variants[idx].get("stock_quantity") or 0)
        return sum(int(v.get("stock_quantity") or 0) for v in variants)
    return int(product.get("stock_quantity") or 0)


def is_purchasable(product: Dict[str, Any], color: Optional[str] = None) -> bool:
    return product.get("status", "active") == "active" and available_stock(product, color) > 0


def in_stock_fields(product: Dict[str, Any]) -> Dict[str, Any]:
    return {"in_stock": available_stock(product) > 0}


def load_product(db: Database, product_id: str) -> Optional[Dict[str, Any]]:
    try:
        oid = ObjectId(product_id)
    except (InvalidId, TypeError):
        return None
    return db["product"].find_one({"_id": oid})


def slugify(text: str) -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", text.lower()).strip("-")
    return slug or "product"


def unique_slug(db: Database, name: str, exclude_id: Optional[ObjectId] = None) -> str:
    base = slugify(name)
    candidate = base
    counter = 1
    while True:
        query: Dict[str, Any] = {"slug": candidate}
        if exclude_id is not None:
            query["_id"] = {"$ne": exclude_id}
        if db["product"].find_one(query, {"_id": 1}) is None:
            return candidate
        candidate = f"{base}-{counter}"
        counter += 1


def list_products(db: Database, product_type: Optional[str] = None, status: Optional[str] = None,
                  q: Optional[str] = None) -> List[Dict[str, Any]]:
    query: Dict[str, Any] = {}
    if product_type:
        query["product_type"] = product_type
    if status:
        query["status"] = status
    if q:
        pattern = re.escape(q)
        query["$or"] = [
            {"name": {"$regex": pattern, "$options": "i"}},
            {"description": {"$regex": pattern, "$options": "i"}},
            {"brand": {"$regex": pattern, "$options": "i"}},
        ]
    return list(db["product"].find(query).sort([("created_at", -1)]))


def _price_summary(doc: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    if not doc:
        return None
    return {"id": str(doc["_id"]), "name": doc.get("name"), "slug": doc.get("slug"), "price": doc.get("price")}


def price_range(db: Database, product_type: str) -> Dict[str, Any]:
    base = {"status": "active", "product_type": product_type}
    lowest = db["product"].find_one({**base, "price": {"$gt": 0}}, sort=[("price", 1)])
    highest = db["product"].find_one(base, sort=[("price", -1)])
    return {"lowest": _price_summary(lowest), "highest": _price_summary(highest)}


def price_ranges(db: Database) -> Dict[str, Any]:
    return {product_type: price_range(db, product_type) for product_type in PRICE_RANGE_TYPES}


def low_stock_products(db: Database, threshold: int = 5) -> List[Dict[str, Any]]:
    result = []
    for product in get_documents("product", {"status": "active"}, database=db):
        stock = available_stock(product)
        if stock <= threshold:
            result.append({"id": str(product["_id"]), "name": product.get("name"), "stock": stock})
    return result


def adjust_stock(db: Database, product: Dict[str, Any], color: Optional[str] = None,
                 quantity: Optional[int] = None, delta: Optional[int] = None) -> Dict[str, Any]:
    """
    Admin stock correction. Either sets a counter to ``quantity`` or moves it by
    ``delta``; the result never drops below zero. Returns the updated product.
    """
    if (quantity is None) == (delta is None):
        raise ValueError("Provide exactly one of quantity or delta")

    if uses_variants(product):
        idx = find_variant_index(product, color) if color else None
        if idx is None:
            raise ValueError(f"Color variant '{color}' not found for {product.get('name')}")
        field = f"frame_color_variants.{idx}.stock_quantity"
        current = int(product["frame_color_variants"][idx].get("stock_quantity") or 0)
    else:
        field = "stock_quantity"
        current = int(product.get("stock_quantity") or 0)

    new_value = quantity if quantity is not None else current + delta
    if new_value < 0:
        logger.warning("Stock adjustment for %s would go negative (%s), clamping to 0", product["_id"], new_value)
        new_value = 0

    db["product"].update_one({"_id": product["_id"]}, {"$set": {field: new_value, "updated_at": now()}})
    updated = db["product"].find_one({"_id": product["_id"]})
    db["product"].update_one({"_id": product["_id"]}, {"$set": in_stock_fields(updated)})
    logger.info("Stock for %s %s set %s -> %s", product.get("name"), color or "", current, new_value)
    return db["product"].find_one({"_id": product["_id"]})
