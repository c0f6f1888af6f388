"""
Checkout session initiation.

Validates every cart line against live stock, opens a Stripe Checkout
session and records a pending order keyed by the session id. Nothing is
reserved or decremented here; stock moves only once payment is confirmed.
"""
import logging
from collections import OrderedDict
from typing import Any, Dict, List, Optional, Tuple

from pymongo.database import Database

import catalog
import orders
from errors import CheckoutFailedError, EmptyCartError, InsufficientStockError, ProductNotFoundError, StoreError
from payments import StripeGateway
from promotions import best_price
from schemas import CheckoutItem, OrderItem

logger = logging.getLogger(__name__)


def _load_products(db: Database, items: List[CheckoutItem]) -> Dict[str, Dict[str, Any]]:
    products: Dict[str, Dict[str, Any]] = {}
    for item in items:
        if item.product_id in products:
            continue
        product = catalog.load_product(db, item.product_id)
        if not product or product.get("status", "active") != "active":
            raise ProductNotFoundError(item.product_id)
        products[item.product_id] = product
    return products


def check_stock(products: Dict[str, Dict[str, Any]], items: List[CheckoutItem]):
    """Raise InsufficientStockError for the first line the catalog cannot cover."""
    requested: "OrderedDict[Tuple[str, str], int]" = OrderedDict()
    colors: Dict[Tuple[str, str], Optional[str]] = {}
    for item in items:
        product = products[item.product_id]
        color_key = catalog.normalize_color(item.color) if catalog.uses_variants(product) else ""
        key = (item.product_id, color_key)
        requested[key] = requested.get(key, 0) + item.quantity
        colors.setdefault(key, item.color if color_key else None)

    per_product: "OrderedDict[str, int]" = OrderedDict()
    for key, quantity in requested.items():
        product = products[key[0]]
        color = colors[key]
        available = catalog.available_stock(product, color)
        if available < quantity:
            raise InsufficientStockError(product.get("name", key[0]), color, available, quantity)
        per_product[key[0]] = per_product.get(key[0], 0) + quantity

    # colored and color-less lines for one frame draw on the same variant counters
    for product_id, quantity in per_product.items():
        product = products[product_id]
        if not catalog.uses_variants(product):
            continue
        available = catalog.available_stock(product)
        if available < quantity:
            raise InsufficientStockError(product.get("name", product_id), None, available, quantity)


def snapshot_item(product: Dict[str, Any], item: CheckoutItem, pricing) -> OrderItem:
    price = best_price(product, pricing)
    color = item.color
    image = product.get("image_url")
    if catalog.uses_variants(product) and item.color:
        idx = catalog.find_variant_index(product, item.color)
        if idx is not None:
            variant = product["frame_color_variants"][idx]
            color = variant.get("color")
            image = (variant.get("images") or [image])[0]
    return OrderItem(
        product_id=str(product["_id"]),
        name=product.get("name", ""),
        price=price["price"],
        quantity=item.quantity,
        color=color,
        image_url=image,
        product_type=product.get("product_type"),
        original_price=price["original_price"],
        is_promotional=price["is_promotional"],
    )


def initiate_checkout(db: Database, gateway: StripeGateway, items: List[CheckoutItem], origin: str,
                      pricing=None, user_id: Optional[str] = None, currency: str = "aud") -> Dict[str, Any]:
    if not items:
        raise EmptyCartError()

    products = _load_products(db, items)
    check_stock(products, items)

    order_items = [snapshot_item(products[item.product_id], item, pricing) for item in items]
    order_number = orders.generate_order_number()

    try:
        session = gateway.create_checkout_session([i.model_dump() for i in order_items], origin, order_number)
        order = orders.build_order(order_items, session.id, order_number, currency=currency, user_id=user_id)
        orders.insert_order(db, order)
    except StoreError:
        raise
    except Exception as e:
        logger.exception("Checkout failed for order %s: %s", order_number, e)
        raise CheckoutFailedError() from e

    return {"session_id": session.id, "url": session.url, "order_number": order_number}
