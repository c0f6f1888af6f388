from collections import OrderedDict
from typing import Any, Dict, List

from pymongo.database import Database

from catalog import normalize_color
from database import now
from schemas import Cart, CartItem


def merge_items(items: List[CartItem]) -> List[CartItem]:
    """Collapse lines for the same product and color, adding up their quantities."""
    merged: "OrderedDict[tuple, CartItem]" = OrderedDict()
    for item in items:
        key = (item.product_id, normalize_color(item.color))
        if key in merged:
            existing = merged[key]
            merged[key] = existing.model_copy(update={"quantity": existing.quantity + item.quantity})
        else:
            merged[key] = item
    return list(merged.values())


def subtotal(items: List[CartItem]) -> float:
    return round(sum(item.price * item.quantity for item in items), 2)


def save_cart(db: Database, cart: Cart) -> Dict[str, Any]:
    items = merge_items(cart.items)
    data = {
        "session_id": cart.session_id,
        "items": [i.model_dump() for i in items],
        "subtotal": subtotal(items),
        "updated_at": now(),
    }
    db["cart"].update_one({"session_id": cart.session_id}, {"$set": data}, upsert=True)
    return data


def load_cart(db: Database, session_id: str) -> Dict[str, Any]:
    cart = db["cart"].find_one({"session_id": session_id}, {"_id": 0})
    if not cart:
        return {"session_id": session_id, "items": [], "subtotal": 0.0}
    return cart


