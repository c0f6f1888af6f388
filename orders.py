"""
Order documents: numbering, pending-order creation and the payment and
delivery state machines.
"""
import logging
import secrets
import time
from typing import Any, Dict, List, Optional

from pymongo import ReturnDocument
from pymongo.database import Database

from database import now
from errors import InvalidStatusTransitionError, OrderNotFoundError
from schemas import Order, OrderItem

logger = logging.getLogger(__name__)

ORDER_PREFIX = "LA"

PAYMENT_TRANSITIONS = {
    "pending": {"paid", "failed"},
    "paid": {"refunded"},
    # a success event after a failure still settles the order
    "failed": {"paid"},
    "refunded": set(),
}

DELIVERY_FLOW = [
    "ORDER_PLACED",
    "ORDER_CONFIRMED",
    "PROCESSING",
    "DISPATCHED",
    "IN_TRANSIT",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
]
DELIVERY_SIDE_BRANCHES = {"CANCELLED", "RETURNED", "DELAYED"}
DELIVERY_TERMINAL = {"DELIVERED", "CANCELLED", "RETURNED"}


def generate_order_number() -> str:
    return f"{ORDER_PREFIX}-{int(time.time() * 1000)}-{secrets.token_hex(6).upper()}"


def payable_statuses() -> List[str]:
    return [status for status, targets in PAYMENT_TRANSITIONS.items() if "paid" in targets]


def can_transition_payment(current: str, target: str) -> bool:
    return target in PAYMENT_TRANSITIONS.get(current, set())


def can_transition_delivery(current: str, target: str, resume_from: Optional[str] = None) -> bool:
    """
    Forward moves along the main flow may skip steps; any non-terminal state
    may branch to CANCELLED, RETURNED or DELAYED. A DELAYED order resumes
    forward from where it was before the delay (``resume_from``), or from
    anywhere on the flow when that is unknown.
    """
    if current == target or current in DELIVERY_TERMINAL:
        return False
    if target in DELIVERY_SIDE_BRANCHES:
        return True
    if target not in DELIVERY_FLOW:
        return False
    if current == "DELAYED":
        if resume_from in DELIVERY_FLOW:
            return DELIVERY_FLOW.index(target) >= DELIVERY_FLOW.index(resume_from)
        return True
    return DELIVERY_FLOW.index(target) > DELIVERY_FLOW.index(current)


def build_order(items: List[OrderItem], session_id: str, order_number: str, currency: str = "aud",
                user_id: Optional[str] = None) -> Order:
    total = round(sum(item.price * item.quantity for item in items), 2)
    return Order(
        order_number=order_number,
        user_id=user_id,
        items=items,
        total_amount=total,
        currency=currency,
        stripe_session_id=session_id,
    )


def insert_order(db: Database, order: Order) -> Dict[str, Any]:
    doc = order.model_dump()
    stamp = now()
    doc["created_at"] = stamp
    doc["updated_at"] = stamp
    db["order"].insert_one(doc)
    logger.info("Created pending order %s for session %s", order.order_number, order.stripe_session_id)
    return doc


def find_by_session(db: Database, session_id: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one({"stripe_session_id": session_id})


def find_by_number(db: Database, order_number: str) -> Optional[Dict[str, Any]]:
    return db["order"].find_one({"order_number": order_number})


def get_order(db: Database, order_number: str) -> Dict[str, Any]:
    order = find_by_number(db, order_number)
    if not order:
        raise OrderNotFoundError(order_number)
    return order


def update_delivery_status(db: Database, order_number: str, target: str) -> Dict[str, Any]:
    order = get_order(db, order_number)
    current = order.get("delivery_status", "ORDER_PLACED")
    if not can_transition_delivery(current, target, order.get("delivery_resume_from")):
        raise InvalidStatusTransitionError(f"Cannot move order {order_number} from {current} to {target}")
    update: Dict[str, Any] = {"delivery_status": target, "updated_at": now()}
    if target == "DELAYED":
        update["delivery_resume_from"] = current
    # conditional on the status we validated against
    updated = db["order"].find_one_and_update(
        {"order_number": order_number, "delivery_status": current},
        {"$set": update},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStatusTransitionError(f"Order {order_number} changed while updating, retry")
    logger.info("Order %s delivery status %s -> %s", order_number, current, target)
    return updated


def refund_order(db: Database, order_number: str) -> Dict[str, Any]:
    order = get_order(db, order_number)
    current = order.get("payment_status")
    if not can_transition_payment(current, "refunded"):
        raise InvalidStatusTransitionError(f"Cannot refund order {order_number} with payment status {current}")
    updated = db["order"].find_one_and_update(
        {"order_number": order_number, "payment_status": "paid"},
        {"$set": {"payment_status": "refunded", "updated_at": now()}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        raise InvalidStatusTransitionError(f"Order {order_number} changed while refunding, retry")
    logger.info("Order %s refunded", order_number)
    return updated


def format_order(order: Dict[str, Any]) -> Dict[str, Any]:
    address = order.get("shipping_address") or {}
    items = order.get("items", [])
    return {
        "id": order["order_number"],
        "customer": {
            "first_name": address.get("first_name") or "",
            "last_name": address.get("last_name") or "",
            "email": order.get("customer_email"),
            "phone": order.get("customer_phone"),
        },
        "shipping": {
            **address,
            "full_address": ", ".join(
                filter(None, [address.get("street"), address.get("city"), address.get("state"),
                              address.get("postal_code"), address.get("country")])
            ),
        },
        "items": [{**item, "subtotal": round(item["price"] * item["quantity"], 2)} for item in items],
        "payment": {
            "status": order.get("payment_status"),
            "intent": order.get("payment_intent"),
            "session_id": order.get("stripe_session_id"),
            "details": order.get("payment_details"),
        },
        "delivery": {"status": order.get("delivery_status", "ORDER_PLACED")},
        "stock_reduced": order.get("stock_reduced", False),
        "dates": {"created": order.get("created_at"), "updated": order.get("updated_at")},
        "totals": {
            "subtotal": round(sum(i["price"] * i["quantity"] for i in items), 2),
            "total": order.get("total_amount"),
        },
    }
