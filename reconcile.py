"""
Payment status reconciliation.

Stripe tells us about payments through webhooks, and the storefront can also
poll a checkout session when the customer lands on the success page. Both
routes converge on the same steps: mark the order paid (once), reduce its
stock (once) and send the notifications.
"""
import logging
from typing import Any, Dict, Optional

import stripe
from pymongo import ReturnDocument
from pymongo.database import Database

import notifications
import orders
import stock
from database import now
from errors import OrderNotFoundError, PaymentProviderError, PaymentStatusUnavailableError, WebhookVerificationError
from payments import StripeGateway

logger = logging.getLogger(__name__)

SESSION_PAID_EVENTS = ("checkout.session.completed", "checkout.session.async_payment_succeeded")
SESSION_FAILED_EVENTS = ("checkout.session.async_payment_failed", "checkout.session.expired")


def _split_name(name: Optional[str]):
    parts = (name or "").split()
    return (parts[0] if parts else None), (" ".join(parts[1:]) or None)


def customer_fields(email: Optional[str] = None, name: Optional[str] = None, phone: Optional[str] = None,
                    address: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    fields: Dict[str, Any] = {}
    if email:
        fields["customer_email"] = email
    if phone:
        fields["customer_phone"] = phone
    if address:
        first, last = _split_name(name)
        fields["shipping_address"] = {
            "first_name": first,
            "last_name": last,
            "street": address.get("line1"),
            "city": address.get("city"),
            "state": address.get("state"),
            "postal_code": address.get("postal_code"),
            "country": address.get("country"),
            "phone": phone,
        }
    return fields


def mark_paid(db: Database, order_filter: Dict[str, Any], extra: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
    """
    Move an order to paid with one conditional write. Returns the updated
    order, or None when it was already paid (or refunded) or does not match.
    An order still at ORDER_PLACED is confirmed in the same write.
    """
    stamp = now()
    update = {
        "payment_status": "paid",
        "payment_details.payment_provider": "stripe",
        "payment_details.payment_date": stamp,
        "updated_at": stamp,
        **(extra or {}),
    }
    unpaid = {"payment_status": {"$in": orders.payable_statuses()}}
    updated = db["order"].find_one_and_update(
        {**order_filter, **unpaid, "delivery_status": "ORDER_PLACED"},
        {"$set": {**update, "delivery_status": "ORDER_CONFIRMED"}},
        return_document=ReturnDocument.AFTER,
    )
    if updated is None:
        updated = db["order"].find_one_and_update(
            {**order_filter, **unpaid},
            {"$set": update},
            return_document=ReturnDocument.AFTER,
        )
    if updated is not None:
        logger.info("Order %s marked paid", updated["order_number"])
    return updated


def mark_failed(db: Database, order_filter: Dict[str, Any], reason: str) -> Optional[Dict[str, Any]]:
    stamp = now()
    updated = db["order"].find_one_and_update(
        {**order_filter, "payment_status": "pending"},
        {"$set": {
            "payment_status": "failed",
            "payment_details.failure_reason": reason,
            "payment_details.failure_date": stamp,
            "updated_at": stamp,
        }},
        return_document=ReturnDocument.AFTER,
    )
    if updated is not None:
        logger.info("Order %s marked failed: %s", updated["order_number"], reason)
    return updated


def _apply_paid(db: Database, order: Dict[str, Any], extra: Dict[str, Any], always_notify: bool) -> Dict[str, Any]:
    """
    Mark paid if needed, then run stock catch-up and notifications.

    Webhook deliveries always notify, duplicates included. Polling only
    notifies when it was the call that changed something.
    """
    updated = mark_paid(db, {"_id": order["_id"]}, extra)
    if updated is None:
        current = db["order"].find_one({"_id": order["_id"]})
        if current.get("payment_status") != "paid":
            logger.warning("Order %s is %s, not applying payment", current["order_number"], current.get("payment_status"))
            return {"order_number": current["order_number"], "action": "ignored",
                    "payment_status": current.get("payment_status")}
        logger.info("Order %s already paid, running catch-up", order["order_number"])
        action = "already_paid"
    else:
        action = "paid"
    stock_result = stock.reduce_stock(db, order["order_number"])
    outcome: Dict[str, Any] = {"order_number": order["order_number"], "action": action, "payment_status": "paid",
                               "stock": stock_result.to_dict()}
    if always_notify or action == "paid" or stock_result.applied:
        latest = orders.find_by_number(db, order["order_number"])
        outcome["notifications"] = notifications.dispatch_payment_notifications(latest)
    return outcome


def _session_paid(db: Database, session: Dict[str, Any]) -> Dict[str, Any]:
    order = orders.find_by_session(db, session["id"])
    if not order:
        logger.error("No order for checkout session %s, ignoring event", session["id"])
        return {"action": "order_not_found"}
    details = session.get("customer_details") or {}
    extra = customer_fields(details.get("email"), details.get("name"), details.get("phone"), details.get("address"))
    if session.get("payment_intent"):
        extra["payment_intent"] = session["payment_intent"]
        extra["payment_details.transaction_id"] = session["payment_intent"]
    return _apply_paid(db, order, extra, always_notify=True)


def _intent_paid(db: Database, gateway: StripeGateway, intent: Dict[str, Any]) -> Dict[str, Any]:
    order_number = (intent.get("metadata") or {}).get("orderId")
    order = orders.find_by_number(db, order_number) if order_number else None
    if not order:
        logger.error("No order for payment intent %s (orderId=%s), ignoring event", intent.get("id"), order_number)
        return {"action": "order_not_found"}
    extra = {
        "payment_intent": intent.get("id"),
        "payment_details.transaction_id": intent.get("id"),
    }
    last_four = gateway.card_last_four(intent.get("latest_charge"))
    if last_four:
        extra["payment_details.last_four"] = last_four
    return _apply_paid(db, order, extra, always_notify=True)


def _failed(db: Database, order: Optional[Dict[str, Any]], reason: str) -> Dict[str, Any]:
    if not order:
        logger.error("No order for failed payment event, ignoring")
        return {"action": "order_not_found"}
    updated = mark_failed(db, {"_id": order["_id"]}, reason)
    return {"order_number": order["order_number"], "action": "failed" if updated else "ignored"}


def handle_webhook(db: Database, gateway: StripeGateway, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
    try:
        event = gateway.parse_event(payload, signature)
    except (ValueError, stripe.SignatureVerificationError) as e:
        logger.warning("Rejected webhook: %s", e)
        raise WebhookVerificationError(str(e))

    event_type = event.get("type")
    obj = (event.get("data") or {}).get("object") or {}
    logger.info("Webhook %s received for %s", event_type, obj.get("id"))

    if event_type in SESSION_PAID_EVENTS:
        if obj.get("payment_status") != "paid":
            logger.info("Session %s payment status is %s, waiting for confirmation", obj.get("id"), obj.get("payment_status"))
            result = {"action": "skipped"}
        else:
            result = _session_paid(db, obj)
    elif event_type in SESSION_FAILED_EVENTS:
        reason = "Checkout session expired" if event_type == "checkout.session.expired" else "Asynchronous payment failed"
        result = _failed(db, orders.find_by_session(db, obj.get("id")), reason)
    elif event_type == "payment_intent.succeeded":
        result = _intent_paid(db, gateway, obj)
    elif event_type == "payment_intent.payment_failed":
        order_number = (obj.get("metadata") or {}).get("orderId")
        order = orders.find_by_number(db, order_number) if order_number else None
        reason = (obj.get("last_payment_error") or {}).get("message") or "Unknown error"
        result = _failed(db, order, reason)
    else:
        logger.info("Unhandled event type: %s", event_type)
        result = {"action": "ignored"}

    return {"received": True, "type": event_type, **result}


def poll_session(db: Database, gateway: StripeGateway, session_id: str) -> Dict[str, Any]:
    order = orders.find_by_session(db, session_id)
    if not order:
        raise OrderNotFoundError(session_id)
    try:
        session = gateway.retrieve_session(session_id)
    except (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError) as e:
        logger.warning("Stripe unavailable for session %s: %s", session_id, e)
        raise PaymentStatusUnavailableError(session_id)
    except stripe.StripeError as e:
        logger.error("Stripe rejected status request for session %s: %s", session_id, e)
        raise PaymentProviderError(session_id)

    if session.payment_status != "paid":
        return {
            "success": False,
            "order_number": order["order_number"],
            "payment_status": order.get("payment_status"),
            "stripe_status": session.payment_status,
            "message": "Payment not complete in Stripe",
        }

    extra = customer_fields(session.customer_email, session.customer_name, session.customer_phone, session.address)
    if session.payment_intent:
        extra["payment_intent"] = session.payment_intent
        extra["payment_details.transaction_id"] = session.payment_intent
    result = _apply_paid(db, order, extra, always_notify=False)
    message = "Order already marked as paid" if result["action"] == "already_paid" else "Payment status updated successfully"
    return {"success": result["action"] != "ignored", "stripe_status": "paid", "message": message, **result}


def confirm_success(db: Database, session_id: str) -> Dict[str, Any]:
    order = orders.find_by_session(db, session_id)
    if not order:
        raise OrderNotFoundError(session_id)
    if order.get("payment_status") != "paid":
        return {"success": False, "message": "Order not paid", "payment_status": order.get("payment_status")}
    result = stock.reduce_stock(db, order["order_number"])
    message = "Stock reduced" if result.applied else "Stock already reduced"
    return {"message": message, **result.to_dict()}
