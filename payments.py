"""
Thin wrapper over the Stripe SDK.

Everything the checkout and reconciliation flows need from Stripe goes
through StripeGateway so it can be swapped out in tests.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import stripe

import config

logger = logging.getLogger(__name__)

SESSION_ID_PLACEHOLDER = "{CHECKOUT_SESSION_ID}"
# Stripe rejects image URLs over 2048 characters
MAX_IMAGE_URL = 2000


@dataclass
class CheckoutSessionInfo:
    id: str
    url: Optional[str] = None
    payment_status: Optional[str] = None
    payment_intent: Optional[str] = None
    customer_email: Optional[str] = None
    customer_name: Optional[str] = None
    customer_phone: Optional[str] = None
    address: Dict[str, Optional[str]] = field(default_factory=dict)


def success_url(origin: str) -> str:
    return f"{origin.rstrip('/')}/checkout/success?session_id={SESSION_ID_PLACEHOLDER}"


def cancel_url(origin: str) -> str:
    return f"{origin.rstrip('/')}/checkout/cancel"


def to_line_items(items: List[Dict[str, Any]], currency: str) -> List[Dict[str, Any]]:
    line_items = []
    for item in items:
        product_data: Dict[str, Any] = {
            "name": item["name"],
            "metadata": {"productId": item["product_id"], "color": item.get("color") or ""},
        }
        if item.get("color"):
            product_data["description"] = f"Color: {item['color']}"
        image = item.get("image_url")
        if image and len(image) <= MAX_IMAGE_URL:
            product_data["images"] = [image]
        line_items.append({
            "price_data": {
                "currency": currency,
                "product_data": product_data,
                # Stripe expects amount in smallest unit (cents)
                "unit_amount": int(round(float(item["price"]) * 100)),
            },
            "quantity": int(item["quantity"]),
        })
    return line_items


def _session_info(session) -> CheckoutSessionInfo:
    details = getattr(session, "customer_details", None)
    address = getattr(details, "address", None) if details else None
    return CheckoutSessionInfo(
        id=session.id,
        url=getattr(session, "url", None),
        payment_status=getattr(session, "payment_status", None),
        payment_intent=getattr(session, "payment_intent", None),
        customer_email=getattr(details, "email", None) if details else None,
        customer_name=getattr(details, "name", None) if details else None,
        customer_phone=getattr(details, "phone", None) if details else None,
        address={
            "line1": getattr(address, "line1", None),
            "city": getattr(address, "city", None),
            "state": getattr(address, "state", None),
            "postal_code": getattr(address, "postal_code", None),
            "country": getattr(address, "country", None),
        } if address else {},
    )


class StripeGateway:
    def __init__(self, api_key: str = None, webhook_secret: str = None, timeout: float = None,
                 currency: str = None):
        self.api_key = api_key if api_key is not None else config.STRIPE_SECRET
        self.webhook_secret = webhook_secret if webhook_secret is not None else config.STRIPE_WEBHOOK_SECRET
        self.currency = currency or config.CURRENCY
        if self.api_key:
            stripe.api_key = self.api_key
        stripe.default_http_client = stripe.RequestsClient(timeout=timeout or config.STRIPE_TIMEOUT)

    def create_checkout_session(self, items: List[Dict[str, Any]], origin: str, order_number: str) -> CheckoutSessionInfo:
        if not self.api_key:
            raise RuntimeError("Stripe secret key is not configured")
        logger.info("Creating Stripe checkout session with %d items for order %s", len(items), order_number)
        session = stripe.checkout.Session.create(
            mode="payment",
            payment_method_types=["card"],
            line_items=to_line_items(items, self.currency),
            success_url=success_url(origin),
            cancel_url=cancel_url(origin),
            client_reference_id=order_number,
            metadata={"orderId": order_number},
            payment_intent_data={"metadata": {"orderId": order_number}},
            shipping_address_collection={"allowed_countries": ["AU"]},
            phone_number_collection={"enabled": True},
        )
        return _session_info(session)

    def retrieve_session(self, session_id: str) -> CheckoutSessionInfo:
        return _session_info(stripe.checkout.Session.retrieve(session_id))

    def card_last_four(self, charge_id: Optional[str]) -> Optional[str]:
        if not charge_id:
            return None
        try:
            charge = stripe.Charge.retrieve(charge_id)
        except stripe.StripeError:
            logger.warning("Could not load charge %s for card details", charge_id)
            return None
        details = getattr(charge, "payment_method_details", None)
        card = getattr(details, "card", None) if details else None
        return getattr(card, "last4", None) if card else None

    def parse_event(self, payload: bytes, signature: Optional[str]) -> Dict[str, Any]:
        """Verify a webhook delivery and return the event as a plain dict."""
        if not signature:
            raise ValueError("Missing Stripe signature")
        if not self.webhook_secret:
            raise ValueError("Webhook secret is not configured")
        stripe.Webhook.construct_event(payload, signature, self.webhook_secret)
        return json.loads(payload)


_gateway: Optional[StripeGateway] = None


def get_gateway() -> StripeGateway:
    global _gateway
    if _gateway is None:
        _gateway = StripeGateway()
    return _gateway
