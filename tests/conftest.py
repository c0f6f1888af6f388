import hashlib
import hmac
import json
import time

import mongomock
import pytest
from fastapi.testclient import TestClient

import config
import database
import notifications
import payments
from main import app
from payments import CheckoutSessionInfo, StripeGateway, get_gateway

WEBHOOK_SECRET = "whsec_test_secret"
ADMIN_HEADERS = {"Authorization": f"Bearer {config.ADMIN_TOKEN}"}


class FakeGateway:
    """Stands in for Stripe; webhook verification still uses the real signature check."""

    def __init__(self):
        self.webhook_secret = WEBHOOK_SECRET
        self.created = []
        self.sessions = {}
        self.create_error = None
        self.retrieve_error = None

    def create_checkout_session(self, items, origin, order_number):
        if self.create_error:
            raise self.create_error
        session_id = f"cs_test_{len(self.created) + 1}"
        info = CheckoutSessionInfo(id=session_id, url=f"https://checkout.stripe.com/c/pay/{session_id}",
                                   payment_status="unpaid")
        self.sessions[session_id] = info
        self.created.append({
            "items": items,
            "order_number": order_number,
            "success_url": payments.success_url(origin),
            "cancel_url": payments.cancel_url(origin),
        })
        return info

    def retrieve_session(self, session_id):
        if self.retrieve_error:
            raise self.retrieve_error
        return self.sessions[session_id]

    def card_last_four(self, charge_id):
        return "4242" if charge_id else None

    def parse_event(self, payload, signature):
        return StripeGateway.parse_event(self, payload, signature)


def sign(payload: bytes, secret: str = WEBHOOK_SECRET) -> str:
    timestamp = int(time.time())
    signed = f"{timestamp}.{payload.decode()}".encode()
    signature = hmac.new(secret.encode(), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={signature}"


def make_event(event_type: str, obj: dict) -> bytes:
    return json.dumps({"id": "evt_test", "object": "event", "type": event_type, "data": {"object": obj}}).encode()


@pytest.fixture
def db():
    database.connect(client=mongomock.MongoClient(), name="lensaura_test")
    yield database.db
    database.disconnect()


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def outbox(monkeypatch):
    sent = {"email": [], "chat": []}

    def fake_email(order):
        sent["email"].append(order["order_number"])
        return notifications.SENT

    def fake_chat(order):
        sent["chat"].append(order["order_number"])
        return notifications.SENT

    monkeypatch.setattr(notifications, "send_invoice_email", fake_email)
    monkeypatch.setattr(notifications, "send_chat_notification", fake_chat)
    return sent


@pytest.fixture
def client(db, gateway, outbox):
    app.dependency_overrides[get_gateway] = lambda: gateway
    app.state.pricing_cache.invalidate()
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def add_product(db, **fields):
    doc = {
        "name": "Daily Comfort Lenses",
        "slug": None,
        "product_type": "contacts",
        "price": 40.0,
        "status": "active",
        "stock_quantity": 5,
        "frame_color_variants": [],
        "image_url": "https://img.example/lens.png",
    }
    doc.update(fields)
    if not doc["slug"]:
        doc["slug"] = f"{doc['name'].lower().replace(' ', '-')}-{db['product'].count_documents({})}"
    return str(db["product"].insert_one(doc).inserted_id)


def add_frame(db, variants, **fields):
    return add_product(
        db,
        name=fields.pop("name", "Aviator Classic"),
        product_type=fields.pop("product_type", "sunglasses"),
        price=fields.pop("price", 120.0),
        stock_quantity=0,
        frame_color_variants=[
            {"color": color, "lens_color": None, "images": [f"https://img.example/{color}.png"], "stock_quantity": qty}
            for color, qty in variants
        ],
        **fields,
    )


def add_paid_order(db, items, order_number="LA-1-TEST", stock_reduced=False):
    db["order"].insert_one({
        "order_number": order_number,
        "items": items,
        "total_amount": sum(i["price"] * i["quantity"] for i in items),
        "payment_status": "paid",
        "delivery_status": "ORDER_CONFIRMED",
        "stripe_session_id": f"cs_{order_number}",
        "stock_reduced": stock_reduced,
        "payment_details": {},
    })
    return order_number


def line(product_id, quantity, color=None, price=40.0):
    return {"product_id": product_id, "name": "Item", "price": price, "quantity": quantity, "color": color}
