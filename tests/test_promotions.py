from datetime import datetime, timedelta, timezone

import pytest

from conftest import ADMIN_HEADERS, add_frame
from promotions import (
    PricingCache,
    PricingChannel,
    best_price,
    is_promotion_active,
    product_collection,
    resolve_active_promotion,
)

NOW = datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc)


def promotion(name="Winter Sale", start=NOW - timedelta(days=1), end=NOW + timedelta(days=1), active=True,
              signature=150.0):
    return {
        "offer_name": name,
        "offer_valid_from": start,
        "offer_valid_to": end,
        "signature_original_price": 200.0,
        "signature_discounted_price": signature,
        "signature_price_for_two": signature * 2 - 50,
        "essential_original_price": 120.0,
        "essential_discounted_price": 90.0,
        "essential_price_for_two": 160.0,
        "is_active": active,
    }


def test_active_window():
    assert is_promotion_active(promotion(), NOW)
    assert not is_promotion_active(promotion(active=False), NOW)
    assert not is_promotion_active(promotion(end=NOW - timedelta(hours=1)), NOW)
    assert not is_promotion_active(promotion(start=NOW + timedelta(hours=1), end=NOW + timedelta(days=2)), NOW)


def test_naive_dates_read_as_utc():
    naive = promotion(start=datetime(2025, 5, 31, 12), end=datetime(2025, 6, 2, 12))
    assert is_promotion_active(naive, NOW)


def test_latest_start_wins(db):
    db["promotion"].insert_many([
        promotion("Old", start=NOW - timedelta(days=10)),
        promotion("New", start=NOW - timedelta(days=2)),
        promotion("Off", start=NOW - timedelta(hours=1), active=False),
    ])
    assert resolve_active_promotion(db, NOW)["offer_name"] == "New"


def test_no_active_promotion(db):
    db["promotion"].insert_one(promotion(end=NOW - timedelta(days=1), start=NOW - timedelta(days=3)))
    assert resolve_active_promotion(db, NOW) is None


@pytest.mark.parametrize("product,expected", [
    ({"name": "Aviator", "category": "Signature"}, "signature"),
    ({"name": "Luxury Cat Eye"}, "signature"),
    ({"name": "Everyday Wayfarer"}, "essential"),
    ({"name": "Aviator"}, None),
])
def test_product_collection(product, expected):
    assert product_collection(product) == expected


def test_best_price_order():
    pricing = {"signature": {"original_price": 200.0, "promotional_price": 150.0, "price_for_two": 250.0,
                             "is_promotional": True, "promotion_name": "Winter Sale"}}
    shades = {"product_type": "sunglasses", "category": "signature", "price": 180.0, "discounted_price": 170.0}
    assert best_price(shades, pricing)["price"] == 150.0
    assert best_price(shades, None)["price"] == 170.0
    assert best_price({**shades, "discounted_price": None}, None) == {
        "price": 180.0, "original_price": None, "is_promotional": False, "promotion_name": None,
    }
    glasses = {**shades, "product_type": "glasses"}
    assert best_price(glasses, pricing)["is_promotional"] is False


def test_channel_subscribers():
    channel = PricingChannel()
    heard = []

    def broken(reason):
        raise RuntimeError("boom")

    channel.subscribe(broken)
    unsubscribe = channel.subscribe(heard.append)
    channel.publish("first")
    unsubscribe()
    channel.publish("second")
    assert heard == ["first"]
    assert len(channel) == 1


def test_cache_expires_and_invalidates(db):
    clock = [100.0]
    channel = PricingChannel()
    cache = PricingCache(channel, ttl=60, clock=lambda: clock[0])
    assert cache.get(db) is None

    db["promotion"].insert_one(promotion(start=datetime.now(timezone.utc) - timedelta(days=1),
                                         end=datetime.now(timezone.utc) + timedelta(days=1)))
    assert cache.get(db) is None

    clock[0] = 161.0
    assert cache.get(db)["signature"]["promotional_price"] == 150.0

    db["promotion"].delete_many({})
    channel.publish("deleted")
    assert cache.get(db) is None


def test_admin_promotion_reprices_catalog(client, db):
    pid = add_frame(db, [("Black", 2)], name="Signature Aviator", category="signature", price=200.0)
    listed = client.get("/products").json()
    assert listed[0]["pricing"]["price"] == 200.0

    now = datetime.now(timezone.utc)
    body = {**promotion(start=now - timedelta(days=1), end=now + timedelta(days=1))}
    body["offer_valid_from"] = body["offer_valid_from"].isoformat()
    body["offer_valid_to"] = body["offer_valid_to"].isoformat()
    res = client.post("/admin/promotions", json=body, headers=ADMIN_HEADERS)
    assert res.status_code == 200

    listed = client.get(f"/products/{pid}").json()
    assert listed["pricing"]["price"] == 150.0
    assert listed["pricing"]["is_promotional"] is True

    res = client.post("/checkout-session", json={"items": [{"product_id": pid, "quantity": 1, "color": "Black"}]})
    item = db["order"].find_one({})["items"][0]
    assert res.status_code == 200
    assert item["price"] == 150.0
    assert item["original_price"] == 200.0
    assert item["is_promotional"] is True

    active = client.get("/promotions/active").json()
    assert active["promotion"]["offer_name"] == "Winter Sale"


def test_promotion_window_validated(client, db):
    now = datetime.now(timezone.utc)
    body = promotion(start=now, end=now - timedelta(days=1))
    body["offer_valid_from"] = body["offer_valid_from"].isoformat()
    body["offer_valid_to"] = body["offer_valid_to"].isoformat()
    res = client.post("/admin/promotions", json=body, headers=ADMIN_HEADERS)
    assert res.status_code == 422


def test_promotion_update_and_delete(client, db):
    now = datetime.now(timezone.utc)
    body = promotion(start=now - timedelta(days=1), end=now + timedelta(days=1))
    body["offer_valid_from"] = body["offer_valid_from"].isoformat()
    body["offer_valid_to"] = body["offer_valid_to"].isoformat()
    created = client.post("/admin/promotions", json=body, headers=ADMIN_HEADERS).json()

    res = client.patch(f"/admin/promotions/{created['id']}", json={"is_active": False}, headers=ADMIN_HEADERS)
    assert res.status_code == 200
    assert client.get("/promotions/active").json()["promotion"] is None

    res = client.patch(f"/admin/promotions/{created['id']}",
                       json={"offer_valid_to": (now - timedelta(days=5)).isoformat()}, headers=ADMIN_HEADERS)
    assert res.status_code == 400

    res = client.delete(f"/admin/promotions/{created['id']}", headers=ADMIN_HEADERS)
    assert res.json() == {"deleted": True}
