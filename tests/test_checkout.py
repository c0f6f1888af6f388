import stripe

from conftest import add_frame, add_product
from orders import generate_order_number


def checkout(client, items, origin="https://shop.example"):
    return client.post("/checkout-session", json={"items": items, "origin": origin})


def test_empty_cart_rejected(client, db, gateway):
    res = checkout(client, [])
    assert res.status_code == 400
    assert res.json()["detail"] == "Cart is empty"
    assert gateway.created == []


def test_missing_product_named(client, db, gateway):
    missing = "64b000000000000000000000"
    res = checkout(client, [{"product_id": missing, "quantity": 1}])
    assert res.status_code == 400
    assert missing in res.json()["detail"]
    assert db["order"].count_documents({}) == 0


def test_inactive_product_not_purchasable(client, db):
    pid = add_product(db, status="inactive")
    res = checkout(client, [{"product_id": pid, "quantity": 1}])
    assert res.status_code == 400


def test_variant_stock_must_cover_quantity(client, db, gateway):
    pid = add_frame(db, [("Black", 3)])

    res = checkout(client, [{"product_id": pid, "quantity": 4, "color": "Black"}])
    assert res.status_code == 400
    detail = res.json()["detail"]
    assert "Aviator Classic" in detail and "Black" in detail
    assert "available 3" in detail and "requested 4" in detail
    assert gateway.created == []

    res = checkout(client, [{"product_id": pid, "quantity": 3, "color": "Black"}])
    assert res.status_code == 200


def test_color_match_ignores_case_and_spaces(client, db):
    pid = add_frame(db, [("Tortoise Shell", 2)])
    res = checkout(client, [{"product_id": pid, "quantity": 2, "color": "  tortoise shell "}])
    assert res.status_code == 200
    order = db["order"].find_one({})
    assert order["items"][0]["color"] == "Tortoise Shell"
    assert order["items"][0]["image_url"] == "https://img.example/Tortoise Shell.png"


def test_no_color_checks_sum_of_variants(client, db):
    pid = add_frame(db, [("Black", 2), ("Gold", 2)])
    assert checkout(client, [{"product_id": pid, "quantity": 4}]).status_code == 200
    assert checkout(client, [{"product_id": pid, "quantity": 5}]).status_code == 400


def test_repeated_lines_are_checked_together(client, db):
    pid = add_product(db, stock_quantity=3)
    res = checkout(client, [{"product_id": pid, "quantity": 2}, {"product_id": pid, "quantity": 2}])
    assert res.status_code == 400


def test_flat_stock_for_contacts(client, db):
    pid = add_product(db, stock_quantity=5)
    assert checkout(client, [{"product_id": pid, "quantity": 6}]).status_code == 400
    assert checkout(client, [{"product_id": pid, "quantity": 5}]).status_code == 200


def test_creates_session_and_pending_order(client, db, gateway):
    pid = add_product(db, stock_quantity=5, price=40.0)
    res = checkout(client, [{"product_id": pid, "quantity": 2}])
    assert res.status_code == 200
    body = res.json()
    assert body["sessionId"] == "cs_test_1"
    assert body["url"].endswith("cs_test_1")

    created = gateway.created[0]
    assert created["success_url"] == "https://shop.example/checkout/success?session_id={CHECKOUT_SESSION_ID}"
    assert created["cancel_url"] == "https://shop.example/checkout/cancel"

    order = db["order"].find_one({"stripe_session_id": "cs_test_1"})
    assert order["order_number"] == body["orderNumber"]
    assert order["payment_status"] == "pending"
    assert order["delivery_status"] == "ORDER_PLACED"
    assert order["stock_reduced"] is False
    assert order["total_amount"] == 80.0
    assert order["items"][0]["name"] == "Daily Comfort Lenses"
    # nothing is decremented before payment
    assert db["product"].find_one({})["stock_quantity"] == 5


def test_price_snapshot_survives_catalog_edit(client, db):
    pid = add_product(db, price=40.0)
    checkout(client, [{"product_id": pid, "quantity": 1}])
    db["product"].update_one({}, {"$set": {"price": 99.0, "name": "Renamed"}})
    item = db["order"].find_one({})["items"][0]
    assert item["price"] == 40.0
    assert item["name"] == "Daily Comfort Lenses"


def test_discounted_price_is_charged(client, db, gateway):
    pid = add_product(db, price=40.0, discounted_price=30.0)
    checkout(client, [{"product_id": pid, "quantity": 1}])
    item = db["order"].find_one({})["items"][0]
    assert item["price"] == 30.0
    assert item["original_price"] == 40.0
    assert gateway.created[0]["items"][0]["price"] == 30.0


def test_processor_failure_is_generic(client, db, gateway):
    gateway.create_error = stripe.APIConnectionError("connection reset")
    pid = add_product(db)
    res = checkout(client, [{"product_id": pid, "quantity": 1}])
    assert res.status_code == 500
    assert res.json()["detail"] == "Failed to create checkout session. Please try again."
    assert db["order"].count_documents({}) == 0


def test_order_numbers_unique():
    numbers = {generate_order_number() for _ in range(10000)}
    assert len(numbers) == 10000
    assert all(n.startswith("LA-") and n.count("-") == 2 for n in numbers)


def test_colored_and_plain_lines_share_frame_stock(client, db, gateway):
    pid = add_frame(db, [("Black", 2), ("Gold", 0)])
    res = checkout(client, [{"product_id": pid, "quantity": 2, "color": "Black"},
                            {"product_id": pid, "quantity": 2}])
    assert res.status_code == 400
    assert "available 2, requested 4" in res.json()["detail"]
    assert gateway.created == []
    assert db["order"].count_documents({}) == 0
