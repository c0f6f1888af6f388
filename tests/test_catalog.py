from bson import ObjectId

import catalog
import config
from conftest import ADMIN_HEADERS, add_frame, add_product

FRAME = {
    "product_type": "sunglasses",
    "frame_color_variants": [{"color": "Black", "stock_quantity": 2}, {"color": "Gold", "stock_quantity": 0}],
}


def test_available_stock_rules():
    assert catalog.available_stock(FRAME) == 2
    assert catalog.available_stock(FRAME, " black ") == 2
    assert catalog.available_stock(FRAME, "Gold") == 0
    assert catalog.available_stock(FRAME, "Red") == 0
    # frames ignore the flat counter
    assert catalog.available_stock({**FRAME, "stock_quantity": 9}) == 2
    assert catalog.available_stock({"product_type": "contacts", "stock_quantity": 7}) == 7


def test_purchasable():
    assert catalog.is_purchasable(FRAME)
    assert not catalog.is_purchasable(FRAME, "Gold")
    assert not catalog.is_purchasable({**FRAME, "status": "inactive"})


def test_slugify():
    assert catalog.slugify("  Aviator Classic (Gold)! ") == "aviator-classic-gold"
    assert catalog.slugify("!!!") == "product"


def test_product_listing(client, db):
    add_frame(db, [("Black", 2), ("Gold", 1)])
    add_product(db, name="Hidden", status="inactive")
    products = client.get("/products").json()
    assert [p["name"] for p in products] == ["Aviator Classic"]
    assert products[0]["available"] == 3
    assert products[0]["purchasable"] is True
    assert "_id" not in products[0]

    assert client.get("/products", params={"q": "aviator"}).json()[0]["name"] == "Aviator Classic"
    assert client.get("/products", params={"product_type": "contacts"}).json() == []


def test_product_lookup(client, db):
    pid = add_product(db, slug="daily-lenses")
    assert client.get(f"/products/{pid}").json()["id"] == pid
    assert client.get("/products/slug/daily-lenses").json()["id"] == pid
    assert client.get("/products/slug/nope").status_code == 404
    assert client.get("/products/not-an-id").status_code == 400
    assert client.get(f"/products/{ObjectId()}").status_code == 404


def test_price_range(client, db):
    add_product(db, name="Free Sample", price=0.0)
    add_product(db, name="Monthly", price=55.0)
    add_product(db, name="Daily", price=40.0)
    ranges = client.get("/products/price-range").json()
    assert ranges["contacts"]["lowest"]["name"] == "Daily"
    assert ranges["contacts"]["highest"]["name"] == "Monthly"
    assert ranges["glasses"] == {"lowest": None, "highest": None}


def test_admin_requires_token(client, db):
    assert client.get("/admin/orders").status_code == 401
    assert client.get("/admin/orders", headers={"Authorization": "Bearer wrong"}).status_code == 403


def test_login(client):
    res = client.post("/auth/login", json={"email": config.ADMIN_EMAIL, "password": config.ADMIN_PASSWORD})
    assert res.status_code == 200
    assert res.json()["token"] == config.ADMIN_TOKEN
    res = client.post("/auth/login", json={"email": config.ADMIN_EMAIL, "password": "guess"})
    assert res.status_code == 401


def test_admin_create_gives_unique_slugs(client, db):
    body = {"name": "Aviator Classic", "product_type": "sunglasses", "price": 120.0,
            "frame_color_variants": [{"color": "Black", "stock_quantity": 3}]}
    first = client.post("/admin/products", json=body, headers=ADMIN_HEADERS).json()
    second = client.post("/admin/products", json=body, headers=ADMIN_HEADERS).json()
    assert first["slug"] == "aviator-classic"
    assert second["slug"] == "aviator-classic-1"
    assert first["in_stock"] is True


def test_admin_update_and_delete(client, db):
    pid = add_product(db)
    res = client.patch(f"/admin/products/{pid}", json={"price": 45.0, "stock_quantity": 0}, headers=ADMIN_HEADERS)
    assert res.json()["price"] == 45.0
    assert res.json()["in_stock"] is False

    assert client.delete(f"/admin/products/{pid}", headers=ADMIN_HEADERS).json() == {"deleted": True}
    assert client.delete(f"/admin/products/{pid}", headers=ADMIN_HEADERS).status_code == 404


def test_admin_stock_adjustment(client, db):
    pid = add_frame(db, [("Black", 2), ("Gold", 1)])
    url = f"/admin/products/{pid}/stock"

    res = client.post(url, json={"color": "gold", "quantity": 6}, headers=ADMIN_HEADERS)
    assert res.json()["frame_color_variants"][1]["stock_quantity"] == 6

    res = client.post(url, json={"color": "Black", "delta": -5}, headers=ADMIN_HEADERS)
    assert res.json()["frame_color_variants"][0]["stock_quantity"] == 0

    assert client.post(url, json={"color": "Red", "delta": 1}, headers=ADMIN_HEADERS).status_code == 400
    assert client.post(url, json={"color": "Black", "delta": 1, "quantity": 1},
                       headers=ADMIN_HEADERS).status_code == 400


def test_admin_empty_slug_rederived_from_name(client, db):
    pid = add_product(db, name="Daily Comfort Lenses", slug="old-slug")
    res = client.patch(f"/admin/products/{pid}", json={"slug": ""}, headers=ADMIN_HEADERS)
    assert res.status_code == 200
    assert res.json()["slug"] == "daily-comfort-lenses"
