import hmac
import logging
import os
from contextlib import asynccontextmanager
from datetime import datetime
from typing import List, Optional

from fastapi import Depends, FastAPI, Header, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, EmailStr, Field
from pymongo.database import Database
from pymongo.errors import PyMongoError
from starlette.concurrency import run_in_threadpool

import cart
import catalog
import config
import database
import notifications
import orders
import reconcile
import stock
import users
from checkout import initiate_checkout
from database import ensure_object_id, get_db, now, to_str_id
from errors import StoreError
from payments import StripeGateway, get_gateway
from promotions import PricingCache, PricingChannel, best_price, resolve_active_promotion, pricing_from_promotion
from schemas import (
    Cart,
    CheckoutRequest,
    ContactMessage,
    DeliveryStatus,
    FrameColorVariant,
    Product,
    ProductStatus,
    Promotion,
    User,
    UserRole,
)

config.setup_logging()
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if database.db is None:
        database.connect()
    yield
    database.disconnect()


app = FastAPI(title="Lens Aura API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.state.pricing_channel = PricingChannel()
app.state.pricing_cache = PricingCache(app.state.pricing_channel, ttl=config.PROMOTION_CACHE_SECONDS)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message})


@app.exception_handler(PyMongoError)
async def database_error_handler(request: Request, exc: PyMongoError):
    logger.error("Database error on %s %s: %s", request.method, request.url.path, exc)
    return JSONResponse(status_code=500, content={"detail": "Database error, please retry"})


# --- Auth ---

class AuthRequest(BaseModel):
    email: EmailStr
    password: str


class AuthResponse(BaseModel):
    token: str
    role: str
    email: EmailStr


# NOTE: Simple static-token admin auth, no user sessions.
@app.post("/auth/login", response_model=AuthResponse)
def login(req: AuthRequest):
    if req.email.lower() == config.ADMIN_EMAIL.lower() and hmac.compare_digest(req.password, config.ADMIN_PASSWORD):
        return AuthResponse(token=config.ADMIN_TOKEN, role="admin", email=req.email)
    raise HTTPException(status_code=401, detail="Invalid credentials")


def require_admin(authorization: Optional[str] = Header(None)):
    if not authorization:
        raise HTTPException(status_code=401, detail="Unauthorized")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not hmac.compare_digest(token.strip(), config.ADMIN_TOKEN):
        raise HTTPException(status_code=403, detail="Forbidden")


def get_pricing(request: Request, db: Database = Depends(get_db)):
    return request.app.state.pricing_cache.get(db)


# --- Request bodies ---

class ProductCreate(Product):
    pass


class ProductUpdate(BaseModel):
    name: Optional[str] = None
    slug: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    discounted_price: Optional[float] = Field(None, ge=0)
    image_url: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    status: Optional[ProductStatus] = None
    stock_quantity: Optional[int] = Field(None, ge=0)
    frame_color_variants: Optional[List[FrameColorVariant]] = None


class StockAdjustment(BaseModel):
    color: Optional[str] = None
    quantity: Optional[int] = Field(None, ge=0, description="Set the counter to this value")
    delta: Optional[int] = Field(None, description="Move the counter by this amount")


class DeliveryStatusUpdate(BaseModel):
    delivery_status: DeliveryStatus


class CheckoutSuccessRequest(BaseModel):
    session_id: str


class PromotionUpdate(BaseModel):
    offer_name: Optional[str] = Field(None, max_length=100)
    offer_valid_from: Optional[datetime] = None
    offer_valid_to: Optional[datetime] = None
    signature_original_price: Optional[float] = Field(None, ge=0)
    signature_discounted_price: Optional[float] = Field(None, ge=0)
    signature_price_for_two: Optional[float] = Field(None, ge=0)
    essential_original_price: Optional[float] = Field(None, ge=0)
    essential_discounted_price: Optional[float] = Field(None, ge=0)
    essential_price_for_two: Optional[float] = Field(None, ge=0)
    is_active: Optional[bool] = None


class UserCreate(User):
    password: str = Field(..., min_length=8)


class UserUpdate(BaseModel):
    first_name: Optional[str] = Field(None, min_length=1)
    last_name: Optional[str] = Field(None, min_length=1)
    role: Optional[UserRole] = None
    phone_number: Optional[str] = None


def public_product(doc: dict, pricing) -> dict:
    product = to_str_id(doc)
    product["pricing"] = best_price(doc, pricing)
    product["available"] = catalog.available_stock(doc)
    product["purchasable"] = catalog.is_purchasable(doc)
    return product


# --- Health ---

@app.get("/")
def root():
    return {"name": "Lens Aura API", "status": "ok"}


@app.get("/test")
def test_database():
    resp = {"backend": "running", "database": "not configured"}
    try:
        if database.db is not None:
            resp["database"] = "connected"
            resp["database_name"] = database.db.name
            resp["collections"] = database.db.list_collection_names()[:10]
    except Exception as e:
        resp["error"] = str(e)[:120]
    resp["database_url"] = "set" if os.getenv("DATABASE_URL") else "not set"
    return resp


# --- Catalog ---

@app.get("/products")
def list_products(product_type: Optional[str] = None, status: Optional[str] = "active", q: Optional[str] = None,
                  db: Database = Depends(get_db), pricing=Depends(get_pricing)):
    return [public_product(p, pricing) for p in catalog.list_products(db, product_type, status, q)]


@app.get("/products/price-range")
def product_price_range(db: Database = Depends(get_db)):
    return catalog.price_ranges(db)


@app.get("/products/slug/{slug}")
def get_product_by_slug(slug: str, db: Database = Depends(get_db), pricing=Depends(get_pricing)):
    doc = db["product"].find_one({"slug": slug})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return public_product(doc, pricing)


@app.get("/products/{product_id}")
def get_product(product_id: str, db: Database = Depends(get_db), pricing=Depends(get_pricing)):
    doc = db["product"].find_one({"_id": ensure_object_id(product_id)})
    if not doc:
        raise HTTPException(status_code=404, detail="Product not found")
    return public_product(doc, pricing)


# --- Cart ---

@app.post("/cart")
def save_cart(payload: Cart, db: Database = Depends(get_db)):
    data = cart.save_cart(db, payload)
    return {"status": "ok", "items": data["items"], "subtotal": data["subtotal"]}


@app.get("/cart/{session_id}")
def get_cart(session_id: str, db: Database = Depends(get_db)):
    return cart.load_cart(db, session_id)


# --- Checkout / payments ---

@app.post("/checkout-session")
def create_checkout_session(req: CheckoutRequest, db: Database = Depends(get_db),
                            gateway: StripeGateway = Depends(get_gateway), pricing=Depends(get_pricing)):
    result = initiate_checkout(db, gateway, req.items, req.origin or config.FRONTEND_URL, pricing=pricing,
                               user_id=req.user_id, currency=config.CURRENCY)
    return {"sessionId": result["session_id"], "url": result["url"], "orderNumber": result["order_number"]}


@app.post("/webhook")
async def stripe_webhook(request: Request, stripe_signature: Optional[str] = Header(None),
                         db: Database = Depends(get_db), gateway: StripeGateway = Depends(get_gateway)):
    payload = await request.body()
    return await run_in_threadpool(reconcile.handle_webhook, db, gateway, payload, stripe_signature)


@app.get("/order-status")
def order_status(session_id: str = Query(..., alias="sessionId"), db: Database = Depends(get_db),
                 gateway: StripeGateway = Depends(get_gateway)):
    return reconcile.poll_session(db, gateway, session_id)


@app.post("/checkout/success")
def checkout_success(req: CheckoutSuccessRequest, db: Database = Depends(get_db)):
    return reconcile.confirm_success(db, req.session_id)


# --- Contact ---

@app.post("/contact")
def contact(payload: ContactMessage, db: Database = Depends(get_db)):
    data = payload.model_dump()
    message_id = database.create_document("contact_message", data, database=db)
    outcome = notifications.dispatch_contact_notifications(data)
    db["contact_message"].update_one({"_id": ensure_object_id(message_id)}, {"$set": {"notifications": outcome}})
    return {"success": True, "id": message_id, "notifications": outcome}


# --- Promotions ---

@app.get("/promotions/active")
def active_promotion(db: Database = Depends(get_db)):
    promotion = resolve_active_promotion(db)
    return {"promotion": to_str_id(promotion), "pricing": pricing_from_promotion(promotion)}


# --- Admin: products ---

@app.post("/admin/products", dependencies=[Depends(require_admin)])
def create_product(payload: ProductCreate, db: Database = Depends(get_db)):
    data = payload.model_dump()
    data["slug"] = catalog.unique_slug(db, payload.slug or payload.name)
    data.update(catalog.in_stock_fields(data))
    product_id = database.create_document("product", data, database=db)
    return to_str_id(db["product"].find_one({"_id": ensure_object_id(product_id)}))


@app.patch("/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def update_product(product_id: str, payload: ProductUpdate, db: Database = Depends(get_db)):
    oid = ensure_object_id(product_id)
    current = db["product"].find_one({"_id": oid})
    if current is None:
        raise HTTPException(status_code=404, detail="Product not found")
    data = payload.model_dump(exclude_none=True)
    if "slug" in data or "name" in data:
        # an empty slug means derive it from the name again
        source = data.get("slug") or data.get("name") or current["name"]
        data["slug"] = catalog.unique_slug(db, source, exclude_id=oid)
    data["updated_at"] = now()
    db["product"].update_one({"_id": oid}, {"$set": data})
    doc = db["product"].find_one({"_id": oid})
    db["product"].update_one({"_id": oid}, {"$set": catalog.in_stock_fields(doc)})
    return to_str_id(db["product"].find_one({"_id": oid}))


@app.delete("/admin/products/{product_id}", dependencies=[Depends(require_admin)])
def delete_product(product_id: str, db: Database = Depends(get_db)):
    res = db["product"].delete_one({"_id": ensure_object_id(product_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Product not found")
    return {"deleted": True}


@app.post("/admin/products/{product_id}/stock", dependencies=[Depends(require_admin)])
def adjust_product_stock(product_id: str, payload: StockAdjustment, db: Database = Depends(get_db)):
    product = db["product"].find_one({"_id": ensure_object_id(product_id)})
    if not product:
        raise HTTPException(status_code=404, detail="Product not found")
    try:
        updated = catalog.adjust_stock(db, product, payload.color, payload.quantity, payload.delta)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return to_str_id(updated)


# --- Admin: orders ---

@app.get("/admin/orders", dependencies=[Depends(require_admin)])
def admin_orders(payment_status: Optional[str] = None, db: Database = Depends(get_db)):
    query = {"payment_status": payment_status} if payment_status else {}
    return [orders.format_order(o) for o in db["order"].find(query).sort([("created_at", -1)])]


@app.get("/admin/orders/{order_number}", dependencies=[Depends(require_admin)])
def admin_order_detail(order_number: str, db: Database = Depends(get_db)):
    return {"order": orders.format_order(orders.get_order(db, order_number))}


@app.patch("/admin/orders/{order_number}", dependencies=[Depends(require_admin)])
def admin_update_order(order_number: str, payload: DeliveryStatusUpdate, db: Database = Depends(get_db)):
    order = orders.update_delivery_status(db, order_number, payload.delivery_status)
    return {"success": True, "delivery_status": order["delivery_status"], "updated_at": order["updated_at"]}


@app.post("/admin/orders/{order_number}/refund", dependencies=[Depends(require_admin)])
def admin_refund_order(order_number: str, db: Database = Depends(get_db)):
    order = orders.refund_order(db, order_number)
    return {"success": True, "payment_status": order["payment_status"]}


@app.get("/admin/dashboard", dependencies=[Depends(require_admin)])
def admin_dashboard(db: Database = Depends(get_db)):
    counts = {status: 0 for status in orders.PAYMENT_TRANSITIONS}
    revenue = 0.0
    for row in db["order"].aggregate([
        {"$group": {"_id": "$payment_status", "count": {"$sum": 1}, "total": {"$sum": "$total_amount"}}}
    ]):
        counts[row["_id"]] = row["count"]
        if row["_id"] == "paid":
            revenue = round(row["total"], 2)
    return {
        "orders": counts,
        "revenue": revenue,
        "low_stock": catalog.low_stock_products(db),
        "stalled_stock_reductions": stock.stalled_reductions(db),
    }


# --- Admin: users ---

@app.get("/admin/users", dependencies=[Depends(require_admin)])
def admin_users(page: int = Query(1, ge=1), limit: int = Query(10, ge=1, le=100), search: Optional[str] = None,
                db: Database = Depends(get_db)):
    return users.list_users(db, page, limit, search)


@app.post("/admin/users", dependencies=[Depends(require_admin)])
def admin_create_user(payload: UserCreate, db: Database = Depends(get_db)):
    user = User(**payload.model_dump(exclude={"password"}))
    return {"user": users.create_user(db, user, payload.password)}


@app.get("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
def admin_user_detail(user_id: str, db: Database = Depends(get_db)):
    user = users.get_user(db, user_id)
    return {"user": user, "orders": [orders.format_order(o) for o in users.recent_orders(db, user["id"])]}


@app.patch("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
def admin_update_user(user_id: str, payload: UserUpdate, db: Database = Depends(get_db)):
    return {"user": users.update_user(db, user_id, payload.model_dump(exclude_none=True))}


@app.delete("/admin/users/{user_id}", dependencies=[Depends(require_admin)])
def admin_delete_user(user_id: str, db: Database = Depends(get_db)):
    users.delete_user(db, user_id)
    return {"deleted": True}


# --- Admin: promotions ---

@app.get("/admin/promotions", dependencies=[Depends(require_admin)])
def list_promotions(db: Database = Depends(get_db)):
    return [to_str_id(p) for p in db["promotion"].find().sort([("offer_valid_from", -1)])]


@app.post("/admin/promotions", dependencies=[Depends(require_admin)])
def create_promotion(payload: Promotion, request: Request, db: Database = Depends(get_db)):
    promotion_id = database.create_document("promotion", payload, database=db)
    request.app.state.pricing_channel.publish(f"promotion {promotion_id} created")
    return to_str_id(db["promotion"].find_one({"_id": ensure_object_id(promotion_id)}))


@app.patch("/admin/promotions/{promotion_id}", dependencies=[Depends(require_admin)])
def update_promotion(promotion_id: str, payload: PromotionUpdate, request: Request, db: Database = Depends(get_db)):
    oid = ensure_object_id(promotion_id)
    current = db["promotion"].find_one({"_id": oid})
    if not current:
        raise HTTPException(status_code=404, detail="Promotion not found")
    fields = set(Promotion.model_fields)
    merged = {k: v for k, v in current.items() if k in fields}
    merged.update(payload.model_dump(exclude_none=True))
    try:
        promotion = Promotion(**merged)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    db["promotion"].update_one({"_id": oid}, {"$set": {**promotion.model_dump(), "updated_at": now()}})
    request.app.state.pricing_channel.publish(f"promotion {promotion_id} updated")
    return to_str_id(db["promotion"].find_one({"_id": oid}))


@app.delete("/admin/promotions/{promotion_id}", dependencies=[Depends(require_admin)])
def delete_promotion(promotion_id: str, request: Request, db: Database = Depends(get_db)):
    res = db["promotion"].delete_one({"_id": ensure_object_id(promotion_id)})
    if res.deleted_count == 0:
        raise HTTPException(status_code=404, detail="Promotion not found")
    request.app.state.pricing_channel.publish(f"promotion {promotion_id} deleted")
    return {"deleted": True}


if __name__ == "__main__":
    import uvicorn
    port = int(os.getenv("PORT", 8000))
    uvicorn.run(app, host="0.0.0.0", port=port)
