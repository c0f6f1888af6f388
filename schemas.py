"""
Lens Aura Schemas

Define MongoDB collection schemas using Pydantic models.
Each class maps to a collection with lowercase name.
"""
from datetime import datetime, timezone
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field, field_validator, model_validator

ProductType = Literal["glasses", "sunglasses", "contacts", "accessory"]
ProductStatus = Literal["active", "inactive"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded"]
DeliveryStatus = Literal[
    "ORDER_PLACED",
    "ORDER_CONFIRMED",
    "PROCESSING",
    "DISPATCHED",
    "IN_TRANSIT",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "CANCELLED",
    "RETURNED",
    "DELAYED",
]

VARIANT_PRODUCT_TYPES = ("glasses", "sunglasses")


class FrameColorVariant(BaseModel):
    color: str = Field(..., description="Frame color name")
    lens_color: Optional[str] = Field(None, description="Lens color")
    images: List[str] = Field(default_factory=list, description="Image URLs for this color")
    stock_quantity: int = Field(0, ge=0, description="Units in stock for this color")


class Product(BaseModel):
    name: str = Field(..., description="Product name")
    slug: Optional[str] = Field(None, description="URL-friendly unique slug, derived from name when empty")
    description: Optional[str] = Field(None, description="Product description")
    product_type: ProductType = Field(..., description="glasses, sunglasses, contacts or accessory")
    price: float = Field(..., ge=0, description="Price in base currency")
    discounted_price: Optional[float] = Field(None, ge=0, description="Sale price, when discounted")
    image_url: Optional[str] = Field(None, description="Primary image URL")
    category: Optional[str] = Field(None, description="Collection, e.g. signature or essential")
    brand: Optional[str] = Field(None, description="Brand name")
    status: ProductStatus = Field("active", description="active or inactive")
    stock_quantity: int = Field(0, ge=0, description="Units in stock for contacts and accessories")
    frame_color_variants: List[FrameColorVariant] = Field(default_factory=list, description="Per-color stock for frames")


class ShippingAddress(BaseModel):
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    street: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = None
    phone: Optional[str] = None


class PaymentDetails(BaseModel):
    transaction_id: Optional[str] = None
    payment_provider: str = "stripe"
    last_four: Optional[str] = None
    payment_date: Optional[datetime] = None
    failure_reason: Optional[str] = None
    failure_date: Optional[datetime] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int = Field(..., ge=1)
    color: Optional[str] = None
    image_url: Optional[str] = None
    product_type: Optional[str] = None
    original_price: Optional[float] = None
    is_promotional: bool = False


class Order(BaseModel):
    order_number: str
    user_id: Optional[str] = None
    customer_email: Optional[EmailStr] = None
    customer_phone: Optional[str] = None
    items: List[OrderItem]
    total_amount: float
    currency: str = "aud"
    shipping_address: Optional[ShippingAddress] = None
    payment_status: PaymentStatus = Field("pending", description="pending, paid, failed, refunded")
    delivery_status: DeliveryStatus = Field("ORDER_PLACED", description="Shipment progress")
    payment_intent: Optional[str] = None
    payment_details: PaymentDetails = Field(default_factory=PaymentDetails)
    stripe_session_id: str
    stock_reduced: bool = False


class Promotion(BaseModel):
    offer_name: str = Field(..., max_length=100)
    offer_valid_from: datetime
    offer_valid_to: datetime
    signature_original_price: float = Field(..., ge=0)
    signature_discounted_price: float = Field(..., ge=0)
    signature_price_for_two: float = Field(..., ge=0)
    essential_original_price: float = Field(..., ge=0)
    essential_discounted_price: float = Field(..., ge=0)
    essential_price_for_two: float = Field(..., ge=0)
    is_active: bool = True

    @field_validator("offer_valid_from", "offer_valid_to")
    @classmethod
    def as_utc(cls, value: datetime) -> datetime:
        # mongo returns naive UTC datetimes
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def check_window(self):
        if self.offer_valid_to <= self.offer_valid_from:
            raise ValueError("offer_valid_to must be after offer_valid_from")
        return self


class CartItem(BaseModel):
    product_id: str = Field(...)
    name: str
    price: float = Field(..., ge=0)
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None
    image_url: Optional[str] = None


class Cart(BaseModel):
    session_id: str
    items: List[CartItem] = Field(default_factory=list)
    subtotal: float = 0.0


class CheckoutItem(BaseModel):
    product_id: str
    quantity: int = Field(1, ge=1)
    color: Optional[str] = None


class CheckoutRequest(BaseModel):
    items: List[CheckoutItem]
    origin: Optional[str] = Field(None, description="Storefront origin for the success/cancel redirect")
    user_id: Optional[str] = None


UserRole = Literal["customer", "admin", "superadmin"]


class User(BaseModel):
    first_name: str = Field(..., min_length=1, description="First name")
    last_name: str = Field(..., min_length=1, description="Last name")
    email: EmailStr = Field(..., description="Login email, unique")
    role: UserRole = Field("customer", description="customer, admin or superadmin")
    phone_number: Optional[str] = Field(None, description="Contact phone")


class ContactMessage(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    email: EmailStr
    subject: str = Field(..., min_length=1, max_length=100, description="Topic key, e.g. order-status")
    message: str = Field(..., min_length=1, max_length=5000)
