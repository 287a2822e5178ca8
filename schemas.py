"""
Database Schemas for the storefront back-office

Each Pydantic model below either describes a MongoDB collection or a request
body accepted by the core. Collection names are the snake_case class name:

- Product -> "product"
- User -> "user", GuestUser -> "guest_user"
- Order -> "order"
- Settings -> "settings"
- InventoryPurchase -> "inventory_purchase"

Identifiers referencing other documents (user_id, product_id) are stored as
hex strings.
"""

from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator

OrderStatus = Literal["pending", "processing", "delivered", "cancelled"]
PaymentStatus = Literal["pending", "paid", "failed"]
PaymentMethod = Literal["cash", "card", "paypal", "stripe"]
Role = Literal["user", "admin"]


def normalize_email(value: str) -> str:
    return value.strip().lower()


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


# ----------------------------------------------------------------------------
# Shared snapshots
# ----------------------------------------------------------------------------

class Address(BaseModel):
    address: Optional[str] = None
    city: Optional[str] = None
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: Optional[str] = None


class ShippingInfo(BaseModel):
    """Shipping snapshot frozen into the order; independent of the live account."""
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = Field(None, description="Recipient name; built from first and last name when absent")
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email: EmailStr = Field(..., description="Durable customer key for guest checkout")
    phone: Optional[str] = None
    mobile: Optional[str] = None
    mobile_country_code: str = Field("961", description="Dialling prefix for mobile")
    address: Optional[str] = None
    city: str = Field(..., min_length=1)
    state: Optional[str] = None
    zip_code: Optional[str] = None
    country: str = Field(..., min_length=1)

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, v):
        return normalize_email(v) if isinstance(v, str) else v

    @model_validator(mode="after")
    def fill_name(self):
        if not (self.name or "").strip():
            full = " ".join(p for p in (self.first_name, self.last_name) if p and p.strip())
            if not full:
                raise ValueError("name or first_name is required")
            self.name = full
        return self

    def contact_phone(self) -> Optional[str]:
        if self.mobile:
            return f"{self.mobile_country_code or ''}{self.mobile}"
        return self.phone

    def to_address(self) -> Address:
        return Address(
            address=self.address,
            city=self.city,
            state=self.state,
            zip_code=self.zip_code,
            country=self.country,
        )


class PaymentInfo(BaseModel):
    method: PaymentMethod = "cash"
    status: PaymentStatus = "pending"
    paid_at: Optional[datetime] = None


# ----------------------------------------------------------------------------
# Collections
# ----------------------------------------------------------------------------

class Product(BaseModel):
    """
    Products collection schema
    Collection name: "product"
    """
    name: str = Field(..., min_length=1, description="Product name")
    description: Optional[str] = Field(None, description="Product description")
    price: float = Field(..., ge=0, allow_inf_nan=False, description="Selling price")
    cost_price: float = Field(0, ge=0, allow_inf_nan=False, description="Cost basis per unit")
    stock: int = Field(0, ge=0, description="Available inventory")
    category: Optional[str] = Field(None, description="Category id or name")
    image_url: Optional[str] = None
    sizes: List[str] = Field(default_factory=list, description="Non-empty makes size mandatory")
    colors: List[str] = Field(default_factory=list, description="Non-empty makes color mandatory")
    is_hidden: bool = False
    featured: bool = False
    related_products: List[str] = Field(default_factory=list)


class User(BaseModel):
    """
    Users collection schema
    Collection name: "user"
    """
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Normalized email address")

    # Auth fields (stored in DB, but not returned in public responses)
    password_hash: Optional[str] = Field(None, description="Hashed password")

    phone: Optional[str] = None
    address: Optional[Address] = None
    role: Role = "user"
    is_verified: bool = False
    verification_token: Optional[str] = None
    verification_token_expires: Optional[datetime] = None


class GuestUser(BaseModel):
    """
    Placeholder identity for shoppers who checked out without an account
    Collection name: "guest_user"
    """
    name: str
    email: EmailStr
    phone: Optional[str] = None
    address: Optional[Address] = None


class OrderItem(BaseModel):
    product_id: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    cost_price: float = Field(0, ge=0)
    profit: float
    image_url: Optional[str] = None
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None


class Order(BaseModel):
    """
    Orders collection schema
    Collection name: "order"
    """
    user_id: Optional[str] = None
    order_items: List[OrderItem]
    shipping_info: ShippingInfo
    payment_info: PaymentInfo = Field(default_factory=PaymentInfo)
    items_price: float
    delivery_price: float
    total_price: float
    total_cost: float
    total_profit: float
    order_status: OrderStatus = "pending"
    is_guest_order: bool = False
    delivered_at: Optional[datetime] = None


class Settings(BaseModel):
    """
    Singleton settings document
    Collection name: "settings" (fixed _id "global")
    """
    default_delivery_price: float = Field(0, ge=0)


class InventoryPurchase(BaseModel):
    """
    Append-only restocking spend
    Collection name: "inventory_purchase"
    """
    amount: float = Field(..., ge=0, allow_inf_nan=False)
    date: datetime
    supplier: str = ""
    note: str = ""


# ----------------------------------------------------------------------------
# Request bodies
# ----------------------------------------------------------------------------

class CartLine(BaseModel):
    model_config = ConfigDict(extra="forbid")

    product_id: str = Field(..., min_length=1)
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, allow_inf_nan=False, description="Unit price charged")
    name: Optional[str] = Field(None, description="Display hint; the product name is what gets stored")
    image_url: Optional[str] = None
    selected_size: Optional[str] = None
    selected_color: Optional[str] = None

    @field_validator("selected_size", "selected_color", mode="before")
    @classmethod
    def blank_variant_is_none(cls, v):
        return _blank_to_none(v)


class PaymentInfoIn(BaseModel):
    model_config = ConfigDict(extra="forbid")

    method: PaymentMethod = "cash"
    status: PaymentStatus = "pending"


class OrderCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_items: List[CartLine] = Field(..., min_length=1)
    shipping_info: ShippingInfo
    payment_info: Optional[PaymentInfoIn] = None
    items_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    delivery_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    # Accepted for client compatibility, always recomputed
    total_price: Optional[float] = None


class OrderUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    order_status: Optional[OrderStatus] = None
    payment_status: Optional[PaymentStatus] = None
    delivery_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)


class ProductCreateRequest(Product):
    model_config = ConfigDict(extra="forbid")


class ProductUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    description: Optional[str] = None
    price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    cost_price: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    stock: Optional[int] = Field(None, ge=0)
    category: Optional[str] = None
    image_url: Optional[str] = None
    sizes: Optional[List[str]] = None
    colors: Optional[List[str]] = None
    is_hidden: Optional[bool] = None
    featured: Optional[bool] = None
    related_products: Optional[List[str]] = None


class CostPriceUpdate(BaseModel):
    cost_price: float


class CostPriceItem(BaseModel):
    product_id: str
    cost_price: float


class BulkCostPriceUpdate(BaseModel):
    updates: List[CostPriceItem]


class DeliveryPriceUpdate(BaseModel):
    default_delivery_price: float
    apply_to_all_orders: bool = False


class PurchaseCreateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: float = Field(..., gt=0, allow_inf_nan=False)
    date: Optional[datetime] = None
    supplier: str = ""
    note: str = ""


class PurchaseUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    amount: Optional[float] = Field(None, ge=0, allow_inf_nan=False)
    date: Optional[datetime] = None
    supplier: Optional[str] = None
    note: Optional[str] = None


class RegisterRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    email: EmailStr
    password: str = Field(..., min_length=6)
    phone: Optional[str] = None
    address: Optional[Address] = None

    @field_validator("email", mode="before")
    @classmethod
    def lower_email(cls, v):
        return normalize_email(v) if isinstance(v, str) else v


class ProfileUpdateRequest(BaseModel):
    model_config = ConfigDict(extra="forbid")

    name: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[Address] = None
    password: Optional[str] = Field(None, min_length=6)
