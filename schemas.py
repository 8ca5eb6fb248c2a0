"""
Database Schemas for the S.phone storefront

Each collection model corresponds to a MongoDB collection. Collection name is
the lowercase class name ("user", "product", "order", "cartitem"). Documents
use camelCase field names; the storefront and admin UIs read them as-is.
"""
from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic import ValidationError as PydanticValidationError
from pydantic.alias_generators import to_camel

from errors import ValidationError

StorageCode = Literal["64", "128", "256", "512", "1024"]
VariantConditionCode = Literal["neuf_sous_blister", "neuf_sans_boite", "etat_parfait", "tres_bon_etat"]
LegacyConditionCode = Literal["new_sealed", "new_open", "perfect", "good"]
Category = Literal["phones", "cases", "accessories", "watches", "earphones", "electronics"]
OrderStatus = Literal["pending", "paid", "shipped", "delivered", "cancelled"]

TOTAL_TOLERANCE = 0.01


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# -----------------------------
# Collection models
# -----------------------------

class User(CamelModel):
    firstname: str = Field(..., min_length=2, max_length=50)
    lastname: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: Optional[str] = None
    password_hash: str = Field(..., description="BCrypt hash of the password")
    role: Literal["user", "admin"] = "user"


class ColorStock(CamelModel):
    name: str = Field(..., min_length=1)
    stock: int = Field(0, ge=0)


class VariantLeaf(CamelModel):
    """Price and per-color stock of one (storage, condition) pair."""
    price: float = Field(..., gt=0)
    public_price: Optional[float] = Field(None, ge=0)
    colors: List[ColorStock] = Field(..., min_length=1)


class LegacyCondition(CamelModel):
    price: float = Field(0, ge=0)
    stock: int = Field(0, ge=0)
    colors: List[str] = Field(default_factory=list)


class SpecItem(CamelModel):
    label: str
    value: str


class Product(CamelModel):
    name: str = Field(..., min_length=3, max_length=100)
    description: str = Field(..., min_length=10, max_length=2000)
    category: Category
    brand: Optional[str] = None
    model: Optional[str] = None
    images: List[str] = Field(default_factory=list, max_length=10)
    specifications: Dict[str, List[SpecItem]] = Field(default_factory=dict)
    # variants[storage][condition] = {price, publicPrice, colors: [{name, stock}]}
    variants: Dict[StorageCode, Dict[VariantConditionCode, VariantLeaf]] = Field(default_factory=dict)
    available_storages: List[StorageCode] = Field(default_factory=list)
    # Legacy model: conditions[condition] = {price, stock, colors: [name]}
    conditions: Dict[LegacyConditionCode, LegacyCondition] = Field(default_factory=dict)
    # Flat fallback
    price: float = Field(0, ge=0)
    public_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    colors: List[str] = Field(default_factory=list)
    featured: bool = False
    is_best_seller: bool = False
    best_seller_order: Optional[int] = Field(None, ge=1, le=4)
    sold_count: int = Field(0, ge=0)
    rating: float = Field(0, ge=0, le=5)
    num_reviews: int = Field(0, ge=0)

    @model_validator(mode="after")
    def check_models(self):
        if self.variants and self.conditions:
            raise ValueError("A product cannot have both variants and legacy conditions")
        if sorted(self.available_storages) != sorted(self.variants.keys()):
            raise ValueError("availableStorages must match the variant storages")
        return self


class OrderItem(CamelModel):
    product: str = Field(..., description="Product id")
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price snapshot")
    storage: Optional[StorageCode] = None
    condition: Optional[Union[VariantConditionCode, LegacyConditionCode]] = None
    color: Optional[str] = None
    image: str = ""


class ShippingAddress(CamelModel):
    street: Optional[str] = None
    city: Optional[str] = None
    postal_code: Optional[str] = None
    country: Optional[str] = "France"


class Order(CamelModel):
    user: str = Field(..., description="Owning user id")
    items: List[OrderItem] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Literal["card", "paypal", "stripe"] = "stripe"
    payment_status: Literal["pending", "paid"] = "pending"
    payment_result: Optional[Dict[str, Any]] = None
    status: OrderStatus = "pending"
    is_paid: bool = False
    paid_at: Optional[datetime] = None
    is_delivered: bool = False
    delivered_at: Optional[datetime] = None
    shipping_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    stock_reserved: bool = False
    checkout_session_id: Optional[str] = None

    def items_total(self) -> float:
        return sum(item.price * item.quantity for item in self.items)

    @model_validator(mode="after")
    def check_consistency(self):
        expected = self.items_total() + self.shipping_price + self.tax_price
        if abs(self.total_amount - expected) > TOTAL_TOLERANCE:
            raise ValueError(
                f"Total amount ({self.total_amount}) does not match the items total ({round(expected, 2)})"
            )
        if self.is_paid != (self.paid_at is not None):
            raise ValueError("isPaid and paidAt must be set together")
        if self.is_delivered != (self.delivered_at is not None):
            raise ValueError("isDelivered and deliveredAt must be set together")
        return self


class CartItem(CamelModel):
    user: str
    product: str
    name: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    storage: Optional[StorageCode] = None
    condition: Optional[str] = None
    color: Optional[str] = None


def validate_document(model_cls, data: dict) -> dict:
    """Validate a document against its collection model before persistence."""
    try:
        return model_cls.model_validate(data).model_dump(by_alias=True)
    except PydanticValidationError as exc:
        messages = [err["msg"].removeprefix("Value error, ") for err in exc.errors()]
        raise ValidationError(", ".join(messages))


# -----------------------------
# Request payloads
# -----------------------------

class UserCreate(CamelModel):
    firstname: str = Field(..., min_length=2, max_length=50)
    lastname: str = Field(..., min_length=2, max_length=50)
    email: EmailStr
    phone: str
    password: str = Field(..., min_length=6)


class UserOut(CamelModel):
    id: str
    firstname: str
    lastname: str
    email: EmailStr
    phone: Optional[str] = None
    role: str


class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"
    user: Optional[UserOut] = None


class Selection(CamelModel):
    """A requested configuration: (storage, condition, color) or legacy (condition, color)."""
    storage: Optional[str] = None
    condition: Optional[str] = None
    color: Optional[str] = None

    @field_validator("storage", "condition", "color", mode="before")
    @classmethod
    def blank_to_none(cls, v):
        if v is None:
            return None
        v = str(v).strip()
        return v or None


class OrderItemIn(Selection):
    product_id: str
    quantity: int = Field(..., ge=1)


class OrderCreate(CamelModel):
    items: List[OrderItemIn] = Field(..., min_length=1)
    shipping_address: Optional[ShippingAddress] = None
    payment_method: Literal["card", "paypal", "stripe"] = "stripe"
    shipping_price: float = Field(0, ge=0)
    tax_price: float = Field(0, ge=0)


class CheckoutItemIn(OrderItemIn):
    price: float = Field(..., gt=0)
    name: str


class CheckoutIn(CamelModel):
    items: List[CheckoutItemIn] = Field(..., min_length=1)


class CartItemIn(OrderItemIn):
    pass


class ProductUpdate(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    brand: Optional[str] = None
    model: Optional[str] = None
    images: Optional[List[str]] = None
    specifications: Optional[Any] = None
    price: Optional[float] = None
    public_price: Optional[float] = None
    stock: Optional[int] = None
    colors: Optional[List[str]] = None
    variants: Optional[Dict[str, Any]] = None
    conditions: Optional[Dict[str, Any]] = None
    featured: Optional[bool] = None
    sold_count: Optional[int] = None


class ProductCreate(ProductUpdate):
    name: str
    description: str
    category: str


class BestSellerOrderIn(BaseModel):
    order: int = Field(..., ge=1, le=4)
