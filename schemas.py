"""
Database Schemas

Each Pydantic model represents a MongoDB collection. The collection name is
the lowercase class name:
- Product -> "product" collection
- Variant -> "variant" collection
- Cart -> "cart" collection (one per user)

References between documents are stored as id strings.
"""
from datetime import datetime
from typing import Dict, List, Literal, Optional

from pydantic import BaseModel, Field, model_validator

# ---------- Enums ----------

Role = Literal["user", "admin", "seller"]
DiscountType = Literal["percentage", "fixed"]
CartAction = Literal["increment", "decrement"]

ORDER_STATUSES = ("pending", "processed", "shipped", "delivered", "cancelled", "refunded", "onrefund")
PAYMENT_STATUSES = ("pending", "paid", "failed", "refunded", "onrefund")

OrderStatus = Literal["pending", "processed", "shipped", "delivered", "cancelled", "refunded", "onrefund"]
PaymentStatus = Literal["pending", "paid", "failed", "refunded", "onrefund"]

# ---------- Users ----------

class User(BaseModel):
    name: str
    email: str
    role: Role = "user"

# ---------- Catalog ----------

class CategoryOffer(BaseModel):
    title: str
    discount_percentage: float = Field(..., gt=0, le=100)
    start_date: datetime
    end_date: datetime
    is_active: bool = True

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must not be before start_date")
        return self

class Category(BaseModel):
    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    offer: Optional[CategoryOffer] = None

class Variant(BaseModel):
    product_id: Optional[str] = None
    sku: str
    price: float = Field(..., ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    stock: int = Field(0, ge=0)
    attributes: Dict[str, str] = Field(default_factory=dict, description="e.g. {'color': 'red', 'size': 'M'}")
    images: List[str] = Field(default_factory=list)

class Product(BaseModel):
    """Price/stock live on the variants when the product has any."""
    name: str
    description: Optional[str] = None
    category: str = Field(..., description="Category id")
    brand: Optional[str] = Field(None, description="Brand id")
    images: List[str] = Field(default_factory=list)
    price: Optional[float] = Field(None, ge=0)
    offer_price: Optional[float] = Field(None, ge=0)
    stock: Optional[int] = Field(None, ge=0)
    variants: List[str] = Field(default_factory=list, description="Variant ids")
    average_rating: float = 0
    total_ratings: int = 0

# ---------- Reviews ----------

class Rating(BaseModel):
    """One per (product_id, user_id); a second review replaces the first."""
    product_id: str
    user_id: str
    rating: int = Field(..., ge=1, le=5)
    review: str = Field(..., min_length=1)

# ---------- Coupons ----------

class Coupon(BaseModel):
    code: str = Field(..., min_length=1)
    discount_type: DiscountType
    discount_amount: float = Field(..., gt=0)
    min_purchase: float = Field(0, ge=0)
    max_discount: Optional[float] = Field(None, gt=0, description="Cap on the discount; none means uncapped")
    expiry_date: datetime
    description: Optional[str] = None

class AppliedCoupon(BaseModel):
    code: str
    discount_type: DiscountType
    original_amount: float
    discount_amount: float
    final_amount: float

# ---------- Cart ----------

class CartItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(1, ge=1)
    price: float = Field(..., ge=0, description="Captured at add-time")
    offer_price: Optional[float] = Field(None, ge=0)

class Cart(BaseModel):
    user_id: str
    items: List[CartItem] = Field(default_factory=list)
    total_price: float = 0
    coupon_applied: Optional[AppliedCoupon] = None
    revision: int = 0

# ---------- Orders ----------

class OrderItem(BaseModel):
    product_id: str
    variant_id: Optional[str] = None
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0, description="Unit price at purchase")

class Order(BaseModel):
    user_id: str
    items: List[OrderItem] = Field(..., min_length=1)
    subtotal: float = Field(..., ge=0)
    discount: float = Field(0, ge=0)
    total_amount: float = Field(..., ge=0)
    coupon: Optional[AppliedCoupon] = None
    status: OrderStatus = "pending"
    payment_status: PaymentStatus = "pending"
    is_deleted: bool = False
    deleted_at: Optional[datetime] = None
