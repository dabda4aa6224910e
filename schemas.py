"""
Database Schemas

MongoDB collection schemas for the Duha Threads storefront, defined as
Pydantic models. Model name lowercased is the collection name:
- User -> "user"
- Product -> "product"
- Cartitem -> "cartitem"
- Wishlistitem -> "wishlistitem"
- Order -> "order"
- Productrating -> "productrating"
- Designtemplate -> "designtemplate"
- Eventlog -> "eventlog"
- Customorder -> "customorder"
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

OrderStatus = Literal["Pending", "Accepted", "In Printing", "Out for Delivery", "Delivered", "Cancelled"]
PaymentMethod = Literal["stripe", "chapa", "pay_on_delivery"]
CustomOrderStatus = Literal[
    "PENDING_REVIEW",
    "APPROVED",
    "IN_DESIGN",
    "IN_PRINTING",
    "READY_FOR_PICKUP",
    "OUT_FOR_DELIVERY",
    "DELIVERED",
    "CANCELLED",
]
EventType = Literal["template_view", "template_apply", "custom_order_started", "custom_order_completed"]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lowercased")
    password_hash: Optional[str] = Field(None, description="BCrypt hashed password, empty for OAuth-only accounts")
    role: Literal["user", "admin"] = "user"
    status: Literal["active", "inactive"] = "active"
    image: Optional[str] = None
    phone: Optional[str] = None
    default_address: Optional[str] = None
    marketing_email_opt_in: bool = False
    marketing_sms_opt_in: bool = False
    two_factor_enabled: bool = False
    two_factor_code: Optional[str] = Field(None, description="sha256 of the pending verification code")
    two_factor_expires_at: Optional[datetime] = None
    two_factor_verified_at: Optional[datetime] = None


class ProductImage(BaseModel):
    url: str
    alt: str
    is_primary: bool = False


def primary_image(product: dict) -> Optional[dict]:
    """The flagged primary image of a stored product, else its first image"""
    images = product.get("images") or []
    for image in images:
        if image.get("is_primary"):
            return image
    return images[0] if images else None


class Product(BaseModel):
    name: str
    slug: str
    description: str
    base_price: float = Field(..., ge=0)
    category: str = "general"
    colors: List[str] = Field(default_factory=list)
    sizes: List[str] = Field(default_factory=list)
    images: List[ProductImage] = Field(default_factory=list)
    is_active: bool = True
    is_featured: bool = False
    featured_rank: Optional[int] = None
    is_hero: bool = False
    display_order: float = 0
    sales_count: int = 0
    view_count: int = 0
    sku: Optional[str] = None
    rating_average: float = 0
    rating_count: int = 0


class Cartitem(BaseModel):
    user_id: str
    product_id: str
    size: str
    color: str
    quantity: int = Field(..., ge=1)


class Wishlistitem(BaseModel):
    user_id: str
    product_id: str


class OrderItem(BaseModel):
    product_id: str
    name: str = Field(..., description="Product name snapshot at purchase time")
    unit_price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    subtotal: float = Field(..., ge=0)
    size: str
    color: str
    image_url: Optional[str] = None


class StatusChange(BaseModel):
    status: str
    changed_at: datetime
    changed_by: str


class Order(BaseModel):
    order_number: str
    user_id: str
    items: List[OrderItem]
    delivery_name: Optional[str] = None
    delivery_address: str
    phone: str
    email: EmailStr
    notes: Optional[str] = None
    subtotal: float = Field(..., ge=0)
    total: float = Field(..., ge=0)
    currency: str = "USD"
    status: OrderStatus = "Pending"
    payment_method: PaymentMethod = "stripe"
    payment_status: Literal["unpaid", "paid", "failed"] = "unpaid"
    payment_verified: bool = False
    payment_reference: Optional[str] = None
    refund_amount: Optional[float] = None
    status_history: List[StatusChange] = Field(default_factory=list)


class Productrating(BaseModel):
    product_id: str
    user_id: str
    order_id: Optional[str] = None
    rating: int = Field(..., ge=1, le=5)
    comment: Optional[str] = Field(None, max_length=500)
    featured: bool = False


class TemplatePlacement(BaseModel):
    placement_key: str = Field(..., min_length=1, description="front | back | chest ...")
    type: Literal["image", "text", "combo"]
    image_url: Optional[str] = None
    text: Optional[str] = None
    font: Optional[str] = None
    color: Optional[str] = None


class Designtemplate(BaseModel):
    name: str
    slug: str
    description: Optional[str] = None
    preview_image_url: Optional[str] = None
    placements: List[TemplatePlacement] = Field(default_factory=list)
    tags: List[str] = Field(default_factory=list)
    is_featured: bool = False
    is_active: bool = True
    usage_count: int = 0


class Eventlog(BaseModel):
    type: EventType
    entity_id: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    user_id: Optional[str] = None


class Pricing(BaseModel):
    base_price: float
    placement_cost: float
    quantity_multiplier: int
    estimated_total: float
    final_total: Optional[float] = None


class Customorder(BaseModel):
    user_id: str
    base_color: Literal["white", "black"]
    placement: Literal["front", "back", "chest_left", "chest_right"]
    vertical_position: Literal["upper", "center", "lower"]
    design_type: Literal["text", "image"]
    design_text: Optional[str] = None
    design_font: Optional[str] = None
    design_color: Optional[str] = None
    design_image_url: Optional[str] = None
    template_id: Optional[str] = None
    quantity: int = Field(1, ge=1, le=20)
    delivery_name: str
    delivery_address: str
    phone: str
    email: EmailStr
    notes: str = ""
    pricing: Pricing
    status: CustomOrderStatus = "PENDING_REVIEW"
    status_history: List[StatusChange] = Field(default_factory=list)
    admin_notes: Optional[str] = None
