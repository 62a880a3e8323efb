"""
Database Schemas for the jewelry catalog app

Each document model maps to a MongoDB collection named after the lowercase
class name:
- User -> "user"
- Catalog -> "catalog"
- Product -> "product"
- Order -> "order"
- Notification -> "notification"
- SizePreset -> "sizepreset"
- ClaspImage -> "claspimage"
- Wishlist -> "wishlist"

Fields are declared in snake_case and stored/serialized in camelCase so the
collections stay compatible with the mobile client. References to other
documents are canonical id strings.
"""
from typing import Any, Dict, List, Literal, Optional

from pydantic import BaseModel, ConfigDict, EmailStr, Field
from pydantic.alias_generators import to_camel

Role = Literal["user", "admin"]
OrderStatus = Literal["pending", "confirmed", "shipped", "delivered", "cancelled"]
JewelryType = Literal["bracelet", "bague", "gourmette"]

DEFAULT_IMAGE_URL = "https://via.placeholder.com/150"


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


# ---------- Documents ----------

class User(CamelModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address, stored lower-case")
    password: str = Field(..., description="BCrypt password hash")
    phone: str = ""
    role: Role = "user"
    is_admin: bool = Field(False, description="Mirror of role == 'admin'")
    is_active: bool = True
    invited_by: Optional[str] = None
    expo_push_tokens: List[str] = Field(default_factory=list)


class Catalog(CamelModel):
    name: str
    description: str = ""
    owner_id: str
    allowed_user_ids: List[str] = Field(default_factory=list)
    is_public: bool = True
    products: List[str] = Field(default_factory=list, description="Display order of product ids")


class Product(CamelModel):
    name: str
    description: str = ""
    type: str = "Other"
    serial_number: str
    image_url: str = DEFAULT_IMAGE_URL
    price: float = Field(0, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    show_weight: bool = False
    height: Optional[str] = None
    clasp: Optional[str] = None
    size: Optional[str] = None
    available_sizes: List[str] = Field(default_factory=list)
    available_heights: List[str] = Field(default_factory=list)
    stock: int = Field(1, ge=0)
    catalog_id: str
    created_by: str
    accessible_to: List[str] = Field(default_factory=list)
    is_active: bool = True


class OrderItem(CamelModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    price: float = Field(..., ge=0)
    name: str
    size: Optional[str] = None
    clasp: Optional[str] = None
    height: Optional[str] = None
    weight: Optional[float] = None


class Order(CamelModel):
    user_id: str
    catalog_id: str
    items: List[OrderItem]
    status: OrderStatus = "pending"
    total_amount: float = Field(..., ge=0)
    notes: str = ""


class Notification(CamelModel):
    user: str
    title: str
    body: str
    data: Dict[str, Any] = Field(default_factory=dict)
    read: bool = False


class SizePreset(CamelModel):
    type: JewelryType
    available_sizes: List[str] = Field(default_factory=list)
    available_heights: List[str] = Field(default_factory=list)


class ClaspImage(CamelModel):
    clasp_type: str
    image_url: str
    label: str = ""
    created_by: str


class Wishlist(CamelModel):
    user_id: str
    product_id: str


# ---------- Auth requests ----------

class RegisterRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=6)
    name: str = Field(..., min_length=1)
    phone: Optional[str] = None


class LoginRequest(CamelModel):
    email: EmailStr
    password: str = Field(..., min_length=1)


class InviteRequest(CamelModel):
    email: EmailStr
    name: str = Field(..., min_length=1)


# ---------- User administration ----------

class UserCreateRequest(CamelModel):
    name: str = Field(..., min_length=1)
    email: EmailStr
    password: str = Field(..., min_length=6)
    role: Role = "user"


class UserUpdateRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: Optional[Role] = None
    is_active: Optional[bool] = None


class ProfileUpdateRequest(CamelModel):
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    phone: Optional[str] = None


class PushTokenRequest(CamelModel):
    token: str = Field(..., min_length=1)


# ---------- Catalogs & products ----------

class CatalogCreateRequest(CamelModel):
    name: Optional[str] = None
    description: str = ""
    allowed_user_ids: List[str] = Field(default_factory=list)
    is_public: bool = True


class CatalogUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    allowed_user_ids: Optional[List[str]] = None
    is_public: Optional[bool] = None


class PermissionsRequest(CamelModel):
    allowed_user_ids: Optional[List[str]] = None
    is_public: Optional[bool] = None


class ProductSpec(CamelModel):
    """Product fields accepted from clients; ownership fields are set server-side."""
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    serial_number: Optional[str] = None
    image_url: Optional[str] = None
    price: float = Field(0, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    show_weight: bool = False
    height: Optional[str] = None
    clasp: Optional[str] = None
    size: Optional[str] = None
    available_sizes: List[str] = Field(default_factory=list)
    available_heights: List[str] = Field(default_factory=list)
    stock: int = Field(1, ge=0)


class ProductCreateRequest(ProductSpec):
    catalog_id: Optional[str] = None
    accessible_to: List[str] = Field(default_factory=list)


class ProductUpdateRequest(CamelModel):
    name: Optional[str] = None
    description: Optional[str] = None
    type: Optional[str] = None
    serial_number: Optional[str] = None
    image_url: Optional[str] = None
    price: Optional[float] = Field(None, ge=0)
    weight: Optional[float] = Field(None, ge=0)
    show_weight: Optional[bool] = None
    height: Optional[str] = None
    clasp: Optional[str] = None
    size: Optional[str] = None
    available_sizes: Optional[List[str]] = None
    available_heights: Optional[List[str]] = None
    stock: Optional[int] = Field(None, ge=0)
    catalog_id: Optional[str] = None
    accessible_to: Optional[List[str]] = None
    is_active: Optional[bool] = None


class BulkProductsRequest(CamelModel):
    products: List[ProductSpec] = Field(default_factory=list)
    existing_product_ids: List[str] = Field(default_factory=list)


class ReorderRequest(CamelModel):
    product_ids: List[str]


class AssignRequest(CamelModel):
    user_ids: List[str]


# ---------- Orders ----------

class OrderItemRequest(CamelModel):
    product_id: Optional[str] = None
    quantity: int = 0
    size: Optional[str] = None
    clasp: Optional[str] = None
    height: Optional[str] = None
    # Ignored: the price always comes from the product document.
    price: Optional[float] = None


class OrderCreateRequest(CamelModel):
    catalog_id: Optional[str] = None
    items: List[OrderItemRequest] = Field(default_factory=list)
    notes: str = ""


class OrderStatusRequest(CamelModel):
    status: Optional[str] = None


# ---------- Presets ----------

class SizePresetRequest(CamelModel):
    available_sizes: List[str] = Field(default_factory=list)
    available_heights: List[str] = Field(default_factory=list)


class ClaspImageRequest(CamelModel):
    clasp_type: Optional[str] = None
    image_url: Optional[str] = None
    label: Optional[str] = None


class Base64ImageRequest(CamelModel):
    image: Optional[str] = None
    filename: Optional[str] = None
    mimetype: str = "image/jpeg"
