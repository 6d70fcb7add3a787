"""
Database Schemas for the storefront

Each Pydantic model represents a collection in MongoDB (or a document embedded
in one). Collection name is the lowercase of the class name.
"""
from datetime import datetime
from typing import List, Literal, Optional

from pydantic import BaseModel, EmailStr, Field

Role = Literal["user", "admin"]
Size = Literal["XS", "S", "M", "L", "XL", "XXL", "One Size"]
ProductStatus = Literal["active", "archived"]
OrderStatus = Literal["pending", "processing", "shipped", "delivered", "cancelled", "refunded"]
NewsletterSource = Literal["homepage", "footer", "admin", "other"]


class Address(BaseModel):
    street: Optional[str] = Field(None, max_length=100)
    city: Optional[str] = Field(None, max_length=50)
    state: Optional[str] = Field(None, max_length=50)
    zip_code: Optional[str] = Field(None, max_length=20)
    country: Optional[str] = Field(None, max_length=50)


class User(BaseModel):
    name: str = Field(..., min_length=2, max_length=50, description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password: str = Field(..., min_length=6, description="Plain on input, stored hashed")
    phone: Optional[str] = None
    address: Optional[Address] = None
    avatar_url: Optional[str] = None
    role: Role = "user"
    is_active: bool = True


class Category(BaseModel):
    name: str = Field(..., min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    is_active: bool = True
    sort_order: int = 0


class CategoryUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=50)
    description: Optional[str] = Field(None, max_length=500)
    image: Optional[str] = None
    is_active: Optional[bool] = None
    sort_order: Optional[int] = None


class Variant(BaseModel):
    size: Size
    color: str = Field(..., min_length=1)
    color_code: str = "#000000"
    stock: int = Field(..., ge=0)
    sku: Optional[str] = None


class ProductImage(BaseModel):
    url: str
    alt: str = ""


class Measurements(BaseModel):
    chest: Optional[float] = Field(None, ge=0)
    waist: Optional[float] = Field(None, ge=0)
    hip: Optional[float] = Field(None, ge=0)
    length: Optional[float] = Field(None, ge=0)


class Product(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    description: str = Field(..., min_length=1, max_length=2000)
    price: float = Field(..., gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    on_sale: bool = False
    category: str = Field(..., description="Category id")
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: List[ProductImage] = []
    tags: List[str] = []
    featured: bool = False
    fabric: Optional[str] = None
    care_instructions: Optional[str] = None
    measurements: Optional[Measurements] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    variants: List[Variant] = Field(..., min_length=1)


class ProductUpdate(BaseModel):
    name: Optional[str] = Field(None, min_length=1, max_length=100)
    description: Optional[str] = Field(None, min_length=1, max_length=2000)
    price: Optional[float] = Field(None, gt=0)
    original_price: Optional[float] = Field(None, ge=0)
    discount_price: Optional[float] = Field(None, ge=0)
    sale_price: Optional[float] = Field(None, ge=0)
    on_sale: Optional[bool] = None
    category: Optional[str] = None
    subcategory: Optional[str] = None
    brand: Optional[str] = None
    images: Optional[List[ProductImage]] = None
    tags: Optional[List[str]] = None
    featured: Optional[bool] = None
    fabric: Optional[str] = None
    care_instructions: Optional[str] = None
    measurements: Optional[Measurements] = None
    seo_title: Optional[str] = None
    seo_description: Optional[str] = None
    variants: Optional[List[Variant]] = Field(None, min_length=1)


class Review(BaseModel):
    rating: int = Field(..., ge=1, le=5)
    comment: str = Field(..., min_length=1, max_length=500)


class ShippingAddress(BaseModel):
    first_name: str = Field(..., min_length=1)
    last_name: str = Field(..., min_length=1)
    email: EmailStr
    phone: str = Field(..., min_length=1)
    street: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    state: str = Field(..., min_length=1)
    zip_code: str = Field(..., min_length=1)
    country: str = Field(..., min_length=1)


class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    size: Size
    color: str = Field(..., min_length=1)


class OrderItem(BaseModel):
    """Line item frozen at order time."""
    product_id: str
    name: str
    image: Optional[str] = None
    price: float = Field(..., ge=0)
    quantity: int = Field(..., ge=1)
    size: str
    color: str
    sku: Optional[str] = None


class StatusChange(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: datetime


class Order(BaseModel):
    items: List[OrderLine]
    shipping_address: ShippingAddress
    payment_method: str = "stripe"
    guest_email: Optional[EmailStr] = None
    notes: Optional[str] = Field(None, max_length=500)
    # Figures shown to the shopper; checked against the server-side totals
    subtotal: Optional[float] = Field(None, ge=0)
    shipping: Optional[float] = Field(None, ge=0)
    tax: Optional[float] = Field(None, ge=0)
    total: Optional[float] = Field(None, ge=0)


class Newsletter(BaseModel):
    email: EmailStr
    source: NewsletterSource = "homepage"
