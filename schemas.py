"""
Database Schemas for the E-commerce SaaS

Each Pydantic model corresponds to a MongoDB collection.
Collection name is the lowercase of the class name.

- User -> "user"
- Address -> "address"
- Product -> "product"
- Category -> "category"
- Banner -> "banner"
- Order -> "order"

Cart lines live inside the user document. References between documents are
string ids.
"""

from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, EmailStr, Field


class OrderStatus(str, Enum):
    AWAITING_PAYMENT = "AwaitingPayment"
    PAID = "Paid"
    SHIPPED = "Shipped"
    COMPLETED = "Completed"
    CANCELLED = "Cancelled"


class CartItem(BaseModel):
    product: str = Field(..., description="ID of the product")
    quantity: int = Field(1, ge=1, description="Quantity of the product")


class User(BaseModel):
    """Users collection schema"""
    username: str = Field(..., min_length=1, description="Unique login handle")
    password_hash: str = Field(..., description="Salted password hash")
    nickname: str = Field("user", description="Display name")
    avatar: str = ""
    gender: str = ""
    email: Optional[EmailStr] = None
    role: str = Field("user", description="Role: user or admin")
    address: List[str] = Field(default_factory=list, description="Owned address ids, in insertion order")
    default_address: Optional[str] = Field(None, description="One of the owned address ids, or empty")
    cart: List[CartItem] = Field(default_factory=list)
    orders: List[str] = Field(default_factory=list, description="Order ids")


class Address(BaseModel):
    """Addresses collection schema"""
    user: str = Field(..., description="Owner user id")
    detail: str = Field(..., description="Free-form address text")
    deleted: bool = Field(False, description="Set when removal starts; the record is deleted after unlinking")


class Product(BaseModel):
    """Products collection schema"""
    name: str = Field(..., description="Product name")
    price: float = Field(..., ge=0, description="Unit price")
    stock: int = Field(0, ge=0)
    desc: Optional[str] = Field(None, description="Product description")
    cover: Optional[str] = Field(None, description="Primary image URL")
    categories: List[str] = Field(default_factory=list, description="Category ids")
    banners: List[str] = Field(default_factory=list, description="Banner ids")
    hot: bool = Field(False, description="Listed among hot products")
    status: bool = Field(True, description="Whether the product is visible")


class Category(BaseModel):
    name: str
    desc: Optional[str] = None


class Banner(BaseModel):
    title: str
    image: Optional[str] = None
    url: Optional[str] = None
    rank: Optional[int] = None
    desc: Optional[str] = None
    status: bool = True


class OrderItem(BaseModel):
    product: str
    name: str
    price: float = Field(..., ge=0, description="Unit price at order time")
    quantity: int = Field(..., ge=1)


class Order(BaseModel):
    user: str
    address: Optional[str] = Field(None, description="Shipping address id at order time")
    shipping_detail: Optional[str] = Field(None, description="Shipping address text at order time")
    products: List[OrderItem]
    price: float = Field(..., ge=0, description="Total, computed once at creation")
    status: OrderStatus = OrderStatus.AWAITING_PAYMENT
