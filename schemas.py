"""
Database Schemas for the Plants for Life storefront

Each Pydantic model up top represents a collection in MongoDB.
Collection name is the lowercase of the class name, prefixed by APP_ID.
Request/response bodies follow below.
"""
from datetime import datetime
from typing import List, Literal, Optional, Union
from pydantic import BaseModel, Field, EmailStr

Category = Literal["seeds", "plants"]

OrderStatus = Literal[
    "Order Placed",
    "Processing",
    "Shipped",
    "Out for Delivery",
    "Delivered",
    "Cancelled",
]


class User(BaseModel):
    name: str = Field(..., description="Full name")
    email: EmailStr = Field(..., description="Email address")
    password_hash: str = Field(..., description="Hashed password")
    role: Literal["customer", "admin"] = Field("customer")


class Product(BaseModel):
    name: str
    description: str
    category: Category
    image_url: str
    price: float = Field(..., gt=0)
    stock: int = Field(0, ge=0)


class OrderItem(BaseModel):
    product_id: str
    name: str = Field(..., description="Snapshot of product name at order time")
    quantity: int = Field(..., ge=1)
    price: float = Field(..., gt=0, description="Unit price at order time")
    image_url: Optional[str] = None


class CustomerInfo(BaseModel):
    name: str = ""
    address: str = ""
    phone_number: str = ""


class Order(BaseModel):
    order_number: str
    user_id: str
    customer_info: CustomerInfo
    items: List[OrderItem]
    total_amount: float = Field(..., ge=0)
    payment_method: str = "Cash on Delivery"
    status: OrderStatus = "Order Placed"
    tracking_number: str = ""
    order_date: datetime
    last_updated: datetime


class Profile(BaseModel):
    name: str = ""
    address: str = ""
    phone_number: str = ""
    last_updated: Optional[datetime] = None


# Auth
class Token(BaseModel):
    access_token: str
    token_type: str = "bearer"


class RegisterInput(BaseModel):
    name: str
    email: EmailStr
    password: str = Field(..., min_length=6)


class UserOut(BaseModel):
    id: str
    name: Optional[str] = None
    email: Optional[EmailStr] = None
    role: str = "customer"
    is_anonymous: bool = False


# Catalog. Raw form values are accepted and parsed by catalog.validate_product
class ProductIn(BaseModel):
    name: str = ""
    description: str = ""
    category: str = ""
    image_url: str = ""
    price: Union[float, str, None] = None
    stock: Union[int, str, None] = 0


class ProductPatch(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    category: Optional[str] = None
    image_url: Optional[str] = None
    price: Union[float, str, None] = None
    stock: Union[int, str, None] = None


# Cart / checkout
class CartLine(BaseModel):
    product_id: str
    quantity: int = 1


class StockNotice(BaseModel):
    product_id: str
    name: str
    requested: int
    available: int


class CartPreviewRequest(BaseModel):
    items: List[CartLine] = []


class CheckoutRequest(BaseModel):
    items: List[CartLine]
    customer_info: CustomerInfo


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: str = ""
    override: bool = Field(False, description="Skip the transition table, for corrections")
