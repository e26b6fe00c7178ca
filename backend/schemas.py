"""
Database Schemas for the Recycling Marketplace
Each Pydantic model represents a MongoDB collection (collection name = class name lowercased).
Users are split into two registries: Seller -> "seller", Buyer -> "buyer".
"""
from datetime import datetime
from typing import List, Optional
from pydantic import BaseModel, Field, EmailStr


# User registries
class Account(BaseModel):
    email: EmailStr
    username: str
    password_hash: str


class Seller(Account):
    pass


class Buyer(Account):
    pass


# Profiles (one per user, either role)
class Profile(BaseModel):
    user_id: str
    role: str = Field(description="buyer | seller")
    username: Optional[str] = None
    phone_number: Optional[str] = None
    location: Optional[str] = None
    avatar_url: Optional[str] = Field(default=None, description="base64 data URL")


# Products (recyclable materials)
class Product(BaseModel):
    name: str = Field(min_length=1)
    price: float = Field(ge=0)
    quantity: int = Field(ge=0)
    seller_id: Optional[str] = None
    weight: Optional[str] = Field(default=None, description='free text, e.g. "5kg"')
    material_type: Optional[str] = None
    description: Optional[str] = None
    photo_url: Optional[str] = None


# Cart lines keep a denormalized copy of the product at the time it was added
class CartItem(BaseModel):
    product_id: str
    name: str
    price: float
    qty: int = 1
    seller_id: Optional[str] = None
    seller_name: Optional[str] = None
    weight: Optional[str] = None
    material_type: Optional[str] = None
    photo_url: Optional[str] = None


# Orders (one per seller per checkout)
class OrderItem(BaseModel):
    product_id: str
    name: str
    price: float
    quantity: int


class Order(BaseModel):
    buyer_id: str
    buyer_name: str
    seller_id: str
    seller_name: str
    items: List[OrderItem]
    total_amount: float
    status: str = Field(default="pending", description="pending|confirmed")
    order_number: Optional[str] = None
    confirmed_at: Optional[datetime] = None


# Chats: _id is the derived chat id (see messaging.derive_chat_id)
class Chat(BaseModel):
    participants: List[str]


class Message(BaseModel):
    chat_id: str
    sender_id: str
    receiver_id: str
    content: str
    read: bool = False
