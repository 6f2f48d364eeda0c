from datetime import datetime
from decimal import Decimal
from typing import Literal, Optional

from pydantic import BaseModel, Field

OrderStatus = Literal["pending", "completed", "failed"]

PENDING: OrderStatus = "pending"
COMPLETED: OrderStatus = "completed"
FAILED: OrderStatus = "failed"


class CartItem(BaseModel):
    dish: str = Field(min_length=1)
    price: Decimal = Field(ge=0, decimal_places=2)
    qnty: int = Field(ge=1)


class Address(BaseModel):
    line1: str
    postal_code: str
    city: str
    state: str
    country: str = Field(min_length=2, max_length=2)


class Buyer(BaseModel):
    name: str = Field(min_length=1)
    address: Address


class CheckoutRequest(BaseModel):
    products: list[CartItem] = Field(min_length=1)
    customer: Optional[Buyer] = None


class CheckoutResponse(BaseModel):
    id: str
    url: Optional[str] = None


class CheckoutSession(BaseModel):
    id: str
    url: Optional[str] = None


class Customer(BaseModel):
    id: str
    name: str
    address: Address
    remote_id: Optional[str] = None


class Order(BaseModel):
    id: str
    customer_id: str
    items: list[CartItem]
    amount: Decimal
    currency: str
    status: OrderStatus
    checkout_session_id: Optional[str] = None
    created_at: datetime
    updated_at: Optional[datetime] = None


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
