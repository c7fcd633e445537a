from datetime import datetime
from decimal import Decimal

from pydantic import BaseModel, Field


class AddressCreate(BaseModel):
    full_name: str
    line1: str
    line2: str = ""
    city: str
    state: str = Field(min_length=2, max_length=2)
    zip_code: str
    country: str = "US"


class AddressOut(AddressCreate):
    id: str
    user_id: str
    created_at: datetime

    model_config = {"from_attributes": True}


class CartItemAdd(BaseModel):
    product_id: str
    quantity: int = Field(default=1, gt=0)


class CartItemOut(BaseModel):
    id: str
    product_id: str
    quantity: int
    price_at_add: Decimal

    model_config = {"from_attributes": True}


class CartOut(BaseModel):
    id: str
    user_id: str
    items: list[CartItemOut]

    model_config = {"from_attributes": True}


class CheckoutSessionRequest(BaseModel):
    address_id: str


class CheckoutSessionOut(BaseModel):
    session_id: str
    url: str
    replayed: bool = False


class VerifySessionRequest(BaseModel):
    session_id: str
