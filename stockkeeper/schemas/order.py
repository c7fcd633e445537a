import json
from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from pydantic import BaseModel, field_validator

from stockkeeper.models.order import OrderStatus


class CheckoutRequest(BaseModel):
    address_id: str
    customer_notes: str = ""


class OrderStatusUpdate(BaseModel):
    status: OrderStatus
    note: str = ""
    tracking_number: str = ""


class RefundRequest(BaseModel):
    reason: str = ""


class OrderItemOut(BaseModel):
    id: str
    product_id: str
    product_name: str
    product_sku: str
    quantity: int
    unit_price: Decimal
    line_total: Decimal

    model_config = {"from_attributes": True}


class OrderOut(BaseModel):
    id: str
    order_number: str
    user_id: str
    address_id: str
    status: str
    payment_status: str
    items: list[OrderItemOut]
    subtotal: Decimal
    shipping_cost: Decimal
    tax_amount: Decimal
    total_amount: Decimal
    shipping_method: str
    estimated_delivery_days: int | None = None
    payment_session_id: str | None = None
    tracking_number: str
    customer_notes: str
    status_history: list[dict] = []
    shipped_at: datetime | None = None
    delivered_at: datetime | None = None
    cancelled_at: datetime | None = None
    refunded_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("status", "payment_status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return v.value if isinstance(v, PyEnum) else v

    @field_validator("status_history", mode="before")
    @classmethod
    def parse_history(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v


class OrderActionOut(BaseModel):
    info: str = ""
    message: str = ""
    order: OrderOut


class FailedItemOut(BaseModel):
    product_id: str
    product_name: str
    requested: int
    available: int
    reason: str
    message: str

    model_config = {"from_attributes": True}
