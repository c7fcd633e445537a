from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from pydantic import BaseModel, Field, field_validator


class ProductCreate(BaseModel):
    sku: str
    name: str
    description: str = ""
    category: str = ""
    price: Decimal = Field(default=Decimal("0.00"), ge=0)
    is_imported: bool = False
    initial_stock: int = Field(default=0, ge=0)
    unit_cost: Decimal | None = None
    reorder_level: int | None = Field(default=None, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class ProductUpdate(BaseModel):
    name: str | None = None
    description: str | None = None
    category: str | None = None
    price: Decimal | None = Field(default=None, ge=0)
    is_imported: bool | None = None
    reorder_level: int | None = Field(default=None, ge=0)
    low_stock_threshold: int | None = Field(default=None, ge=0)


class ProductOut(BaseModel):
    id: str
    sku: str
    name: str
    description: str
    category: str
    price: Decimal
    is_imported: bool
    is_active: bool
    on_hand_stock: int
    reserved_stock: int
    available_stock: int
    reorder_level: int
    low_stock_threshold: int
    unit_cost: Decimal | None = None
    last_restocked_at: datetime | None = None
    created_at: datetime
    updated_at: datetime

    model_config = {"from_attributes": True}


class StockReceive(BaseModel):
    quantity: int
    unit_cost: Decimal | None = None
    reason: str = ""
    reference_number: str = ""


class StockAdjust(BaseModel):
    target_quantity: int
    reason: str = ""


class StockDamage(BaseModel):
    quantity: int
    reason: str = ""


class StockReturn(BaseModel):
    quantity: int
    order_id: str | None = None
    reason: str = ""


class StockTransfer(BaseModel):
    quantity: int
    location: str = ""
    reason: str = ""


class StockSnapshotOut(BaseModel):
    product_id: str
    on_hand: int
    reserved: int
    available: int

    model_config = {"from_attributes": True}


class StockStatusOut(BaseModel):
    product_id: str
    sku: str
    name: str
    status: str
    on_hand: int
    reserved: int
    available: int
    reorder_level: int
    low_stock_threshold: int
    needs_reorder: bool
    is_active: bool
    is_purchasable: bool

    model_config = {"from_attributes": True}

    @field_validator("status", mode="before")
    @classmethod
    def enum_value(cls, v):
        return v.value if isinstance(v, PyEnum) else v


class LedgerEntryOut(BaseModel):
    id: int
    product_id: str
    action: str
    quantity_change: int
    previous_on_hand: int
    new_on_hand: int
    reserved_change: int
    new_reserved: int
    order_id: str | None = None
    user_id: str | None = None
    reason: str
    reference_number: str
    unit_cost: Decimal | None = None
    total_value: Decimal | None = None
    created_at: datetime

    model_config = {"from_attributes": True}

    @field_validator("action", mode="before")
    @classmethod
    def enum_value(cls, v):
        return v.value if isinstance(v, PyEnum) else v


class ReplayOut(BaseModel):
    product_id: str
    on_hand: int
    reserved: int
    entry_count: int
    last_entry_id: int | None = None
    as_of: datetime | None = None

    model_config = {"from_attributes": True}


class ReconciliationOut(BaseModel):
    product_id: str
    sku: str
    on_hand: int
    reserved: int
    ledger_on_hand: int
    ledger_reserved: int
    entry_count: int
    broken_links: int
    consistent: bool

    model_config = {"from_attributes": True}
