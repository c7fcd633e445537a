from datetime import datetime
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import DateTime, Enum, ForeignKey, Integer, Numeric, String, Text, event, func
from sqlalchemy.orm import Mapped, mapped_column

from stockkeeper.database import Base
from stockkeeper.exceptions import LedgerImmutableError


class InventoryAction(str, PyEnum):
    PURCHASE_IN = "purchase_in"
    SALE_OUT = "sale_out"
    ADJUSTMENT_ADD = "adjustment_add"
    ADJUSTMENT_SUB = "adjustment_sub"
    RETURN_IN = "return_in"
    DAMAGE_OUT = "damage_out"
    TRANSFER_IN = "transfer_in"
    TRANSFER_OUT = "transfer_out"
    RESERVATION = "reservation"
    RESERVATION_RELEASE = "reservation_release"


class InventoryLog(Base):
    """Append-only record of every stock counter change."""

    __tablename__ = "inventory_logs"

    # Autoincrement id is the replay order
    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    product_id: Mapped[str] = mapped_column(String, ForeignKey("products.id"), nullable=False, index=True)
    action: Mapped[str] = mapped_column(
        Enum(InventoryAction, values_callable=lambda x: [e.value for e in x]),
        nullable=False,
    )
    quantity_change: Mapped[int] = mapped_column(Integer, nullable=False)  # signed on-hand delta
    previous_on_hand: Mapped[int] = mapped_column(Integer, nullable=False)
    new_on_hand: Mapped[int] = mapped_column(Integer, nullable=False)
    reserved_change: Mapped[int] = mapped_column(Integer, default=0, nullable=False)  # signed reserved delta
    new_reserved: Mapped[int] = mapped_column(Integer, nullable=False)

    order_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    user_id: Mapped[str | None] = mapped_column(String, nullable=True)
    reason: Mapped[str] = mapped_column(Text, default="")
    reference_number: Mapped[str] = mapped_column(String, default="")
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    total_value: Mapped[Decimal | None] = mapped_column(Numeric(12, 2), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), index=True)


@event.listens_for(InventoryLog, "before_update")
def _refuse_update(mapper, connection, target):
    raise LedgerImmutableError(f"Inventory log {target.id} is append-only")


@event.listens_for(InventoryLog, "before_delete")
def _refuse_delete(mapper, connection, target):
    raise LedgerImmutableError(f"Inventory log {target.id} is append-only")
