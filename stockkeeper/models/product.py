import uuid
from datetime import datetime
from decimal import Decimal

from sqlalchemy import Boolean, CheckConstraint, DateTime, Integer, Numeric, String, func
from sqlalchemy.orm import Mapped, mapped_column

from stockkeeper.config import settings
from stockkeeper.database import Base


class Product(Base):
    __tablename__ = "products"
    __table_args__ = (
        CheckConstraint("on_hand_stock >= 0", name="ck_products_on_hand_non_negative"),
        CheckConstraint("reserved_stock >= 0", name="ck_products_reserved_non_negative"),
        CheckConstraint("reserved_stock <= on_hand_stock", name="ck_products_reserved_within_on_hand"),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    sku: Mapped[str] = mapped_column(String, unique=True, index=True)
    name: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(String, default="")
    category: Mapped[str] = mapped_column(String, default="")
    price: Mapped[Decimal] = mapped_column(Numeric(10, 2), default=Decimal("0.00"))
    is_imported: Mapped[bool] = mapped_column(Boolean, default=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True)

    # Written only by services.stock_service, under a row lock
    on_hand_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    reserved_stock: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    reorder_level: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_REORDER_LEVEL)
    low_stock_threshold: Mapped[int] = mapped_column(Integer, default=lambda: settings.DEFAULT_LOW_STOCK_THRESHOLD)
    unit_cost: Mapped[Decimal | None] = mapped_column(Numeric(10, 2), nullable=True)
    last_restocked_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime, server_default=func.now(), onupdate=func.now())

    @property
    def available_stock(self) -> int:
        return (self.on_hand_stock or 0) - (self.reserved_stock or 0)
