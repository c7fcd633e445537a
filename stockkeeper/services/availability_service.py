"""Read-only stock classification over current counters.

Nothing here takes a lock, so answers can be stale against in-flight
transactions. Use it for display and for a quick pre-check; the locked
reservation in stock_service is the real check.
"""
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum as PyEnum

from sqlalchemy import or_
from sqlalchemy.orm import Session

from stockkeeper.exceptions import ErrorCode
from stockkeeper.models.product import Product
from stockkeeper.services.results import FailedItem
from stockkeeper.services.stock_service import merge_lines


class StockLevel(str, PyEnum):
    OUT_OF_STOCK = "out_of_stock"
    LOW_STOCK = "low_stock"
    NEEDS_REORDER = "needs_reorder"
    IN_STOCK = "in_stock"


@dataclass(frozen=True)
class StockStatus:
    product_id: str
    sku: str
    name: str
    status: StockLevel
    on_hand: int
    reserved: int
    available: int
    reorder_level: int
    low_stock_threshold: int
    needs_reorder: bool
    is_active: bool

    @property
    def is_purchasable(self) -> bool:
        return self.is_active and self.available > 0


def needs_reorder(product: Product) -> bool:
    return product.on_hand_stock <= product.reorder_level or product.on_hand_stock <= product.low_stock_threshold


def classify(product: Product) -> StockLevel:
    available = product.available_stock
    if available <= 0:
        return StockLevel.OUT_OF_STOCK
    if available <= product.low_stock_threshold:
        return StockLevel.LOW_STOCK
    if needs_reorder(product):
        return StockLevel.NEEDS_REORDER
    return StockLevel.IN_STOCK


def stock_status(product: Product) -> StockStatus:
    return StockStatus(
        product_id=product.id,
        sku=product.sku,
        name=product.name,
        status=classify(product),
        on_hand=product.on_hand_stock,
        reserved=product.reserved_stock,
        available=product.available_stock,
        reorder_level=product.reorder_level,
        low_stock_threshold=product.low_stock_threshold,
        needs_reorder=needs_reorder(product),
        is_active=product.is_active,
    )


def get_stock_status(db: Session, product_id: str) -> StockStatus | None:
    product = db.get(Product, product_id)
    return stock_status(product) if product else None


def check_availability(db: Session, items) -> list[FailedItem]:
    """Lines that look unfillable right now. Empty list means worth attempting the reservation."""
    lines = merge_lines(items)
    products = {
        p.id: p for p in db.query(Product).filter(Product.id.in_([pid for pid, _ in lines])).all()
    }
    unavailable = []
    for product_id, quantity in lines:
        product = products.get(product_id)
        if not product:
            unavailable.append(FailedItem(product_id, "", quantity, 0, ErrorCode.NOT_FOUND))
        elif not product.is_active:
            unavailable.append(FailedItem(product_id, product.name, quantity, 0, ErrorCode.INACTIVE))
        elif product.available_stock < quantity:
            unavailable.append(FailedItem(
                product_id, product.name, quantity, max(product.available_stock, 0), ErrorCode.INSUFFICIENT_STOCK,
            ))
    return unavailable


def low_stock_products(db: Session) -> list[StockStatus]:
    """Active products that are out of stock or at / under their low stock threshold."""
    products = (
        db.query(Product)
        .filter(
            Product.is_active.is_(True),
            Product.on_hand_stock - Product.reserved_stock <= Product.low_stock_threshold,
        )
        .order_by(Product.on_hand_stock - Product.reserved_stock, Product.sku)
        .all()
    )
    return [stock_status(p) for p in products]


def products_needing_reorder(db: Session) -> list[StockStatus]:
    products = (
        db.query(Product)
        .filter(
            Product.is_active.is_(True),
            or_(
                Product.on_hand_stock <= Product.reorder_level,
                Product.on_hand_stock <= Product.low_stock_threshold,
            ),
        )
        .order_by(Product.on_hand_stock, Product.sku)
        .all()
    )
    return [stock_status(p) for p in products]


def inventory_summary(db: Session) -> dict:
    products = db.query(Product).filter(Product.is_active.is_(True)).all()
    by_status = {level.value: 0 for level in StockLevel}
    total_on_hand = 0
    total_reserved = 0
    cost_value = Decimal("0.00")
    retail_value = Decimal("0.00")
    for p in products:
        by_status[classify(p).value] += 1
        total_on_hand += p.on_hand_stock
        total_reserved += p.reserved_stock
        cost_value += (p.unit_cost or Decimal("0")) * p.on_hand_stock
        retail_value += (p.price or Decimal("0")) * p.on_hand_stock

    return {
        "total_products": len(products),
        "total_on_hand": total_on_hand,
        "total_reserved": total_reserved,
        "total_available": total_on_hand - total_reserved,
        "inventory_cost_value": float(cost_value.quantize(Decimal("0.01"))),
        "inventory_retail_value": float(retail_value.quantize(Decimal("0.01"))),
        "by_status": by_status,
        "needs_reorder_count": sum(1 for p in products if needs_reorder(p)),
    }
