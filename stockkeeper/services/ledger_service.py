import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from stockkeeper.models.inventory_log import InventoryAction, InventoryLog
from stockkeeper.models.product import Product

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReplayResult:
    product_id: str
    on_hand: int
    reserved: int
    entry_count: int
    last_entry_id: int | None
    as_of: datetime | None = None


@dataclass(frozen=True)
class Reconciliation:
    product_id: str
    sku: str
    on_hand: int
    reserved: int
    ledger_on_hand: int
    ledger_reserved: int
    entry_count: int
    broken_links: int  # entries whose previous_on_hand does not follow the prior entry

    @property
    def consistent(self) -> bool:
        return (
            self.on_hand == self.ledger_on_hand
            and self.reserved == self.ledger_reserved
            and self.broken_links == 0
        )


def record_entry(
    db: Session,
    product: Product,
    action: InventoryAction,
    *,
    previous_on_hand: int,
    reserved_change: int = 0,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
    reference_number: str = "",
    unit_cost: Decimal | None = None,
) -> InventoryLog:
    """Append a ledger entry for a change already applied to ``product``.

    Must run in the same transaction as the counter change; the flush here
    also pushes the product row so check constraints fire before commit.
    """
    quantity_change = product.on_hand_stock - previous_on_hand
    total_value = None
    if unit_cost is not None:
        moved = abs(quantity_change) if quantity_change else abs(reserved_change)
        total_value = (Decimal(unit_cost) * moved).quantize(Decimal("0.01"))

    entry = InventoryLog(
        product_id=product.id,
        action=action,
        quantity_change=quantity_change,
        previous_on_hand=previous_on_hand,
        new_on_hand=product.on_hand_stock,
        reserved_change=reserved_change,
        new_reserved=product.reserved_stock,
        order_id=order_id,
        user_id=user_id,
        reason=reason,
        reference_number=reference_number,
        unit_cost=unit_cost,
        total_value=total_value,
    )
    db.add(entry)
    db.flush()
    return entry


def _entries_query(product_id: str, until: datetime | None, until_entry_id: int | None):
    q = select(InventoryLog).where(InventoryLog.product_id == product_id)
    if until is not None:
        q = q.where(InventoryLog.created_at <= until)
    if until_entry_id is not None:
        q = q.where(InventoryLog.id <= until_entry_id)
    return q.order_by(InventoryLog.id)


def list_entries(
    db: Session,
    product_id: str,
    *,
    until: datetime | None = None,
    until_entry_id: int | None = None,
    skip: int = 0,
    limit: int | None = None,
) -> list[InventoryLog]:
    q = _entries_query(product_id, until, until_entry_id).offset(skip)
    if limit is not None:
        q = q.limit(limit)
    return list(db.scalars(q))


def list_order_entries(db: Session, order_id: str) -> list[InventoryLog]:
    q = select(InventoryLog).where(InventoryLog.order_id == order_id).order_by(InventoryLog.id)
    return list(db.scalars(q))


def replay(
    db: Session,
    product_id: str,
    *,
    until: datetime | None = None,
    until_entry_id: int | None = None,
) -> ReplayResult:
    """Rebuild a product's counters from zero by summing its ledger in creation order."""
    on_hand = 0
    reserved = 0
    count = 0
    last_id = None
    for entry in db.scalars(_entries_query(product_id, until, until_entry_id)):
        on_hand += entry.quantity_change
        reserved += entry.reserved_change
        count += 1
        last_id = entry.id
    return ReplayResult(
        product_id=product_id,
        on_hand=on_hand,
        reserved=reserved,
        entry_count=count,
        last_entry_id=last_id,
        as_of=until,
    )


def reconcile(db: Session, product_id: str) -> Reconciliation | None:
    product = db.get(Product, product_id)
    if not product:
        return None

    on_hand = 0
    reserved = 0
    count = 0
    broken = 0
    for entry in db.scalars(_entries_query(product_id, None, None)):
        if entry.previous_on_hand != on_hand or entry.new_on_hand != entry.previous_on_hand + entry.quantity_change:
            broken += 1
        on_hand += entry.quantity_change
        reserved += entry.reserved_change
        count += 1

    result = Reconciliation(
        product_id=product.id,
        sku=product.sku,
        on_hand=product.on_hand_stock,
        reserved=product.reserved_stock,
        ledger_on_hand=on_hand,
        ledger_reserved=reserved,
        entry_count=count,
        broken_links=broken,
    )
    if not result.consistent:
        logger.warning(
            "Ledger mismatch for %s: counters %d/%d, ledger %d/%d, %d broken links",
            product.sku, product.on_hand_stock, product.reserved_stock, on_hand, reserved, broken,
        )
    return result


def reconcile_all(db: Session) -> list[Reconciliation]:
    product_ids = db.scalars(select(Product.id).order_by(Product.id)).all()
    return [reconcile(db, pid) for pid in product_ids]


def movement_summary(
    db: Session,
    product_id: str | None = None,
    start_date: datetime | None = None,
    end_date: datetime | None = None,
) -> dict:
    q = db.query(
        InventoryLog.action,
        func.count(InventoryLog.id),
        func.sum(InventoryLog.quantity_change),
        func.sum(InventoryLog.reserved_change),
        func.sum(InventoryLog.total_value),
    )
    if product_id:
        q = q.filter(InventoryLog.product_id == product_id)
    if start_date:
        q = q.filter(InventoryLog.created_at >= start_date)
    if end_date:
        q = q.filter(InventoryLog.created_at <= end_date)

    by_action = {}
    total_in = 0
    total_out = 0
    for action, count, qty, reserved, value in q.group_by(InventoryLog.action).all():
        action_val = action if isinstance(action, str) else action.value
        qty = int(qty or 0)
        by_action[action_val] = {
            "entries": count,
            "quantity_change": qty,
            "reserved_change": int(reserved or 0),
            "total_value": float(value or 0),
        }
        if qty > 0:
            total_in += qty
        else:
            total_out += -qty

    return {
        "product_id": product_id,
        "by_action": by_action,
        "total_in": total_in,
        "total_out": total_out,
        "net_change": total_in - total_out,
        "date_range": {
            "start": start_date.isoformat() if start_date else None,
            "end": end_date.isoformat() if end_date else None,
        },
    }
