"""Stock Engine: the only code allowed to write on_hand_stock / reserved_stock.

Every operation locks the product rows it touches (ascending id), mutates the
counters, and appends the matching ledger entry inside one unit of work. When
called inside an already open unit of work it joins it, so order creation can
reserve stock and insert the order atomically.
"""
import logging
from collections.abc import Iterable
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.orm import Session

from stockkeeper.database import unit_of_work
from stockkeeper.exceptions import ErrorCode
from stockkeeper.models.inventory_log import InventoryAction
from stockkeeper.models.product import Product
from stockkeeper.services import audit_service, ledger_service
from stockkeeper.services.results import FailedItem, StockResult, StockSnapshot

logger = logging.getLogger(__name__)


def _snapshot(product: Product) -> StockSnapshot:
    return StockSnapshot(product_id=product.id, on_hand=product.on_hand_stock, reserved=product.reserved_stock)


def merge_lines(items: Iterable) -> list[tuple[str, int]]:
    """Collapse (product_id, quantity) pairs or line objects into one line per product, sorted by id."""
    merged: dict[str, int] = {}
    for item in items:
        if isinstance(item, tuple):
            product_id, quantity = item
        else:
            product_id, quantity = item.product_id, item.quantity
        merged[product_id] = merged.get(product_id, 0) + int(quantity)
    return sorted(merged.items())


def lock_products(db: Session, product_ids: Iterable[str]) -> dict[str, Product]:
    """SELECT ... FOR UPDATE in ascending id order; blocks until every row is held."""
    ids = sorted(set(product_ids))
    if not ids:
        return {}
    q = (
        select(Product)
        .where(Product.id.in_(ids))
        .order_by(Product.id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return {p.id: p for p in db.scalars(q)}


def _lock_one(db: Session, product_id: str) -> Product | None:
    return lock_products(db, [product_id]).get(product_id)


def _not_found(product_id: str) -> StockResult:
    return StockResult.fail(ErrorCode.NOT_FOUND, f"Product {product_id} not found")


def _check_quantity(quantity: int, label: str = "Quantity") -> StockResult | None:
    if quantity is None or int(quantity) <= 0:
        return StockResult.fail(ErrorCode.INVALID_ARGUMENT, f"{label} must be greater than 0")
    return None


# --- Reservations ---


def reserve_batch(
    db: Session,
    items: Iterable,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    """Reserve every line or none.

    All rows are locked first, every line is validated against the locked
    counters, and only when nothing fails are the reservations applied.
    """
    lines = merge_lines(items)
    if not lines:
        return StockResult.fail(ErrorCode.INVALID_ARGUMENT, "No items to reserve")

    with unit_of_work(db):
        products = lock_products(db, [pid for pid, _ in lines])

        failed = []
        for product_id, quantity in lines:
            product = products.get(product_id)
            if not product:
                failed.append(FailedItem(product_id, "", quantity, 0, ErrorCode.NOT_FOUND))
            elif quantity <= 0:
                failed.append(FailedItem(product_id, product.name, quantity, product.available_stock, ErrorCode.INVALID_ARGUMENT))
            elif not product.is_active:
                failed.append(FailedItem(product_id, product.name, quantity, 0, ErrorCode.INACTIVE))
            elif product.available_stock < quantity:
                failed.append(FailedItem(
                    product_id, product.name, quantity, max(product.available_stock, 0), ErrorCode.INSUFFICIENT_STOCK,
                ))

        if failed:
            logger.info("Reservation rejected for %d of %d lines (order %s)", len(failed), len(lines), order_id)
            return StockResult.fail(failed[0].reason, "; ".join(f.message for f in failed), failed)

        snapshots = []
        ledger_ids = []
        for product_id, quantity in lines:
            product = products[product_id]
            product.reserved_stock += quantity
            entry = ledger_service.record_entry(
                db, product, InventoryAction.RESERVATION,
                previous_on_hand=product.on_hand_stock,
                reserved_change=quantity,
                order_id=order_id,
                user_id=user_id,
                reason=reason or (f"Reserved for order {order_id}" if order_id else "Reserved"),
            )
            ledger_ids.append(entry.id)
            snapshots.append(_snapshot(product))
            audit_service.record_event(
                db, "stock.reserve", "product", product_id, user_id=user_id,
                quantity=quantity, order_id=order_id, reserved=product.reserved_stock,
            )
            logger.info(
                "Reserved %d of %s (on_hand=%d reserved=%d)",
                quantity, product.sku, product.on_hand_stock, product.reserved_stock,
            )

    return StockResult.ok(snapshots, ledger_ids)


def reserve(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    result = reserve_batch(db, [(product_id, quantity)], order_id=order_id, user_id=user_id, reason=reason)
    if not result.success and result.failed_items:
        result.code = result.failed_items[0].reason
    return result


def release_batch(
    db: Session,
    items: Iterable,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    """Give back reservations, never dropping reserved_stock below 0.

    Products that no longer exist are skipped with a warning so a cancel can
    still complete for the lines that do.
    """
    lines = merge_lines(items)
    for _, quantity in lines:
        invalid = _check_quantity(quantity)
        if invalid:
            return invalid

    snapshots = []
    ledger_ids = []
    with unit_of_work(db):
        products = lock_products(db, [pid for pid, _ in lines])
        for product_id, quantity in lines:
            product = products.get(product_id)
            if not product:
                logger.warning("Release skipped, product %s not found (order %s)", product_id, order_id)
                continue
            released = min(quantity, product.reserved_stock)
            if released:
                product.reserved_stock -= released
                entry = ledger_service.record_entry(
                    db, product, InventoryAction.RESERVATION_RELEASE,
                    previous_on_hand=product.on_hand_stock,
                    reserved_change=-released,
                    order_id=order_id,
                    user_id=user_id,
                    reason=reason or "Reservation released",
                )
                ledger_ids.append(entry.id)
                audit_service.record_event(
                    db, "stock.release", "product", product_id, user_id=user_id,
                    quantity=released, order_id=order_id,
                )
            snapshots.append(_snapshot(product))
            logger.info("Released %d/%d of %s (reserved=%d)", released, quantity, product.sku, product.reserved_stock)

    return StockResult.ok(snapshots, ledger_ids)


def release(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    invalid = _check_quantity(quantity)
    if invalid:
        return invalid
    with unit_of_work(db):
        if not _lock_one(db, product_id):
            return _not_found(product_id)
        return release_batch(db, [(product_id, quantity)], order_id=order_id, user_id=user_id, reason=reason)


# --- Physical stock ---


def deduct_batch(
    db: Session,
    items: Iterable,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    """Turn reservations into sales: on_hand and reserved both drop by the quantity, floored at 0."""
    lines = merge_lines(items)
    for _, quantity in lines:
        invalid = _check_quantity(quantity)
        if invalid:
            return invalid

    snapshots = []
    ledger_ids = []
    with unit_of_work(db):
        products = lock_products(db, [pid for pid, _ in lines])
        for product_id, quantity in lines:
            product = products.get(product_id)
            if not product:
                logger.warning("Deduct skipped, product %s not found (order %s)", product_id, order_id)
                continue
            previous = product.on_hand_stock
            reserved_drop = min(quantity, product.reserved_stock)
            product.on_hand_stock = max(previous - quantity, 0)
            product.reserved_stock -= reserved_drop
            entry = ledger_service.record_entry(
                db, product, InventoryAction.SALE_OUT,
                previous_on_hand=previous,
                reserved_change=-reserved_drop,
                order_id=order_id,
                user_id=user_id,
                reason=reason or (f"Shipped for order {order_id}" if order_id else "Sale"),
                unit_cost=product.unit_cost,
            )
            ledger_ids.append(entry.id)
            snapshots.append(_snapshot(product))
            audit_service.record_event(
                db, "stock.deduct", "product", product_id, user_id=user_id,
                quantity=previous - product.on_hand_stock, order_id=order_id,
            )
            logger.info(
                "Deducted %d of %s (on_hand %d -> %d, reserved=%d)",
                quantity, product.sku, previous, product.on_hand_stock, product.reserved_stock,
            )

    return StockResult.ok(snapshots, ledger_ids)


def deduct(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    order_id: str | None = None,
    user_id: str | None = None,
    reason: str = "",
) -> StockResult:
    invalid = _check_quantity(quantity)
    if invalid:
        return invalid
    with unit_of_work(db):
        if not _lock_one(db, product_id):
            return _not_found(product_id)
        return deduct_batch(db, [(product_id, quantity)], order_id=order_id, user_id=user_id, reason=reason)


def add_stock(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    unit_cost: Decimal | None = None,
    reason: str = "",
    reference_number: str = "",
    user_id: str | None = None,
    action: InventoryAction = InventoryAction.PURCHASE_IN,
) -> StockResult:
    """Receive stock. ``action`` lets returns and transfers reuse the same path."""
    invalid = _check_quantity(quantity)
    if invalid:
        return invalid

    with unit_of_work(db):
        product = _lock_one(db, product_id)
        if not product:
            return _not_found(product_id)

        previous = product.on_hand_stock
        product.on_hand_stock = previous + quantity
        if unit_cost is not None:
            product.unit_cost = Decimal(str(unit_cost))
        if action == InventoryAction.PURCHASE_IN:
            product.last_restocked_at = datetime.now(timezone.utc).replace(tzinfo=None)

        entry = ledger_service.record_entry(
            db, product, action,
            previous_on_hand=previous,
            user_id=user_id,
            reason=reason or "Stock received",
            reference_number=reference_number,
            unit_cost=product.unit_cost,
        )
        audit_service.record_event(
            db, f"stock.{action.value}", "product", product_id, user_id=user_id,
            quantity=quantity, on_hand=product.on_hand_stock, reference_number=reference_number,
        )
        logger.info("Added %d to %s (on_hand %d -> %d)", quantity, product.sku, previous, product.on_hand_stock)
        return StockResult.ok([_snapshot(product)], [entry.id])


def record_return(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    order_id: str | None = None,
    reason: str = "",
    user_id: str | None = None,
) -> StockResult:
    return add_stock(
        db, product_id, quantity,
        reason=reason or (f"Returned from order {order_id}" if order_id else "Customer return"),
        reference_number=order_id or "",
        user_id=user_id,
        action=InventoryAction.RETURN_IN,
    )


def record_transfer_in(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    source: str = "",
    reason: str = "",
    user_id: str | None = None,
) -> StockResult:
    return add_stock(
        db, product_id, quantity,
        reason=reason or (f"Transferred in from {source}" if source else "Transferred in"),
        reference_number=source,
        user_id=user_id,
        action=InventoryAction.TRANSFER_IN,
    )


def record_transfer_out(
    db: Session,
    product_id: str,
    quantity: int,
    *,
    destination: str = "",
    reason: str = "",
    user_id: str | None = None,
) -> StockResult:
    """Ship units to another location. Only unreserved stock can leave."""
    invalid = _check_quantity(quantity)
    if invalid:
        return invalid

    with unit_of_work(db):
        product = _lock_one(db, product_id)
        if not product:
            return _not_found(product_id)
        if product.available_stock < quantity:
            available = max(product.available_stock, 0)
            return StockResult.fail(
                ErrorCode.INSUFFICIENT_STOCK,
                f"Cannot transfer {quantity} of {product.name}: only {available} available",
                [FailedItem(product_id, product.name, quantity, available, ErrorCode.INSUFFICIENT_STOCK)],
            )

        previous = product.on_hand_stock
        product.on_hand_stock = previous - quantity
        entry = ledger_service.record_entry(
            db, product, InventoryAction.TRANSFER_OUT,
            previous_on_hand=previous,
            user_id=user_id,
            reason=reason or (f"Transferred out to {destination}" if destination else "Transferred out"),
            reference_number=destination,
            unit_cost=product.unit_cost,
        )
        audit_service.record_event(
            db, "stock.transfer_out", "product", product_id, user_id=user_id,
            quantity=quantity, on_hand=product.on_hand_stock, destination=destination,
        )
        logger.info("Transferred %d of %s out (on_hand %d -> %d)", quantity, product.sku, previous, product.on_hand_stock)
        return StockResult.ok([_snapshot(product)], [entry.id])


def adjust_to(
    db: Session,
    product_id: str,
    target_quantity: int,
    *,
    reason: str = "",
    user_id: str | None = None,
) -> StockResult:
    """Set on_hand to an exact count (stock take). Reservations above the new count are cut back."""
    if target_quantity is None:
        return StockResult.fail(ErrorCode.INVALID_ARGUMENT, "Target quantity is required")

    with unit_of_work(db):
        product = _lock_one(db, product_id)
        if not product:
            return _not_found(product_id)

        previous = product.on_hand_stock
        target = max(int(target_quantity), 0)
        reserved_cut = max(product.reserved_stock - target, 0)
        if target == previous and not reserved_cut:
            return StockResult.ok([_snapshot(product)], [], message="No change")

        product.on_hand_stock = target
        product.reserved_stock -= reserved_cut
        if reserved_cut:
            logger.warning(
                "Adjustment of %s cut %d reserved units that exceeded physical stock", product.sku, reserved_cut,
            )

        action = InventoryAction.ADJUSTMENT_ADD if target > previous else InventoryAction.ADJUSTMENT_SUB
        entry = ledger_service.record_entry(
            db, product, action,
            previous_on_hand=previous,
            reserved_change=-reserved_cut,
            user_id=user_id,
            reason=reason or "Stock adjustment",
            unit_cost=product.unit_cost,
        )
        audit_service.record_event(
            db, "stock.adjust", "product", product_id, user_id=user_id,
            previous=previous, target=target, reserved_cut=reserved_cut, reason=reason,
        )
        logger.info("Adjusted %s on_hand %d -> %d", product.sku, previous, target)
        return StockResult.ok([_snapshot(product)], [entry.id])


def record_damage(
    db: Session,
    product_id: str,
    quantity: int,
    reason: str = "",
    *,
    user_id: str | None = None,
) -> StockResult:
    """Write off damaged units from on_hand. Reservations are only touched if they would exceed what is left."""
    invalid = _check_quantity(quantity)
    if invalid:
        return invalid

    with unit_of_work(db):
        product = _lock_one(db, product_id)
        if not product:
            return _not_found(product_id)

        previous = product.on_hand_stock
        product.on_hand_stock = max(previous - quantity, 0)
        reserved_cut = max(product.reserved_stock - product.on_hand_stock, 0)
        product.reserved_stock -= reserved_cut

        entry = ledger_service.record_entry(
            db, product, InventoryAction.DAMAGE_OUT,
            previous_on_hand=previous,
            reserved_change=-reserved_cut,
            user_id=user_id,
            reason=reason or "Damaged",
            unit_cost=product.unit_cost,
        )
        audit_service.record_event(
            db, "stock.damage", "product", product_id, user_id=user_id,
            quantity=previous - product.on_hand_stock, reason=reason,
        )
        logger.info("Recorded %d damaged of %s (on_hand %d -> %d)", quantity, product.sku, previous, product.on_hand_stock)
        return StockResult.ok([_snapshot(product)], [entry.id])


def get_snapshot(db: Session, product_id: str) -> StockSnapshot | None:
    product = db.get(Product, product_id)
    return _snapshot(product) if product else None
