import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from stockkeeper.config import settings
from stockkeeper.database import unit_of_work
from stockkeeper.exceptions import ConflictError, ErrorCode, TransactionAborted
from stockkeeper.models.cart import Address, Cart
from stockkeeper.models.order import Order, OrderItem, OrderSequence, OrderStatus, PaymentStatus
from stockkeeper.models.product import Product
from stockkeeper.services import audit_service, stock_service
from stockkeeper.services.payment_provider import PaymentProvider, PaymentSession
from stockkeeper.services.pricing_service import PricingCalculator, default_calculator
from stockkeeper.services.results import OrderResult

logger = logging.getLogger(__name__)

# Statuses whose line items still hold a reservation
RESERVED_STATUSES = (OrderStatus.PENDING, OrderStatus.CONFIRMED, OrderStatus.PROCESSING)


@dataclass
class PaymentConfirmation:
    """What a completed provider session tells us about the order to create."""

    session_id: str
    user_id: str
    address_id: str
    cart_id: str | None = None
    items: list[tuple[str, int]] = field(default_factory=list)
    shipping_cost: Decimal | None = None
    tax_amount: Decimal | None = None
    expected_subtotal: Decimal | None = None
    shipping_method: str = ""
    estimated_days: int | None = None
    payment_reference: str = ""

    @classmethod
    def from_session(cls, session: PaymentSession) -> "PaymentConfirmation":
        meta = session.metadata

        def _decimal(key):
            value = meta.get(key)
            return Decimal(str(value)) if value not in (None, "") else None

        items = []
        if meta.get("items"):
            items = [(pid, int(qty)) for pid, qty in json.loads(meta["items"])]
        days = meta.get("estimated_days")
        return cls(
            session_id=session.id,
            user_id=str(meta.get("user_id", "")),
            address_id=str(meta.get("address_id", "")),
            cart_id=meta.get("cart_id") or None,
            items=items,
            shipping_cost=_decimal("shipping"),
            tax_amount=_decimal("tax"),
            expected_subtotal=_decimal("subtotal"),
            shipping_method=meta.get("shipping_method", ""),
            estimated_days=int(days) if days not in (None, "") else None,
            payment_reference=session.payment_reference,
        )


def _now() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _status_value(status) -> str:
    return status if isinstance(status, str) else status.value


def _add_status_history(order: Order, status, note: str = "") -> None:
    history = json.loads(order.status_history) if order.status_history else []
    history.append({
        "status": _status_value(status),
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "note": note,
    })
    order.status_history = json.dumps(history)


# --- Order numbers ---


def _seed_sequence(db: Session, year: int) -> OrderSequence:
    prefix = f"{settings.ORDER_NUMBER_PREFIX}-{year}-"
    numbers = db.scalars(select(Order.order_number).where(Order.order_number.like(f"{prefix}%")))
    highest = max((int(n[len(prefix):]) for n in numbers if n[len(prefix):].isdigit()), default=0)
    try:
        with db.begin_nested():
            seq = OrderSequence(year=year, last_number=highest)
            db.add(seq)
        return seq
    except IntegrityError:
        # Seeded concurrently by another transaction
        return db.scalars(
            select(OrderSequence).where(OrderSequence.year == year).with_for_update()
            .execution_options(populate_existing=True)
        ).one()


def next_order_number(db: Session) -> str:
    """Issue the next ``PREFIX-YEAR-NNNNN`` number while holding the year's sequence row lock."""
    year = datetime.now(timezone.utc).year
    seq = db.scalars(
        select(OrderSequence).where(OrderSequence.year == year).with_for_update()
        .execution_options(populate_existing=True)
    ).first()
    if seq is None:
        seq = _seed_sequence(db, year)
    seq.last_number += 1
    db.flush()
    return f"{settings.ORDER_NUMBER_PREFIX}-{year}-{seq.last_number:05d}"


# --- Queries ---


def get_order(db: Session, order_id: str) -> Order | None:
    return db.get(Order, order_id)


def get_order_by_number(db: Session, order_number: str) -> Order | None:
    return db.query(Order).filter(Order.order_number == order_number).first()


def get_order_by_payment_session(db: Session, session_id: str) -> Order | None:
    return db.query(Order).filter(Order.payment_session_id == session_id).first()


def list_orders(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    status: OrderStatus | None = None,
    user_id: str | None = None,
) -> list[Order]:
    q = db.query(Order)
    if status:
        q = q.filter(Order.status == status)
    if user_id:
        q = q.filter(Order.user_id == user_id)
    return q.order_by(Order.created_at.desc(), Order.order_number.desc()).offset(skip).limit(limit).all()


def _lock_order(db: Session, order_id: str) -> Order | None:
    return db.scalars(
        select(Order).where(Order.id == order_id).with_for_update().execution_options(populate_existing=True)
    ).first()


def _owned_address(db: Session, user_id: str, address_id: str) -> Address | None:
    return db.query(Address).filter(Address.id == address_id, Address.user_id == user_id).first()


# --- Creation ---


def _create_order(
    db: Session,
    *,
    user_id: str,
    address: Address,
    lines: list[tuple[str, int]],
    calculator: PricingCalculator,
    shipping_cost: Decimal | None = None,
    tax_amount: Decimal | None = None,
    shipping_method: str = "",
    estimated_days: int | None = None,
    payment_session_id: str | None = None,
    payment_status: PaymentStatus = PaymentStatus.PENDING,
    payment_reference: str = "",
    customer_notes: str = "",
) -> Order:
    """Reserve every line and insert the order with its item snapshots.

    Runs inside the caller's unit of work. Any shortfall raises
    TransactionAborted so the whole attempt is rolled back.
    """
    order_id = str(uuid.uuid4())
    reservation = stock_service.reserve_batch(db, lines, order_id=order_id, user_id=user_id)
    if not reservation.success:
        raise TransactionAborted(OrderResult.fail(
            reservation.code, reservation.message, failed_items=reservation.failed_items,
        ))

    order = Order(
        id=order_id,
        order_number=next_order_number(db),
        user_id=user_id,
        address_id=address.id,
        status=OrderStatus.PENDING,
        payment_status=payment_status,
        payment_session_id=payment_session_id,
        payment_reference=payment_reference,
        customer_notes=customer_notes,
    )

    subtotal = Decimal("0.00")
    item_count = 0
    has_imported = False
    for product_id, quantity in lines:
        # Already locked and refreshed by reserve_batch
        product = db.get(Product, product_id)
        line_total = (product.price * quantity).quantize(Decimal("0.01"))
        order.items.append(OrderItem(
            product_id=product.id,
            product_name=product.name,
            product_sku=product.sku,
            quantity=quantity,
            unit_price=product.price,
            line_total=line_total,
        ))
        subtotal += line_total
        item_count += quantity
        has_imported = has_imported or product.is_imported

    totals = calculator.calculate(address.state, subtotal, item_count, has_imported)
    order.subtotal = totals.subtotal
    order.shipping_cost = totals.shipping_cost if shipping_cost is None else shipping_cost
    order.tax_amount = totals.tax_amount if tax_amount is None else tax_amount
    order.total_amount = order.subtotal + order.shipping_cost + order.tax_amount
    order.shipping_method = shipping_method or totals.shipping.method
    order.estimated_delivery_days = estimated_days if estimated_days is not None else totals.shipping.estimated_days

    note = "Order created from payment confirmation" if payment_session_id else "Order created"
    _add_status_history(order, OrderStatus.PENDING, note)
    db.add(order)
    db.flush()
    return order


def _clear_cart(db: Session, cart: Cart | None) -> None:
    if cart:
        cart.items.clear()
        db.flush()


def create_from_cart(
    db: Session,
    user_id: str,
    address_id: str,
    *,
    calculator: PricingCalculator = default_calculator,
    customer_notes: str = "",
) -> OrderResult:
    """Checkout: reserve the whole cart, price it at current catalog prices, create the order, empty the cart."""
    try:
        with unit_of_work(db):
            address = _owned_address(db, user_id, address_id)
            if not address:
                return OrderResult.fail(ErrorCode.NOT_FOUND, "Address not found")

            cart = db.query(Cart).filter(Cart.user_id == user_id).first()
            if not cart or not cart.items:
                return OrderResult.fail(ErrorCode.INVALID_ARGUMENT, "Cart is empty")

            order = _create_order(
                db,
                user_id=user_id,
                address=address,
                lines=stock_service.merge_lines(cart.items),
                calculator=calculator,
                customer_notes=customer_notes,
            )
            _clear_cart(db, cart)
            audit_service.record_event(
                db, "order.create", "order", order.id, user_id=user_id,
                order_number=order.order_number, total=order.total_amount,
            )
            logger.info("Created order %s for user %s (total %s)", order.order_number, user_id, order.total_amount)
            return OrderResult.ok(order)
    except TransactionAborted as e:
        logger.info("Checkout for user %s rejected: %s", user_id, e.result.message)
        return e.result


def create_from_payment_confirmation(
    db: Session,
    confirmation: PaymentConfirmation,
    *,
    calculator: PricingCalculator = default_calculator,
) -> OrderResult:
    """Create the paid order for a provider session exactly once.

    Webhook redelivery and the verify-session endpoint both land here. The
    unique payment_session_id is the real guard: a concurrent duplicate that
    loses the insert race resolves to the winner's order.
    """
    session_id = confirmation.session_id
    try:
        with unit_of_work(db):
            existing = get_order_by_payment_session(db, session_id)
            if existing:
                logger.info("Order %s already exists for session %s", existing.order_number, session_id)
                return OrderResult.ok(existing, info="already_exists")

            address = _owned_address(db, confirmation.user_id, confirmation.address_id)
            if not address:
                logger.error("Address %s not found for paid session %s", confirmation.address_id, session_id)
                return OrderResult.fail(ErrorCode.NOT_FOUND, "Address not found")

            cart = db.get(Cart, confirmation.cart_id) if confirmation.cart_id else None
            lines = confirmation.items or (stock_service.merge_lines(cart.items) if cart else [])
            if not lines:
                logger.error("No items to create order for paid session %s", session_id)
                return OrderResult.fail(ErrorCode.INVALID_ARGUMENT, "No items for payment session")

            order = _create_order(
                db,
                user_id=confirmation.user_id,
                address=address,
                lines=stock_service.merge_lines(lines),
                calculator=calculator,
                shipping_cost=confirmation.shipping_cost,
                tax_amount=confirmation.tax_amount,
                shipping_method=confirmation.shipping_method,
                estimated_days=confirmation.estimated_days,
                payment_session_id=session_id,
                payment_status=PaymentStatus.PAID,
                payment_reference=confirmation.payment_reference,
            )
            if confirmation.expected_subtotal is not None and confirmation.expected_subtotal != order.subtotal:
                logger.warning(
                    "Session %s was priced at %s but order %s subtotal is %s at current prices",
                    session_id, confirmation.expected_subtotal, order.order_number, order.subtotal,
                )
            if cart and cart.user_id == confirmation.user_id:
                _clear_cart(db, cart)
            audit_service.record_event(
                db, "order.create", "order", order.id, user_id=confirmation.user_id,
                order_number=order.order_number, payment_session_id=session_id, total=order.total_amount,
            )
            logger.info("Created paid order %s for session %s", order.order_number, session_id)
            return OrderResult.ok(order)
    except TransactionAborted as e:
        logger.error("Paid session %s could not be fulfilled: %s", session_id, e.result.message)
        return e.result
    except IntegrityError as e:
        db.rollback()
        existing = get_order_by_payment_session(db, session_id)
        if existing:
            logger.info("Concurrent confirmation of session %s resolved to order %s", session_id, existing.order_number)
            return OrderResult.ok(existing, info="already_exists")
        raise ConflictError(f"Could not create order for session {session_id}") from e


# --- Transitions ---


def _transition(order: Order, status: OrderStatus, note: str) -> None:
    order.status = status
    _add_status_history(order, status, note)


def cancel_order(db: Session, order_id: str, *, reason: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.status != OrderStatus.PENDING:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot cancel order in {_status_value(order.status)} status", order,
            )

        stock_service.release_batch(
            db, order.items, order_id=order.id, user_id=user_id,
            reason=f"Order {order.order_number} cancelled",
        )
        _transition(order, OrderStatus.CANCELLED, reason or "Order cancelled")
        order.cancelled_at = _now()
        audit_service.record_event(db, "order.cancel", "order", order.id, user_id=user_id, reason=reason)
        logger.info("Cancelled order %s", order.order_number)
        return OrderResult.ok(order)


def confirm_order(db: Session, order_id: str, *, note: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.status == OrderStatus.CONFIRMED:
            return OrderResult.ok(order, info="already_confirmed")
        if order.status != OrderStatus.PENDING:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot confirm order in {_status_value(order.status)} status", order,
            )
        _transition(order, OrderStatus.CONFIRMED, note or "Order confirmed")
        audit_service.record_event(db, "order.confirm", "order", order.id, user_id=user_id)
        return OrderResult.ok(order)


def start_processing(db: Session, order_id: str, *, note: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.status == OrderStatus.PROCESSING:
            return OrderResult.ok(order, info="already_processing")
        if order.status not in (OrderStatus.PENDING, OrderStatus.CONFIRMED):
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot process order in {_status_value(order.status)} status", order,
            )
        _transition(order, OrderStatus.PROCESSING, note or "Order processing")
        audit_service.record_event(db, "order.process", "order", order.id, user_id=user_id)
        return OrderResult.ok(order)


def mark_paid(db: Session, order_id: str, *, payment_reference: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.payment_status == PaymentStatus.PAID:
            return OrderResult.ok(order, info="already_paid")
        if order.payment_status == PaymentStatus.REFUNDED or order.status not in RESERVED_STATUSES:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot mark order in {_status_value(order.status)} status as paid", order,
            )
        order.payment_status = PaymentStatus.PAID
        if payment_reference:
            order.payment_reference = payment_reference
        _add_status_history(order, order.status, "Payment received")
        audit_service.record_event(db, "order.paid", "order", order.id, user_id=user_id)
        return OrderResult.ok(order)


def mark_payment_failed(db: Session, order_id: str, *, reason: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.payment_status == PaymentStatus.FAILED:
            return OrderResult.ok(order, info="already_failed")
        if order.payment_status != PaymentStatus.PENDING:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION,
                f"Cannot fail payment that is {_status_value(order.payment_status)}",
                order,
            )
        order.payment_status = PaymentStatus.FAILED
        _add_status_history(order, order.status, reason or "Payment failed")
        audit_service.record_event(db, "order.payment_failed", "order", order.id, user_id=user_id, reason=reason)
        logger.warning("Payment failed for order %s: %s", order.order_number, reason)
        return OrderResult.ok(order)


def mark_shipped(
    db: Session,
    order_id: str,
    *,
    tracking_number: str = "",
    note: str = "",
    user_id: str | None = None,
) -> OrderResult:
    """Ship the order: each line's reservation becomes a physical deduction, exactly once."""
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.status == OrderStatus.SHIPPED:
            return OrderResult.ok(order, info="already_shipped")
        if order.status not in RESERVED_STATUSES:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot ship order in {_status_value(order.status)} status", order,
            )

        stock_service.deduct_batch(
            db, order.items, order_id=order.id, user_id=user_id,
            reason=f"Order {order.order_number} shipped",
        )
        _transition(order, OrderStatus.SHIPPED, note or "Order shipped")
        order.payment_status = PaymentStatus.PAID
        order.shipped_at = _now()
        if tracking_number:
            order.tracking_number = tracking_number
        audit_service.record_event(
            db, "order.ship", "order", order.id, user_id=user_id, tracking_number=tracking_number,
        )
        logger.info("Shipped order %s", order.order_number)
        return OrderResult.ok(order)


def mark_delivered(db: Session, order_id: str, *, note: str = "", user_id: str | None = None) -> OrderResult:
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.status == OrderStatus.DELIVERED:
            return OrderResult.ok(order, info="already_delivered")
        if order.status != OrderStatus.SHIPPED:
            return OrderResult.fail(
                ErrorCode.INVALID_TRANSITION, f"Cannot deliver order in {_status_value(order.status)} status", order,
            )
        _transition(order, OrderStatus.DELIVERED, note or "Order delivered")
        order.delivered_at = _now()
        audit_service.record_event(db, "order.deliver", "order", order.id, user_id=user_id)
        return OrderResult.ok(order)


def refund_order(
    db: Session,
    order_id: str,
    *,
    provider: PaymentProvider,
    reason: str = "",
    user_id: str | None = None,
) -> OrderResult:
    """Refund a paid order once.

    The provider is charged back first, under the order lock and with an
    idempotency key derived from the order id, so a retry after a failure
    cannot refund twice. Stock still reserved (order not yet shipped) is
    released only once the provider has accepted the refund.
    """
    with unit_of_work(db):
        order = _lock_order(db, order_id)
        if not order:
            return OrderResult.fail(ErrorCode.NOT_FOUND, "Order not found")
        if order.payment_status == PaymentStatus.REFUNDED:
            return OrderResult.ok(order, info="already_refunded", message="Order already refunded")
        if order.payment_status != PaymentStatus.PAID:
            return OrderResult.fail(ErrorCode.INVALID_TRANSITION, "Only paid orders can be refunded", order)

        if order.payment_reference:
            receipt = provider.refund(order.payment_reference, idempotency_key=f"refund-{order.id}")
            order.refund_reference = receipt.id
        else:
            logger.warning("Order %s has no payment reference, skipping provider refund", order.order_number)

        if order.status in RESERVED_STATUSES:
            stock_service.release_batch(
                db, order.items, order_id=order.id, user_id=user_id,
                reason=f"Order {order.order_number} refunded",
            )

        _transition(order, OrderStatus.REFUNDED, reason or "Order refunded")
        order.payment_status = PaymentStatus.REFUNDED
        order.refunded_at = _now()
        audit_service.record_event(
            db, "order.refund", "order", order.id, user_id=user_id,
            refund_reference=order.refund_reference, reason=reason,
        )
        logger.info("Refunded order %s (%s)", order.order_number, order.refund_reference or "no provider refund")
        return OrderResult.ok(order)


def update_order_status(
    db: Session,
    order_id: str,
    status: OrderStatus,
    *,
    note: str = "",
    tracking_number: str = "",
    provider: PaymentProvider | None = None,
    user_id: str | None = None,
) -> OrderResult:
    """Route a requested status change to the transition that owns its side effects."""
    status = OrderStatus(status)
    if status == OrderStatus.CONFIRMED:
        return confirm_order(db, order_id, note=note, user_id=user_id)
    if status == OrderStatus.PROCESSING:
        return start_processing(db, order_id, note=note, user_id=user_id)
    if status == OrderStatus.SHIPPED:
        return mark_shipped(db, order_id, tracking_number=tracking_number, note=note, user_id=user_id)
    if status == OrderStatus.DELIVERED:
        return mark_delivered(db, order_id, note=note, user_id=user_id)
    if status == OrderStatus.CANCELLED:
        return cancel_order(db, order_id, reason=note, user_id=user_id)
    if status == OrderStatus.REFUNDED:
        if provider is None:
            return OrderResult.fail(ErrorCode.INVALID_ARGUMENT, "A payment provider is required to refund")
        return refund_order(db, order_id, provider=provider, reason=note, user_id=user_id)
    return OrderResult.fail(ErrorCode.INVALID_TRANSITION, "Orders cannot be moved back to pending")
