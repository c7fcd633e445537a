import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal

from sqlalchemy.orm import Session

from stockkeeper.config import settings
from stockkeeper.exceptions import ErrorCode
from stockkeeper.models.cart import Address, Cart
from stockkeeper.models.product import Product
from stockkeeper.services import availability_service, stock_service
from stockkeeper.services.idempotency_service import IdempotencyGuard, checkout_fingerprint
from stockkeeper.services.payment_provider import PaymentProvider, build_line_items
from stockkeeper.services.pricing_service import PricingCalculator, default_calculator
from stockkeeper.services.results import FailedItem

logger = logging.getLogger(__name__)


@dataclass
class CheckoutSessionResult:
    success: bool
    session_id: str = ""
    url: str = ""
    replayed: bool = False
    code: ErrorCode | None = None
    message: str = ""
    failed_items: list[FailedItem] = field(default_factory=list)


def _fail(code: ErrorCode, message: str, failed_items: list[FailedItem] | None = None) -> CheckoutSessionResult:
    return CheckoutSessionResult(success=False, code=code, message=message, failed_items=failed_items or [])


def create_checkout_session(
    db: Session,
    user_id: str,
    address_id: str,
    *,
    provider: PaymentProvider,
    guard: IdempotencyGuard,
    calculator: PricingCalculator = default_calculator,
) -> CheckoutSessionResult:
    """Open a hosted payment session for the user's cart.

    Nothing is reserved here; the order (and its reservations) is created when
    the provider confirms payment. Repeats with an unchanged cart and address
    return the session created the first time.
    """
    address = db.query(Address).filter(Address.id == address_id, Address.user_id == user_id).first()
    if not address:
        return _fail(ErrorCode.NOT_FOUND, "Address not found")

    cart = db.query(Cart).filter(Cart.user_id == user_id).first()
    if not cart or not cart.items:
        return _fail(ErrorCode.INVALID_ARGUMENT, "Cart is empty")

    lines = stock_service.merge_lines(cart.items)
    unavailable = availability_service.check_availability(db, lines)
    if unavailable:
        return _fail(unavailable[0].reason, "; ".join(f.message for f in unavailable), unavailable)

    products = {p.id: p for p in db.query(Product).filter(Product.id.in_([pid for pid, _ in lines])).all()}
    priced = []
    subtotal = Decimal("0.00")
    item_count = 0
    has_imported = False
    for product_id, quantity in lines:
        product = products[product_id]
        priced.append({"name": product.name, "unit_price": product.price, "quantity": quantity})
        subtotal += product.price * quantity
        item_count += quantity
        has_imported = has_imported or product.is_imported

    totals = calculator.calculate(address.state, subtotal, item_count, has_imported)
    metadata = {
        "user_id": str(user_id),
        "address_id": str(address_id),
        "cart_id": str(cart.id),
        "items": json.dumps([[pid, qty] for pid, qty in lines], separators=(",", ":")),
        "subtotal": f"{totals.subtotal:.2f}",
        "shipping": f"{totals.shipping_cost:.2f}",
        "tax": f"{totals.tax_amount:.2f}",
        "total": f"{totals.total:.2f}",
        "shipping_method": totals.shipping.method,
        "estimated_days": str(totals.shipping.estimated_days),
    }
    key = checkout_fingerprint(user_id, cart.id, address_id, lines)

    def _create() -> dict:
        session = provider.create_session(
            build_line_items(priced, totals.shipping_cost, totals.tax_amount, address.state, settings.CURRENCY),
            metadata,
            success_url=f"{settings.CHECKOUT_SUCCESS_URL}?session_id={{CHECKOUT_SESSION_ID}}",
            cancel_url=settings.CHECKOUT_CANCEL_URL,
            idempotency_key=key,
        )
        logger.info("Created payment session %s for user %s (total %s)", session.id, user_id, totals.total)
        return {"session_id": session.id, "url": session.url}

    result, replayed = guard.run(key, _create)
    return CheckoutSessionResult(success=True, session_id=result["session_id"], url=result["url"], replayed=replayed)
