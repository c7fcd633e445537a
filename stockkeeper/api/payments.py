import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.concurrency import run_in_threadpool
from sqlalchemy.orm import Session

from stockkeeper.api.deps import (
    get_calculator,
    get_idempotency_guard,
    get_provider,
    get_user_id,
    raise_for_result,
)
from stockkeeper.config import settings
from stockkeeper.database import get_db
from stockkeeper.schemas.cart import CheckoutSessionOut, CheckoutSessionRequest, VerifySessionRequest
from stockkeeper.schemas.order import OrderActionOut
from stockkeeper.services import checkout_service, order_service
from stockkeeper.services.idempotency_service import IdempotencyGuard
from stockkeeper.services.order_service import PaymentConfirmation
from stockkeeper.services.payment_provider import PaymentProvider, PaymentSession, verify_webhook
from stockkeeper.services.pricing_service import PricingCalculator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])


def _confirm(db: Session, session: PaymentSession, calculator: PricingCalculator):
    return order_service.create_from_payment_confirmation(
        db, PaymentConfirmation.from_session(session), calculator=calculator,
    )


@router.post("/checkout-session", response_model=CheckoutSessionOut)
def create_checkout_session(
    data: CheckoutSessionRequest,
    user_id: str = Depends(get_user_id),
    provider: PaymentProvider = Depends(get_provider),
    guard: IdempotencyGuard = Depends(get_idempotency_guard),
    calculator: PricingCalculator = Depends(get_calculator),
    db: Session = Depends(get_db),
):
    result = checkout_service.create_checkout_session(
        db, user_id, data.address_id, provider=provider, guard=guard, calculator=calculator,
    )
    raise_for_result(result)
    return {"session_id": result.session_id, "url": result.url, "replayed": result.replayed}


@router.post("/verify-session", response_model=OrderActionOut)
def verify_session(
    data: VerifySessionRequest,
    user_id: str = Depends(get_user_id),
    provider: PaymentProvider = Depends(get_provider),
    calculator: PricingCalculator = Depends(get_calculator),
    db: Session = Depends(get_db),
):
    """Client-side return from the hosted checkout; races the webhook and ends in the same order."""
    session = provider.retrieve_session(data.session_id)
    if str(session.metadata.get("user_id", "")) != user_id:
        raise HTTPException(404, "Payment session not found")
    if not session.is_paid:
        raise HTTPException(409, {"code": "payment_pending", "message": "Payment has not completed"})

    result = _confirm(db, session, calculator)
    raise_for_result(result)
    return {"info": result.info, "message": result.message, "order": result.order}


def _handle_event(db: Session, event: dict, calculator: PricingCalculator) -> dict:
    event_type = event.get("type", "")
    if event_type != "checkout.session.completed":
        # Orders exist only for paid sessions, so other events have nothing to act on
        logger.info("Unhandled webhook event type: %s", event_type)
        return {"received": True}

    session = PaymentSession.from_payload((event.get("data") or {}).get("object") or {})
    result = _confirm(db, session, calculator)
    if not result.success:
        # Paid but unfulfillable; acknowledge so the provider stops retrying
        logger.error("Paid session %s produced no order: %s", session.id, result.message)
        return {"received": True, "order_created": False, "reason": result.code.value if result.code else None}
    return {"received": True, "order_id": result.order.id, "info": result.info}


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    calculator: PricingCalculator = Depends(get_calculator),
    db: Session = Depends(get_db),
):
    """Provider callbacks, delivered at least once."""
    payload = await request.body()
    try:
        event = verify_webhook(payload, request.headers.get("X-Signature", ""), settings.PAYMENT_WEBHOOK_SECRET)
    except ValueError as e:
        logger.warning("Webhook signature verification failed: %s", e)
        raise HTTPException(400, f"Webhook Error: {e}")

    # Row locks block, so keep them off the event loop
    return await run_in_threadpool(_handle_event, db, event, calculator)
