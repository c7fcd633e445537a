from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy.orm import Session

from stockkeeper.api.deps import get_calculator, get_provider, get_user_id, raise_for_result
from stockkeeper.database import get_db
from stockkeeper.models.order import OrderStatus
from stockkeeper.schemas.order import CheckoutRequest, OrderActionOut, OrderOut, OrderStatusUpdate, RefundRequest
from stockkeeper.schemas.product import LedgerEntryOut
from stockkeeper.services import ledger_service, order_service
from stockkeeper.services.payment_provider import PaymentProvider
from stockkeeper.services.pricing_service import PricingCalculator

router = APIRouter(prefix="/orders", tags=["Orders"])


def _action(result) -> dict:
    raise_for_result(result)
    return {"info": result.info, "message": result.message, "order": result.order}


@router.post("/checkout", response_model=OrderOut, status_code=201)
def checkout(
    data: CheckoutRequest,
    user_id: str = Depends(get_user_id),
    calculator: PricingCalculator = Depends(get_calculator),
    db: Session = Depends(get_db),
):
    result = order_service.create_from_cart(
        db, user_id, data.address_id, calculator=calculator, customer_notes=data.customer_notes,
    )
    raise_for_result(result)
    return result.order


@router.get("", response_model=list[OrderOut])
def list_orders(
    skip: int = 0, limit: int = 100, status: OrderStatus | None = None, user_id: str | None = None,
    db: Session = Depends(get_db),
):
    return order_service.list_orders(db, skip=skip, limit=limit, status=status, user_id=user_id)


@router.get("/by-number/{order_number}", response_model=OrderOut)
def get_order_by_number(order_number: str, db: Session = Depends(get_db)):
    order = order_service.get_order_by_number(db, order_number)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@router.get("/{order_id}", response_model=OrderOut)
def get_order(order_id: str, db: Session = Depends(get_db)):
    order = order_service.get_order(db, order_id)
    if not order:
        raise HTTPException(404, "Order not found")
    return order


@router.get("/{order_id}/ledger", response_model=list[LedgerEntryOut])
def order_ledger(order_id: str, db: Session = Depends(get_db)):
    if not order_service.get_order(db, order_id):
        raise HTTPException(404, "Order not found")
    return ledger_service.list_order_entries(db, order_id)


@router.patch("/{order_id}/status", response_model=OrderActionOut)
def update_status(
    order_id: str,
    data: OrderStatusUpdate,
    provider: PaymentProvider = Depends(get_provider),
    db: Session = Depends(get_db),
):
    return _action(order_service.update_order_status(
        db, order_id, data.status, note=data.note, tracking_number=data.tracking_number, provider=provider,
    ))


@router.post("/{order_id}/cancel", response_model=OrderActionOut)
def cancel_order(order_id: str, db: Session = Depends(get_db)):
    return _action(order_service.cancel_order(db, order_id))


@router.post("/{order_id}/refund", response_model=OrderActionOut)
def refund_order(
    order_id: str,
    data: RefundRequest,
    provider: PaymentProvider = Depends(get_provider),
    db: Session = Depends(get_db),
):
    return _action(order_service.refund_order(db, order_id, provider=provider, reason=data.reason))
