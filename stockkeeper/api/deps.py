from fastapi import Header, HTTPException

from stockkeeper.exceptions import ErrorCode
from stockkeeper.services.idempotency_service import IdempotencyGuard, get_guard
from stockkeeper.services.payment_provider import PaymentProvider, get_payment_provider
from stockkeeper.services.pricing_service import PricingCalculator, default_calculator

_STATUS_BY_CODE = {
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INACTIVE: 409,
    ErrorCode.INSUFFICIENT_STOCK: 409,
    ErrorCode.INVALID_ARGUMENT: 400,
    ErrorCode.INVALID_TRANSITION: 409,
    ErrorCode.CONTENTION: 503,
    ErrorCode.CONFLICT: 409,
}


def get_user_id(x_user_id: str = Header(...)) -> str:
    """Caller identity as forwarded by the gateway."""
    return x_user_id


def get_provider() -> PaymentProvider:
    return get_payment_provider()


def get_idempotency_guard() -> IdempotencyGuard:
    return get_guard()


def get_calculator() -> PricingCalculator:
    return default_calculator


def raise_for_result(result) -> None:
    """Turn a failed service result into an HTTPException carrying its reason and shortfalls."""
    if result.success:
        return
    detail = {"code": result.code.value if result.code else None, "message": result.message}
    failed = getattr(result, "failed_items", None)
    if failed:
        detail["items"] = [
            {
                "product_id": f.product_id,
                "product_name": f.product_name,
                "requested": f.requested,
                "available": f.available,
                "reason": f.reason.value,
                "message": f.message,
            }
            for f in failed
        ]
    raise HTTPException(_STATUS_BY_CODE.get(result.code, 400), detail)
