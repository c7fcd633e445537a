from enum import Enum as PyEnum


class ErrorCode(str, PyEnum):
    NOT_FOUND = "not_found"
    INACTIVE = "inactive"
    INSUFFICIENT_STOCK = "insufficient_stock"
    INVALID_ARGUMENT = "invalid_argument"
    INVALID_TRANSITION = "invalid_transition"
    CONTENTION = "contention"
    CONFLICT = "conflict"


class StockkeeperError(Exception):
    code: ErrorCode = ErrorCode.CONFLICT

    def __init__(self, message: str = ""):
        super().__init__(message)
        self.message = message


class ContentionError(StockkeeperError):
    """A row lock could not be acquired within LOCK_TIMEOUT_SECONDS. Safe to retry."""

    code = ErrorCode.CONTENTION


class ConflictError(StockkeeperError):
    """A concurrent writer inserted the same unique key first."""

    code = ErrorCode.CONFLICT


class LedgerImmutableError(StockkeeperError):
    code = ErrorCode.INVALID_ARGUMENT


class PaymentProviderError(StockkeeperError):
    def __init__(self, message: str = "", status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class TransactionAborted(Exception):
    """Raised inside a unit of work to roll it back while handing a result to the caller."""

    def __init__(self, result):
        super().__init__(getattr(result, "message", ""))
        self.result = result
