from dataclasses import dataclass, field

from stockkeeper.exceptions import ErrorCode


@dataclass(frozen=True)
class StockSnapshot:
    """Counters captured inside the transaction that changed them."""

    product_id: str
    on_hand: int
    reserved: int

    @property
    def available(self) -> int:
        return self.on_hand - self.reserved


@dataclass(frozen=True)
class FailedItem:
    product_id: str
    product_name: str
    requested: int
    available: int
    reason: ErrorCode

    @property
    def message(self) -> str:
        if self.reason == ErrorCode.NOT_FOUND:
            return f"Product {self.product_id} not found"
        if self.reason == ErrorCode.INACTIVE:
            return f"{self.product_name} is no longer available"
        if self.reason == ErrorCode.INVALID_ARGUMENT:
            return f"Invalid quantity {self.requested} for {self.product_name}"
        return f"{self.product_name}: only {self.available} available, {self.requested} requested"


@dataclass
class StockResult:
    success: bool
    code: ErrorCode | None = None
    message: str = ""
    snapshot: StockSnapshot | None = None
    snapshots: list[StockSnapshot] = field(default_factory=list)
    failed_items: list[FailedItem] = field(default_factory=list)
    ledger_ids: list[int] = field(default_factory=list)

    @classmethod
    def ok(cls, snapshots: list[StockSnapshot], ledger_ids: list[int], message: str = "") -> "StockResult":
        return cls(
            success=True,
            message=message,
            snapshot=snapshots[0] if len(snapshots) == 1 else None,
            snapshots=snapshots,
            ledger_ids=ledger_ids,
        )

    @classmethod
    def fail(cls, code: ErrorCode, message: str, failed_items: list[FailedItem] | None = None) -> "StockResult":
        return cls(success=False, code=code, message=message, failed_items=failed_items or [])


@dataclass
class OrderResult:
    success: bool
    order: object | None = None
    code: ErrorCode | None = None
    message: str = ""
    info: str = ""  # already_exists, already_shipped, already_refunded, ...
    failed_items: list[FailedItem] = field(default_factory=list)

    @classmethod
    def ok(cls, order, info: str = "", message: str = "") -> "OrderResult":
        return cls(success=True, order=order, info=info, message=message)

    @classmethod
    def fail(cls, code: ErrorCode, message: str, order=None, failed_items: list[FailedItem] | None = None) -> "OrderResult":
        return cls(success=False, order=order, code=code, message=message, failed_items=failed_items or [])
