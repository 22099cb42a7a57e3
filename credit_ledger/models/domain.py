"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field

from credit_ledger.models.api import BalanceEvent, LedgerStatus


@dataclass(frozen=True)
class PurchaseData:
    """Immutable purchase row snapshot."""

    order_id: str
    purchase_token: str
    uid: str
    sku_id: str
    amount: int
    bonus: int
    status: LedgerStatus
    acknowledged: bool

    @property
    def credits_granted(self) -> int:
        """Total credits moved by this purchase."""
        return self.amount + self.bonus


@dataclass(frozen=True)
class PurchaseResult:
    """Outcome of verify-and-credit."""

    purchase: PurchaseData
    new_balance: int
    already_processed: bool


@dataclass(frozen=True)
class OperationData:
    """Immutable operation log snapshot."""

    req_id: str
    uid: str
    cost: int
    status: LedgerStatus
    result_ref: str | None
    error_code: str | None
    error_message: str | None
    duration_ms: int | None


@dataclass(frozen=True)
class OperationResult:
    """Outcome of a saga execution or an idempotent replay."""

    operation: OperationData
    new_balance: int | None
    replayed: bool = False
    processing: bool = False

    @property
    def credits_refunded(self) -> int:
        """Credits returned to the account by compensation."""
        if self.operation.status == LedgerStatus.REFUNDED:
            return self.operation.cost
        return 0


@dataclass(frozen=True)
class BalanceChange:
    """A balance mutation that devices must be told about."""

    uid: str
    event: BalanceEvent
    delta: int
    new_balance: int
    exclude_device_id: str | None = None
    correlation_id: str | None = None


@dataclass(frozen=True)
class DeviceTarget:
    """Active device registration selected for fan-out."""

    device_token: str
    platform: str


@dataclass(frozen=True)
class FanoutResult:
    """Aggregate outcome of one fan-out."""

    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    deactivated: int = 0


@dataclass(frozen=True)
class AckDecision:
    """HTTP decision returned to the billing provider for a notification."""

    status_code: int
    status: str
    notification_type: str | None = None


@dataclass
class ReaperReport:
    """Counters collected during one reaper pass."""

    refunded: int = 0
    refund_skipped: int = 0
    refund_errors: int = 0
    archived: int = 0
    acknowledged: int = 0
    ack_failures: int = 0
    users_notified: int = 0
    errors: list[str] = field(default_factory=list)
