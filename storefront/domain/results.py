"""Typed results returned by the engine, the batch coordinator and the sweepers."""
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional, List, Dict

from storefront.core.errors import CheckoutError


class Tier(str, enum.Enum):
    ATOMIC = "atomic"
    TWO_STEP = "two_step"
    FORCED_OVERRIDE = "forced_override"


class TierStatus(str, enum.Enum):
    APPLIED = "applied"          # this tier moved the order to confirmed
    NOOP = "noop"                # someone else confirmed it with the same reference
    REJECTED = "rejected"        # conflict or cancellation, no later tier may run
    UNAVAILABLE = "unavailable"  # tier cannot run against this store
    FAILED = "failed"            # errors after exhausting retries


@dataclass
class TierOutcome:
    tier: Tier
    status: TierStatus
    error: Optional[CheckoutError] = None
    attempts: int = 0

    @property
    def falls_through(self) -> bool:
        return self.status in (TierStatus.UNAVAILABLE, TierStatus.FAILED)


class OutcomeKind(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    CONFLICT = "conflict"
    CANCELLED = "cancelled"
    NOT_FOUND = "not_found"
    PENDING_VERIFICATION = "pending_verification"
    FAILED = "failed"


@dataclass
class OrderOutcome:
    order_id: str
    kind: OutcomeKind
    status: Optional[str] = None
    tier: Optional[Tier] = None
    error: Optional[CheckoutError] = None
    tiers_tried: List[TierOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return self.kind in (OutcomeKind.CONFIRMED, OutcomeKind.ALREADY_CONFIRMED)

    @property
    def awaiting_verification(self) -> bool:
        return self.kind == OutcomeKind.PENDING_VERIFICATION

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "outcome": self.kind.value,
            "status": self.status,
            "tier": self.tier.value if self.tier else None,
            "error": self.error.to_dict() if self.error else None,
        }


class ConfirmStatus(str, enum.Enum):
    CONFIRMED = "confirmed"
    ALREADY_CONFIRMED = "already_confirmed"
    PENDING_VERIFICATION = "pending_verification"  # reference recorded, payment not verified yet
    PARTIAL = "partial"
    CONFLICT = "conflict"
    FAILED = "failed"


@dataclass
class BatchResult:
    batch_id: str
    payment_reference: Optional[str]
    outcomes: List[OrderOutcome] = field(default_factory=list)
    error: Optional[CheckoutError] = None
    reference_reused: bool = False

    @property
    def total_count(self) -> int:
        return len(self.outcomes)

    @property
    def confirmed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def fully_confirmed(self) -> bool:
        return self.error is None and self.total_count > 0 and self.confirmed_count == self.total_count

    @property
    def pending_order_ids(self) -> List[str]:
        return [o.order_id for o in self.outcomes if o.awaiting_verification]

    @property
    def failed_order_ids(self) -> List[str]:
        return [o.order_id for o in self.outcomes if not o.succeeded and not o.awaiting_verification]

    def to_dict(self) -> dict:
        return {
            "batch_id": self.batch_id,
            "payment_reference": self.payment_reference,
            "confirmed_count": self.confirmed_count,
            "total_count": self.total_count,
            "fully_confirmed": self.fully_confirmed,
            "reference_reused": self.reference_reused,
            "pending_order_ids": self.pending_order_ids,
            "failed_order_ids": self.failed_order_ids,
            "orders": [o.to_dict() for o in self.outcomes],
            "error": self.error.to_dict() if self.error else None,
        }


@dataclass
class ConfirmResult:
    status: ConfirmStatus
    order_ids: List[str] = field(default_factory=list)
    error: Optional[CheckoutError] = None
    payment_reference: Optional[str] = None
    outcomes: List[OrderOutcome] = field(default_factory=list)
    batch: Optional[BatchResult] = None

    @property
    def ok(self) -> bool:
        return self.status in (ConfirmStatus.CONFIRMED, ConfirmStatus.ALREADY_CONFIRMED)

    @property
    def confirmed_count(self) -> int:
        return sum(1 for o in self.outcomes if o.succeeded)

    @property
    def pending_count(self) -> int:
        return sum(1 for o in self.outcomes if o.awaiting_verification)

    @property
    def failed_count(self) -> int:
        return len(self.outcomes) - self.confirmed_count - self.pending_count

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "order_ids": self.order_ids,
            "payment_reference": self.payment_reference,
            "confirmed_count": self.confirmed_count,
            "pending_count": self.pending_count,
            "failed_count": self.failed_count,
            "orders": [o.to_dict() for o in self.outcomes],
            "error": self.error.to_dict() if self.error else None,
        }


# --- Sweepers ---

@dataclass
class CleanupResult:
    removed_count: int
    order_ids: List[str]
    threshold_hours: float
    dry_run: bool = False

    def to_dict(self) -> dict:
        return {
            "removed_count": self.removed_count,
            "order_ids": self.order_ids,
            "threshold_hours": self.threshold_hours,
            "dry_run": self.dry_run,
        }


@dataclass
class PendingOrderEntry:
    order_id: str
    order_number: str
    rail: str
    payment_reference: Optional[str]
    age_hours: float


@dataclass
class RailStats:
    count: int = 0
    oldest_age_hours: float = 0.0
    average_age_hours: float = 0.0


@dataclass
class PendingPaymentReport:
    threshold_hours: float
    orders: List[PendingOrderEntry] = field(default_factory=list)
    by_rail: Dict[str, RailStats] = field(default_factory=dict)

    @property
    def total(self) -> int:
        return len(self.orders)

    def to_dict(self) -> dict:
        return {
            "threshold_hours": self.threshold_hours,
            "total": self.total,
            "by_rail": {
                rail: {
                    "count": s.count,
                    "oldest_age_hours": round(s.oldest_age_hours, 2),
                    "average_age_hours": round(s.average_age_hours, 2),
                }
                for rail, s in self.by_rail.items()
            },
            "orders": [
                {
                    "order_id": e.order_id,
                    "order_number": e.order_number,
                    "rail": e.rail,
                    "payment_reference": e.payment_reference,
                    "age_hours": round(e.age_hours, 2),
                }
                for e in self.orders
            ],
        }


# --- Ledger verification ---

@dataclass
class TransferDetails:
    amount: Decimal
    sender: str
    recipient: str

    def to_dict(self) -> dict:
        return {"amount": str(self.amount), "sender": self.sender, "recipient": self.recipient}


@dataclass
class VerificationResult:
    is_valid: bool
    error: Optional[CheckoutError] = None
    details: Optional[TransferDetails] = None


@dataclass
class VerificationOutcome:
    order_id: str
    payment_reference: str
    verified: bool
    deferred: bool = False
    error: Optional[CheckoutError] = None
    confirm: Optional[ConfirmResult] = None

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "payment_reference": self.payment_reference,
            "verified": self.verified,
            "deferred": self.deferred,
            "error": self.error.to_dict() if self.error else None,
            "confirm_status": self.confirm.status.value if self.confirm else None,
        }


@dataclass
class VerificationSweepResult:
    outcomes: List[VerificationOutcome] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.outcomes)

    @property
    def verified_count(self) -> int:
        return sum(1 for o in self.outcomes if o.verified)

    @property
    def failed_count(self) -> int:
        return sum(1 for o in self.outcomes if not o.verified and not o.deferred)

    @property
    def deferred_count(self) -> int:
        return sum(1 for o in self.outcomes if o.deferred)

    def to_dict(self) -> dict:
        return {
            "processed": self.processed,
            "verified": self.verified_count,
            "failed": self.failed_count,
            "deferred": self.deferred_count,
            "orders": [o.to_dict() for o in self.outcomes],
        }


# --- Operator repair ---

@dataclass
class RecoveryResult:
    order_id: str
    action: str
    success: bool
    status: Optional[str] = None
    message: str = ""
    hours_pending: Optional[float] = None
    payment_reference: Optional[str] = None
    confirm: Optional[ConfirmResult] = None
    error: Optional[CheckoutError] = None

    def to_dict(self) -> dict:
        return {
            "order_id": self.order_id,
            "action": self.action,
            "success": self.success,
            "status": self.status,
            "message": self.message,
            "hours_pending": round(self.hours_pending, 2) if self.hours_pending is not None else None,
            "payment_reference": self.payment_reference,
            "confirm": self.confirm.to_dict() if self.confirm else None,
            "error": self.error.to_dict() if self.error else None,
        }


# --- Processor failures ---

@dataclass
class PaymentFailureResult:
    payment_reference: str
    code: str
    retry_eligible: bool
    updated_order_ids: List[str] = field(default_factory=list)
    skipped_order_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "payment_reference": self.payment_reference,
            "code": self.code,
            "retry_eligible": self.retry_eligible,
            "updated_order_ids": self.updated_order_ids,
            "skipped_order_ids": self.skipped_order_ids,
        }
