"""Ledger value types, status ordering and error taxonomy."""

from __future__ import annotations

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional


class Pool(str, enum.Enum):
    TRIAL = "trial"
    COUPON = "coupon"
    PLAN = "plan"
    PURCHASED = "purchased"


# Fixed draw order for debits.
POOL_PRIORITY = (Pool.TRIAL, Pool.COUPON, Pool.PLAN, Pool.PURCHASED)


class BillingInterval(str, enum.Enum):
    EVERY_30_DAYS = "EVERY_30_DAYS"
    ANNUAL = "ANNUAL"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["BillingInterval"]:
        if not value:
            return None
        normalized = str(value).strip().upper().replace("-", "_").replace(" ", "_")
        if normalized in ("EVERY_30_DAYS", "MONTHLY", "MONTH", "30_DAYS"):
            return cls.EVERY_30_DAYS
        if normalized in ("ANNUAL", "ANNUALLY", "YEARLY", "YEAR"):
            return cls.ANNUAL
        return None


class OverageMode(str, enum.Enum):
    USAGE_RECORD = "usage_record"
    TRACKED = "tracked"

    @classmethod
    def for_interval(cls, interval: Optional[BillingInterval]) -> Optional["OverageMode"]:
        if interval is BillingInterval.EVERY_30_DAYS:
            return cls.USAGE_RECORD
        if interval is BillingInterval.ANNUAL:
            return cls.TRACKED
        return None


class SubscriptionStatus(str, enum.Enum):
    PENDING = "PENDING"
    ACTIVE = "ACTIVE"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"
    FROZEN = "FROZEN"

    @property
    def rank(self) -> int:
        return _STATUS_RANK[self]

    @property
    def is_terminal(self) -> bool:
        return self.rank == _TERMINAL_RANK

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["SubscriptionStatus"]:
        if not value:
            return None
        normalized = str(value).strip().upper()
        normalized = _STATUS_ALIASES.get(normalized, normalized)
        try:
            return cls(normalized)
        except ValueError:
            return None


_TERMINAL_RANK = 2
_STATUS_RANK = {
    SubscriptionStatus.PENDING: 0,
    SubscriptionStatus.ACTIVE: 1,
    SubscriptionStatus.CANCELLED: _TERMINAL_RANK,
    SubscriptionStatus.EXPIRED: _TERMINAL_RANK,
    SubscriptionStatus.FROZEN: _TERMINAL_RANK,
}
_STATUS_ALIASES = {
    "ACCEPTED": "PENDING",
    "DECLINED": "CANCELLED",
    "CANCELED": "CANCELLED",
}


def can_transition(current: Optional[SubscriptionStatus], new: SubscriptionStatus) -> bool:
    """Partial order: PENDING < ACTIVE < {CANCELLED, EXPIRED, FROZEN}.

    `current=None` means no subscription has been seen yet. Terminal states
    accept nothing; a re-subscription arrives under a new subscription id.
    """
    if current is None:
        return True
    if current.is_terminal:
        return False
    return new.rank > current.rank


class RefusalReason(str, enum.Enum):
    CREDIT_AND_OVERAGE_EXHAUSTED = "credit_and_overage_exhausted"
    OVERAGE_CAP_REACHED = "overage_cap_reached"
    SUBSCRIPTION_INACTIVE = "subscription_inactive"
    REMOTE_CHARGE_FAILED = "remote_charge_failed"
    LOCK_TIMEOUT = "lock_timeout"


class LedgerError(Exception):
    """Base class for ledger errors carrying a stable reason code."""

    reason: str = "ledger_error"

    def __init__(self, message: str = "", *, reason: Optional[str] = None):
        super().__init__(message or self.__class__.__doc__ or self.reason)
        if reason:
            self.reason = reason


class InsufficientCredit(LedgerError):
    """Not enough credits. Purchase credits or upgrade your plan to continue."""

    reason = RefusalReason.CREDIT_AND_OVERAGE_EXHAUSTED.value


class OverageCapReached(LedgerError):
    """Overage limit reached for this period. Raise your capped amount or wait for the next period."""

    reason = RefusalReason.OVERAGE_CAP_REACHED.value


class SubscriptionInactive(LedgerError):
    """Subscription is not active."""

    reason = RefusalReason.SUBSCRIPTION_INACTIVE.value


class RemoteChargeFailed(LedgerError):
    """Billing platform rejected the usage charge. Retry the request."""

    reason = RefusalReason.REMOTE_CHARGE_FAILED.value


class LockTimeout(LedgerError):
    """Ledger is busy for this store. Retry the request."""

    reason = RefusalReason.LOCK_TIMEOUT.value


class UnknownWebhookShape(LedgerError):
    """Subscription webhook payload shape was not recognised."""

    reason = "unknown_webhook_shape"


class StaleTransition(LedgerError):
    """Subscription status event is older than the stored state."""

    reason = "stale_transition"


class CouponRejected(LedgerError):
    """Coupon code cannot be redeemed."""

    reason = "INVALID_CODE"


_REFUSAL_ERRORS = {
    RefusalReason.CREDIT_AND_OVERAGE_EXHAUSTED: InsufficientCredit,
    RefusalReason.OVERAGE_CAP_REACHED: OverageCapReached,
    RefusalReason.SUBSCRIPTION_INACTIVE: SubscriptionInactive,
    RefusalReason.REMOTE_CHARGE_FAILED: RemoteChargeFailed,
    RefusalReason.LOCK_TIMEOUT: LockTimeout,
}


@dataclass(frozen=True)
class DebitRequest:
    store_id: str
    amount: int = 1
    reference_id: Optional[str] = None


@dataclass(frozen=True)
class PoolCharge:
    pool: Pool
    amount: int


@dataclass
class DebitResult:
    debit_id: str
    store_id: str
    amount: int
    pools_charged: List[PoolCharge] = field(default_factory=list)
    overage_units: int = 0
    overage_charged_cents: int = 0
    overage_mode: Optional[OverageMode] = None
    overage_period_end: Optional[datetime] = None
    trial_ended: bool = False
    refusal_reason: Optional[RefusalReason] = None
    reference_id: Optional[str] = None

    @property
    def refused(self) -> bool:
        return self.refusal_reason is not None

    def raise_for_refusal(self) -> None:
        """Raise the matching LedgerError when this debit was refused."""
        if self.refusal_reason is None:
            return
        raise _REFUSAL_ERRORS[self.refusal_reason]()

    def to_payload(self) -> Dict[str, Any]:
        return {
            "debit_id": self.debit_id,
            "store_id": self.store_id,
            "amount": self.amount,
            "reference_id": self.reference_id,
            "pools_charged": [{"pool": item.pool.value, "amount": item.amount} for item in self.pools_charged],
            "overage_units": self.overage_units,
            "overage_charged_cents": self.overage_charged_cents,
            "overage_mode": self.overage_mode.value if self.overage_mode else None,
            "overage_period_end": self.overage_period_end.isoformat() if self.overage_period_end else None,
            "trial_ended": self.trial_ended,
            "refusal_reason": self.refusal_reason.value if self.refusal_reason else None,
        }

    @classmethod
    def from_payload(cls, payload: Dict[str, Any]) -> "DebitResult":
        period_end = payload.get("overage_period_end")
        if isinstance(period_end, str):
            period_end = datetime.fromisoformat(period_end)
        mode = payload.get("overage_mode")
        refusal = payload.get("refusal_reason")
        return cls(
            debit_id=str(payload["debit_id"]),
            store_id=str(payload["store_id"]),
            amount=int(payload.get("amount") or 0),
            reference_id=payload.get("reference_id"),
            pools_charged=[
                PoolCharge(pool=Pool(item["pool"]), amount=int(item["amount"]))
                for item in payload.get("pools_charged") or []
            ],
            overage_units=int(payload.get("overage_units") or 0),
            overage_charged_cents=int(payload.get("overage_charged_cents") or 0),
            overage_mode=OverageMode(mode) if mode else None,
            overage_period_end=period_end,
            trial_ended=bool(payload.get("trial_ended")),
            refusal_reason=RefusalReason(refusal) if refusal else None,
        )


@dataclass
class CreditResult:
    debit_id: str
    store_id: str
    pools_restored: List[PoolCharge] = field(default_factory=list)
    overage_refunded_cents: int = 0
    manual_reconciliation: bool = False
    already_refunded: bool = False

    @property
    def credits_restored(self) -> int:
        return sum(item.amount for item in self.pools_restored)


@dataclass
class OverageCharge:
    units: int
    amount_cents: int
    mode: OverageMode
    remote_reference: Optional[str] = None


@dataclass
class RolloverResult:
    periods_advanced: int = 0
    credits_granted: int = 0
    trial_converted: bool = False
    anomaly: bool = False

    @property
    def changed(self) -> bool:
        return bool(self.periods_advanced or self.credits_granted or self.trial_converted)


@dataclass(frozen=True)
class SubscriptionEvent:
    subscription_id: str
    status: SubscriptionStatus
    plan_handle: Optional[str] = None
    interval: Optional[BillingInterval] = None
    capped_amount_cents: Optional[int] = None
    trial_days: Optional[int] = None
    usage_line_item_id: Optional[str] = None
    current_period_end: Optional[datetime] = None


class SyncAction(str, enum.Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    STALE = "stale"


@dataclass
class SyncOutcome:
    action: SyncAction
    previous_status: Optional[SubscriptionStatus] = None
    status: Optional[SubscriptionStatus] = None
    trial_started: bool = False
    credits_granted: int = 0
    cap_changed: bool = False
    resubscribed: bool = False
