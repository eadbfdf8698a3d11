"""Period rollover: monthly cycles, annual sub-periods and trial conversion."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import settings
from models.credit_account import CreditAccount
from services.ledger.types import BillingInterval, OverageMode, RolloverResult, SubscriptionStatus

logger = logging.getLogger(__name__)

MONTHLY_PERIOD = timedelta(days=30)
POLICY_COMPOUND = "compound"
POLICY_CAP = "cap"


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise stored datetimes; SQLite hands back naive values."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_month_start(value: datetime) -> datetime:
    value = as_utc(value)
    if value.month == 12:
        return datetime(value.year + 1, 1, 1, tzinfo=timezone.utc)
    return datetime(value.year, value.month + 1, 1, tzinfo=timezone.utc)


def is_annual(account: CreditAccount) -> bool:
    return BillingInterval.parse(account.billing_interval) is BillingInterval.ANNUAL


def period_boundary(account: CreditAccount) -> Optional[datetime]:
    """End of the period that credits and overage currently accrue against."""
    if is_annual(account):
        return as_utc(account.monthly_period_end)
    return as_utc(account.current_period_end)


def _advance(account: CreditAccount, boundary: datetime) -> datetime:
    if is_annual(account):
        return next_month_start(boundary)
    return boundary + MONTHLY_PERIOD


def _set_boundary(account: CreditAccount, boundary: datetime) -> None:
    if is_annual(account):
        account.monthly_period_end = boundary
    else:
        account.current_period_end = boundary


def grant_plan_credits(account: CreditAccount, periods: int = 1) -> int:
    granted = max(int(account.included_credits or 0), 0) * max(int(periods), 0)
    account.plan_credits = int(account.plan_credits or 0) + granted
    return granted


def _close_overage_period(account: CreditAccount) -> None:
    used = int(account.overage_balance_used_cents or 0)
    units = int(account.overage_units_this_period or 0)
    if account.overage_mode == OverageMode.TRACKED.value and (used or units):
        account.overage_unbilled_cents = int(account.overage_unbilled_cents or 0) + used
        account.overage_unbilled_units = int(account.overage_unbilled_units or 0) + units
    account.overage_balance_used_cents = 0
    account.overage_units_this_period = 0
    account.credits_used_this_period = 0


def start_paid_period(account: CreditAccount, now: datetime) -> int:
    """Grant the first plan allotment and start the period clock at `now`."""
    now = as_utc(now)
    if is_annual(account):
        account.monthly_period_end = next_month_start(now)
    else:
        account.current_period_end = now + MONTHLY_PERIOD
    _close_overage_period(account)
    account.last_credit_reset_at = now
    return grant_plan_credits(account)


def convert_trial(account: CreditAccount, now: datetime) -> int:
    """End the trial and move the account onto its paid plan.

    Leftover trial credits stay in the trial pool and remain spendable.
    """
    now = as_utc(now)
    account.trial_active = False
    account.trial_ended_at = now
    if SubscriptionStatus.parse(account.subscription_status) is SubscriptionStatus.PENDING:
        account.subscription_status = SubscriptionStatus.ACTIVE.value
    granted = start_paid_period(account, now)
    logger.info(
        "Trial converted to paid for store=%s leftover_trial=%s plan_credits=%s",
        account.store_id,
        account.trial_credits,
        account.plan_credits,
    )
    return granted


def rollover_if_due(account: CreditAccount, now: datetime, *, policy: Optional[str] = None) -> RolloverResult:
    """Advance every period boundary that `now` has crossed.

    Leaves the boundary strictly after `now`, so calling again with the same
    `now` changes nothing.
    """
    result = RolloverResult()
    if SubscriptionStatus.parse(account.subscription_status) is not SubscriptionStatus.ACTIVE:
        return result

    now = as_utc(now)
    if account.trial_active:
        trial_ends_at = as_utc(account.trial_ends_at)
        if trial_ends_at is not None and now >= trial_ends_at:
            result.credits_granted = convert_trial(account, now)
            result.trial_converted = True
        return result

    boundary = period_boundary(account)
    if boundary is None:
        logger.warning("Active store=%s had no period clock; starting it now", account.store_id)
        _set_boundary(account, _advance(account, now))
        return result

    periods = 0
    while now >= boundary:
        boundary = _advance(account, boundary)
        periods += 1
    if periods == 0:
        return result

    policy = (policy or settings.ROLLOVER_MISSED_PERIOD_POLICY or POLICY_COMPOUND).strip().lower()
    grants = 1 if policy == POLICY_CAP else periods
    if periods > 1:
        result.anomaly = True
        logger.warning(
            "Store=%s crossed %s period boundaries at once; policy=%s granting %s top-up(s)",
            account.store_id,
            periods,
            policy,
            grants,
        )

    _close_overage_period(account)
    result.credits_granted = grant_plan_credits(account, grants)
    result.periods_advanced = periods
    _set_boundary(account, boundary)
    account.last_credit_reset_at = now
    logger.info(
        "Rolled over store=%s periods=%s granted=%s plan_credits=%s next_boundary=%s",
        account.store_id,
        periods,
        result.credits_granted,
        account.plan_credits,
        boundary.isoformat(),
    )
    return result
