"""Subscription state machine fed by platform webhooks."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Optional

from config import settings
from models.credit_account import CreditAccount
from services.ledger.rollover import as_utc, is_annual, start_paid_period
from services.ledger.types import (
    OverageMode,
    StaleTransition,
    SubscriptionEvent,
    SubscriptionStatus,
    SyncAction,
    SyncOutcome,
    can_transition,
)
from services.plans import included_credits_for, trial_days_for

logger = logging.getLogger(__name__)


def dedup_key(event: SubscriptionEvent, cap_change_version: Optional[int] = None) -> str:
    """`subscription_id:status`; ACTIVE cap changes also carry cap and row version."""
    key = f"{event.subscription_id}:{event.status.value}"
    if cap_change_version is not None:
        key = f"{key}:cap:{event.capped_amount_cents}:v{cap_change_version}"
    return key


def apply_capped_amount(account: CreditAccount, capped_amount_cents: int) -> bool:
    """Store a new overage cap, never below what was already used this period."""
    used = int(account.overage_balance_used_cents or 0)
    new_cap = max(int(capped_amount_cents), 0)
    if new_cap < used:
        logger.warning(
            "Capped amount %s below used %s for store=%s; clamping to used",
            new_cap,
            used,
            account.store_id,
        )
        new_cap = used
    changed = new_cap != int(account.overage_capped_amount_cents or 0)
    account.overage_capped_amount_cents = new_cap
    return changed


def _start_trial(account: CreditAccount, now: datetime, trial_days: int) -> None:
    account.trial_active = True
    account.trial_started_at = now
    account.trial_ends_at = now + timedelta(days=trial_days)
    account.trial_ended_at = None
    account.trial_credits = int(account.trial_credits or 0) + max(int(settings.TRIAL_CREDITS), 0)
    account.current_period_end = None
    account.monthly_period_end = None


def _configure_plan(account: CreditAccount, event: SubscriptionEvent) -> None:
    if event.plan_handle:
        account.plan_handle = event.plan_handle
    if event.interval is not None:
        account.billing_interval = event.interval.value
    account.included_credits = included_credits_for(account.plan_handle)
    mode = OverageMode.for_interval(event.interval) or (
        OverageMode.TRACKED if is_annual(account) else OverageMode.USAGE_RECORD
    )
    account.overage_mode = mode.value
    account.overage_rate_cents = max(int(settings.OVERAGE_RATE_CENTS), 0)
    if event.usage_line_item_id:
        account.usage_line_item_id = event.usage_line_item_id
    cap = event.capped_amount_cents
    apply_capped_amount(account, cap if cap is not None else settings.OVERAGE_CAPPED_AMOUNT_CENTS)


def _activate(account: CreditAccount, event: SubscriptionEvent, now: datetime, outcome: SyncOutcome) -> None:
    _configure_plan(account, event)
    if account.trial_active:
        # Plan switch mid-trial keeps the running trial.
        return

    trial_days = event.trial_days if event.trial_days is not None else trial_days_for(account.plan_handle)
    if trial_days > 0 and account.trial_started_at is None:
        _start_trial(account, now, trial_days)
        outcome.trial_started = True
        logger.info("Trial started for store=%s days=%s", account.store_id, trial_days)
        return

    outcome.credits_granted = start_paid_period(account, now)
    if not is_annual(account) and event.current_period_end and event.current_period_end > now:
        account.current_period_end = event.current_period_end


def apply_event(
    account: CreditAccount,
    event: SubscriptionEvent,
    *,
    now: datetime,
    known_subscription: bool = False,
) -> SyncOutcome:
    """Move `account` along PENDING -> ACTIVE -> terminal.

    `known_subscription` says whether `event.subscription_id` was applied to
    this account before. Another subscription only takes over on ACTIVE, or
    when the current one is absent or terminal.

    Raises StaleTransition for backwards moves, for events of a superseded
    subscription and for non-ACTIVE events of one that never took over.
    """
    now = as_utc(now)
    resubscribed = False
    current = SubscriptionStatus.parse(account.subscription_status) if account.subscription_id else None

    if event.subscription_id != account.subscription_id:
        if known_subscription:
            raise StaleTransition(f"Subscription {event.subscription_id} is no longer current")
        if current is not None and not current.is_terminal and event.status is not SubscriptionStatus.ACTIVE:
            raise StaleTransition(
                f"{event.status.value} for {event.subscription_id} does not replace "
                f"{current.value} subscription {account.subscription_id}"
            )
        resubscribed = account.subscription_id is not None
        if resubscribed:
            logger.info(
                "Re-subscription for store=%s: %s replaces %s",
                account.store_id,
                event.subscription_id,
                account.subscription_id,
            )
        account.subscription_id = event.subscription_id
        account.usage_line_item_id = None
        current = None

    outcome = SyncOutcome(
        action=SyncAction.APPLIED,
        previous_status=current,
        status=event.status,
        resubscribed=resubscribed,
    )

    if current is event.status:
        if current is SubscriptionStatus.ACTIVE and event.capped_amount_cents is not None:
            if apply_capped_amount(account, event.capped_amount_cents):
                outcome.cap_changed = True
                return outcome
        outcome.action = SyncAction.DUPLICATE
        return outcome

    if not can_transition(current, event.status):
        raise StaleTransition(
            f"{current.value if current else None} -> {event.status.value} for {event.subscription_id}"
        )

    account.subscription_status = event.status.value
    if event.status is SubscriptionStatus.ACTIVE:
        _activate(account, event, now, outcome)
    elif event.status.is_terminal:
        if account.trial_active:
            account.trial_active = False
            account.trial_ended_at = now
        logger.info("Subscription %s for store=%s is now %s", event.subscription_id, account.store_id, event.status.value)
    return outcome
