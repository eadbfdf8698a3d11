"""Credit ledger operations exposed to the API, queue worker and schedulers."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Union

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.credit_account import CreditAccount
from models.credit_ledger import CreditLedger
from models.subscription_event import SubscriptionEventRecord
from services.billing_platform import build_billing_client, cents_to_money
from services.ledger import deduction
from services.ledger.journal import (
    insert_entry,
    iso,
    journal_debit,
    journal_rollover,
    pool_deltas,
    replay_debit,
    utcnow,
)
from services.ledger.overage import OverageBillingAdapter, overage_headroom_cents
from services.ledger.pools import CreditPools, adjust_pool
from services.ledger.rollover import convert_trial
from services.ledger.rollover import rollover_if_due as _rollover_account
from services.ledger.store import LedgerStore
from services.ledger.subscription_sync import apply_event, dedup_key
from services.ledger.types import (
    CouponRejected,
    CreditResult,
    DebitResult,
    LockTimeout,
    Pool,
    RefusalReason,
    RolloverResult,
    StaleTransition,
    SubscriptionEvent,
    SubscriptionStatus,
    SyncAction,
    SyncOutcome,
)
from services.ledger.webhook_shapes import normalize_subscription_payload
from services.plans import get_coupon, get_credit_package

logger = logging.getLogger(__name__)

BILLING_PROVIDER = "shopify"
REFUND_ENTRY_TYPES = ("refund",)

_ledger_store: Optional[LedgerStore] = None
_overage_adapter: Optional[OverageBillingAdapter] = None


def get_ledger_store() -> LedgerStore:
    """Process-wide LedgerStore (also used as a FastAPI dependency)."""
    global _ledger_store
    if _ledger_store is None:
        _ledger_store = LedgerStore(async_session_maker)
    return _ledger_store


def get_overage_adapter() -> OverageBillingAdapter:
    global _overage_adapter
    if _overage_adapter is None:
        _overage_adapter = OverageBillingAdapter()
    return _overage_adapter


def summarize_account(account: CreditAccount) -> Dict[str, Any]:
    pools = CreditPools.from_account(account)
    headroom = overage_headroom_cents(account)
    return {
        "store_id": account.store_id,
        "total": pools.total,
        "breakdown": pools.breakdown(),
        "credits_used_this_period": int(account.credits_used_this_period or 0),
        "overage": {
            "mode": account.overage_mode,
            "balance_used": cents_to_money(account.overage_balance_used_cents or 0),
            "capped_amount": cents_to_money(account.overage_capped_amount_cents or 0),
            "rate": cents_to_money(account.overage_rate_cents or 0),
            "remaining": cents_to_money(headroom),
            "balance_used_cents": int(account.overage_balance_used_cents or 0),
            "capped_amount_cents": int(account.overage_capped_amount_cents or 0),
            "rate_cents": int(account.overage_rate_cents or 0),
            "remaining_cents": headroom,
            "units_this_period": int(account.overage_units_this_period or 0),
            "unbilled_cents": int(account.overage_unbilled_cents or 0),
        },
        "trial": {
            "active": bool(account.trial_active),
            "credits": int(account.trial_credits or 0),
            "started_at": iso(account.trial_started_at),
            "ends_at": iso(account.trial_ends_at),
            "ended_at": iso(account.trial_ended_at),
        },
        "subscription": {
            "id": account.subscription_id,
            "status": account.subscription_status,
            "plan_handle": account.plan_handle,
            "interval": account.billing_interval,
            "included_credits": int(account.included_credits or 0),
            "current_period_end": iso(account.current_period_end),
            "monthly_period_end": iso(account.monthly_period_end),
        },
    }


async def get_balance(
    store_id: str,
    *,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
) -> Dict[str, Any]:
    """Current balances after any due rollover, plus recent journal entries."""
    store = store or get_ledger_store()
    now = utcnow(now)

    async def _mutator(db: AsyncSession, account: CreditAccount) -> Dict[str, Any]:
        rolled = _rollover_account(account, now)
        if rolled.changed:
            await journal_rollover(db, account, rolled)
        result = await db.execute(
            select(CreditLedger)
            .where(CreditLedger.store_id == store_id)
            .order_by(CreditLedger.created_at.desc())
            .limit(30)
        )
        entries = result.scalars().all()
        summary = summarize_account(account)
        summary["recent_entries"] = [
            {
                "id": entry.id,
                "entry_type": entry.entry_type,
                "delta_credits": entry.delta_credits,
                "pool_deltas": entry.pool_deltas,
                "overage_delta_cents": entry.overage_delta_cents,
                "balance_after": entry.balance_after,
                "reason": entry.reason,
                "created_at": entry.created_at.isoformat() if entry.created_at else None,
            }
            for entry in entries
        ]
        return summary

    return await store.mutate(store_id, _mutator)


async def debit(
    store_id: str,
    amount: int = 1,
    *,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
    overage: Optional[OverageBillingAdapter] = None,
) -> DebitResult:
    """Charge `amount` credits for one generation request.

    Due rollovers run first; a debit that empties an active trial converts
    the account to paid in the same transaction.
    """
    store = store or get_ledger_store()
    overage = overage or get_overage_adapter()
    now = utcnow(now)
    debit_id = str(uuid.uuid4())

    async def _mutator(db: AsyncSession, account: CreditAccount) -> DebitResult:
        rolled = _rollover_account(account, now)
        if rolled.changed:
            await journal_rollover(db, account, rolled)

        result = await deduction.debit(
            account,
            amount,
            now=now,
            overage=overage,
            reference_id=reference_id,
            debit_id=debit_id,
        )
        if result.refused:
            logger.info("Debit refused store=%s reason=%s", store_id, result.refusal_reason.value)
            return result

        await journal_debit(db, account, result)
        if result.trial_ended:
            granted = convert_trial(account, now)
            await journal_rollover(db, account, RolloverResult(credits_granted=granted, trial_converted=True))
        return result

    try:
        return await store.mutate(store_id, _mutator)
    except LockTimeout:
        logger.warning("Debit for store=%s failed closed on lock timeout", store_id)
        return DebitResult(
            debit_id=debit_id,
            store_id=store_id,
            amount=int(amount),
            reference_id=reference_id,
            refusal_reason=RefusalReason.LOCK_TIMEOUT,
        )


async def credit(
    store_id: str,
    debit_result: DebitResult,
    *,
    store: Optional[LedgerStore] = None,
) -> CreditResult:
    """Reverse a debit exactly; a second call for the same debit is a no-op.

    Pools and overage are restored from the journaled debit, so the caller's
    copy only identifies the debit and must agree with the recorded split.
    """
    if debit_result.store_id != store_id:
        raise ValueError("Debit result belongs to a different store")
    store = store or get_ledger_store()

    async def _mutator(db: AsyncSession, account: CreditAccount) -> CreditResult:
        refunded = await db.execute(
            select(CreditLedger.id).where(
                CreditLedger.store_id == store_id,
                CreditLedger.entry_type.in_(REFUND_ENTRY_TYPES),
                CreditLedger.reference_id == debit_result.debit_id,
            )
        )
        if refunded.first() is not None:
            return CreditResult(debit_id=debit_result.debit_id, store_id=store_id, already_refunded=True)

        recorded = await db.execute(
            select(CreditLedger).where(
                CreditLedger.store_id == store_id,
                CreditLedger.entry_type == "debit",
                CreditLedger.reference_id == debit_result.debit_id,
            )
        )
        entry = recorded.scalars().first()
        if entry is None:
            logger.warning("Refund requested for unknown debit=%s store=%s", debit_result.debit_id, store_id)
            return CreditResult(debit_id=debit_result.debit_id, store_id=store_id)
        recorded_debit = replay_debit(entry, debit_result)

        result = deduction.credit(account, recorded_debit)
        await insert_entry(
            db,
            account,
            entry_type="refund",
            delta_credits=result.credits_restored,
            pool_deltas=pool_deltas(result.pools_restored, 1),
            overage_delta_cents=-result.overage_refunded_cents,
            reason="Generation failed; debit reversed",
            reference_type="debit",
            reference_id=debit_result.debit_id,
        )
        if result.manual_reconciliation:
            await insert_entry(
                db,
                account,
                entry_type="refund_manual_review",
                delta_credits=0,
                overage_delta_cents=recorded_debit.overage_charged_cents,
                overage_units=recorded_debit.overage_units,
                overage_mode=recorded_debit.overage_mode,
                overage_period_end=recorded_debit.overage_period_end,
                reason="Usage-record overage already billed; refund needs manual review",
                reference_type="debit",
                reference_id=debit_result.debit_id,
            )
        return result

    return await store.mutate(store_id, _mutator, create=False)


async def rollover_if_due(
    store_id: str,
    *,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
) -> RolloverResult:
    store = store or get_ledger_store()
    now = utcnow(now)

    async def _mutator(db: AsyncSession, account: Optional[CreditAccount]) -> RolloverResult:
        if account is None:
            return RolloverResult()
        result = _rollover_account(account, now)
        if result.changed:
            await journal_rollover(db, account, result)
        return result

    return await store.mutate(store_id, _mutator, create=False)


async def _subscription_seen(db: AsyncSession, store_id: str, subscription_id: str) -> bool:
    """Whether `subscription_id` was ever applied to the store; dropped events don't count."""
    result = await db.execute(
        select(SubscriptionEventRecord.id)
        .where(
            SubscriptionEventRecord.store_id == store_id,
            SubscriptionEventRecord.subscription_id == subscription_id,
            SubscriptionEventRecord.outcome == SyncAction.APPLIED.value,
        )
        .limit(1)
    )
    return result.first() is not None


async def _event_recorded(db: AsyncSession, key: str) -> bool:
    result = await db.execute(select(SubscriptionEventRecord.id).where(SubscriptionEventRecord.dedup_key == key))
    return result.first() is not None


async def apply_external_event(
    store_id: str,
    payload: Union[SubscriptionEvent, Dict[str, Any], List[Any]],
    *,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
) -> SyncOutcome:
    """Apply one subscription webhook.

    Raises UnknownWebhookShape before touching state when the payload cannot
    be normalised. Stale and duplicate events are recorded, not raised.
    """
    event = payload if isinstance(payload, SubscriptionEvent) else normalize_subscription_payload(payload)
    raw_payload = None if isinstance(payload, SubscriptionEvent) else payload
    store = store or get_ledger_store()
    now = utcnow(now)

    async def _mutator(db: AsyncSession, account: CreditAccount) -> SyncOutcome:
        known = False
        if event.subscription_id != account.subscription_id:
            known = await _subscription_seen(db, store_id, event.subscription_id)
        version_before = account.version
        try:
            outcome = apply_event(account, event, now=now, known_subscription=known)
        except StaleTransition as exc:
            logger.debug("Dropping stale subscription event for store=%s: %s", store_id, exc)
            outcome = SyncOutcome(
                action=SyncAction.STALE,
                previous_status=SubscriptionStatus.parse(account.subscription_status),
                status=event.status,
            )

        key = dedup_key(event, version_before if outcome.cap_changed else None)
        if await _event_recorded(db, key):
            logger.info("Subscription event %s already recorded for store=%s", key, store_id)
        else:
            db.add(
                SubscriptionEventRecord(
                    id=str(uuid.uuid4()),
                    store_id=store_id,
                    subscription_id=event.subscription_id,
                    status=event.status.value,
                    dedup_key=key,
                    capped_amount_cents=event.capped_amount_cents,
                    outcome=outcome.action.value,
                    payload=raw_payload,
                )
            )

        if outcome.trial_started:
            trial_grant = max(int(settings.TRIAL_CREDITS), 0)
            await insert_entry(
                db,
                account,
                entry_type="trial_grant",
                delta_credits=trial_grant,
                pool_deltas={Pool.TRIAL.value: trial_grant},
                reason="Free trial credits",
                reference_type="subscription",
                reference_id=event.subscription_id,
            )
        if outcome.credits_granted:
            await insert_entry(
                db,
                account,
                entry_type="plan_grant",
                delta_credits=outcome.credits_granted,
                pool_deltas={Pool.PLAN.value: outcome.credits_granted},
                reason=f"Plan credits for {account.plan_handle}",
                reference_type="subscription",
                reference_id=event.subscription_id,
            )
        if outcome.action is SyncAction.APPLIED:
            logger.info(
                "Subscription event applied store=%s sub=%s %s -> %s cap_changed=%s",
                store_id,
                event.subscription_id,
                outcome.previous_status.value if outcome.previous_status else None,
                event.status.value,
                outcome.cap_changed,
            )
        return outcome

    return await store.mutate(store_id, _mutator)


async def redeem_coupon(
    store_id: str,
    code: str,
    *,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
) -> Dict[str, Any]:
    """Add a coupon's credits to the coupon pool, enforcing its per-store limit."""
    coupon = get_coupon(code)
    if coupon is None:
        raise CouponRejected("Invalid coupon code", reason="INVALID_CODE")
    if not coupon.active:
        raise CouponRejected("This coupon is no longer active", reason="INACTIVE_CODE")
    now = utcnow(now)
    if coupon.expires_at is not None and now > coupon.expires_at:
        raise CouponRejected("This coupon has expired", reason="EXPIRED_CODE")
    store = store or get_ledger_store()

    async def _mutator(db: AsyncSession, account: CreditAccount) -> Dict[str, Any]:
        if coupon.per_store_limit is not None:
            used = await db.execute(
                select(func.count(CreditLedger.id)).where(
                    CreditLedger.store_id == store_id,
                    CreditLedger.entry_type == "coupon",
                    CreditLedger.reference_id == coupon.code,
                )
            )
            if int(used.scalar() or 0) >= coupon.per_store_limit:
                raise CouponRejected("Coupon usage limit reached for this store", reason="USAGE_LIMIT_EXCEEDED")

        adjust_pool(account, Pool.COUPON, coupon.credits)
        await insert_entry(
            db,
            account,
            entry_type="coupon",
            delta_credits=coupon.credits,
            pool_deltas={Pool.COUPON.value: coupon.credits},
            reason=coupon.description,
            reference_type="coupon",
            reference_id=coupon.code,
        )
        logger.info("Coupon %s redeemed by store=%s (+%s)", coupon.code, store_id, coupon.credits)
        return {
            "code": coupon.code,
            "credits_added": coupon.credits,
            "coupon_credits": int(account.coupon_credits or 0),
            "total": CreditPools.from_account(account).total,
        }

    return await store.mutate(store_id, _mutator)


async def start_credit_purchase(
    store_id: str,
    package_id: str,
    *,
    client_factory: Optional[Callable[[str], Any]] = None,
) -> Dict[str, Any]:
    """Create the one-time platform charge the merchant has to approve."""
    package = get_credit_package(package_id)
    if package is None:
        raise ValueError(f"Unknown credit package: {package_id}")
    client = (client_factory or build_billing_client)(store_id)
    amount_cents = int(round(package.price * 100))
    return_url = f"{settings.APP_URL}/billing/purchases/complete?package_id={package.id}&store_id={store_id}"
    receipt = await client.create_one_time_charge(package.name, amount_cents, return_url)
    return {
        "package_id": package.id,
        "credits": package.credits,
        "charge_id": receipt.id,
        "confirmation_url": receipt.confirmation_url,
    }


async def add_purchased_credits(
    store_id: str,
    package_id: str,
    billing_reference: str,
    *,
    store: Optional[LedgerStore] = None,
) -> Dict[str, Any]:
    """Credit an approved package purchase once per billing reference."""
    package = get_credit_package(package_id)
    if package is None:
        raise ValueError(f"Unknown credit package: {package_id}")
    if not billing_reference:
        raise ValueError("billing_reference is required")
    store = store or get_ledger_store()

    async def _mutator(db: AsyncSession, account: CreditAccount) -> Dict[str, Any]:
        existing = await db.execute(
            select(CreditLedger.id).where(
                CreditLedger.store_id == store_id,
                CreditLedger.entry_type == "purchase",
                CreditLedger.billing_reference == billing_reference,
            )
        )
        if existing.first() is not None:
            return {
                "credits_added": 0,
                "duplicate": True,
                "purchased_credits": int(account.purchased_credits or 0),
                "total": CreditPools.from_account(account).total,
            }

        adjust_pool(account, Pool.PURCHASED, package.credits)
        await insert_entry(
            db,
            account,
            entry_type="purchase",
            delta_credits=package.credits,
            pool_deltas={Pool.PURCHASED.value: package.credits},
            reason=f"Credit package {package.name}",
            reference_type="package",
            reference_id=package.id,
            billing_provider=BILLING_PROVIDER,
            billing_reference=billing_reference,
        )
        return {
            "credits_added": package.credits,
            "duplicate": False,
            "purchased_credits": int(account.purchased_credits or 0),
            "total": CreditPools.from_account(account).total,
        }

    return await store.mutate(store_id, _mutator)


async def run_due_rollovers(
    now: Optional[datetime] = None,
    *,
    store: Optional[LedgerStore] = None,
) -> int:
    """Roll over every active store whose boundary has passed; returns how many changed."""
    store = store or get_ledger_store()
    now = utcnow(now)
    async with store.session_maker() as db:
        result = await db.execute(
            select(CreditAccount.store_id).where(
                CreditAccount.subscription_status == SubscriptionStatus.ACTIVE.value,
                (
                    (CreditAccount.current_period_end <= now)
                    | (CreditAccount.monthly_period_end <= now)
                    | ((CreditAccount.trial_active.is_(True)) & (CreditAccount.trial_ends_at <= now))
                ),
            )
        )
        store_ids = [row[0] for row in result.all()]

    changed = 0
    for store_id in store_ids:
        try:
            outcome = await rollover_if_due(store_id, now=now, store=store)
        except LockTimeout:
            logger.warning("Rollover sweep skipped busy store=%s", store_id)
            continue
        if outcome.changed:
            changed += 1
    return changed
