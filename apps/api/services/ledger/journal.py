"""Append-only credit journal shared by the ledger services."""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional

from sqlalchemy.ext.asyncio import AsyncSession

from models.credit_account import CreditAccount
from models.credit_ledger import CreditLedger
from services.ledger.pools import CreditPools
from services.ledger.rollover import as_utc, period_boundary
from services.ledger.types import (
    POOL_PRIORITY,
    DebitResult,
    OverageMode,
    Pool,
    PoolCharge,
    RolloverResult,
)


def utcnow(now: Optional[datetime] = None) -> datetime:
    return as_utc(now) if now is not None else datetime.now(timezone.utc)


def iso(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


def pool_deltas(charges: List[PoolCharge], sign: int) -> Dict[str, int]:
    return {item.pool.value: sign * item.amount for item in charges}


async def insert_entry(
    db: AsyncSession,
    account: CreditAccount,
    *,
    entry_type: str,
    delta_credits: int,
    pool_deltas: Optional[Dict[str, int]] = None,
    overage_delta_cents: int = 0,
    overage_units: int = 0,
    overage_mode: Optional[OverageMode] = None,
    overage_period_end: Optional[datetime] = None,
    reason: Optional[str] = None,
    reference_type: Optional[str] = None,
    reference_id: Optional[str] = None,
    billing_provider: Optional[str] = None,
    billing_reference: Optional[str] = None,
) -> CreditLedger:
    """Add one journal row in the caller's transaction; `balance_after` is the pool total."""
    entry = CreditLedger(
        id=str(uuid.uuid4()),
        store_id=account.store_id,
        entry_type=entry_type,
        delta_credits=int(delta_credits),
        pool_deltas=pool_deltas,
        overage_delta_cents=int(overage_delta_cents),
        overage_units=int(overage_units),
        overage_mode=overage_mode.value if overage_mode else None,
        overage_period_end=overage_period_end,
        balance_after=CreditPools.from_account(account).total,
        reason=reason,
        reference_type=reference_type,
        reference_id=reference_id,
        billing_provider=billing_provider,
        billing_reference=billing_reference,
        period_key=iso(period_boundary(account)),
    )
    db.add(entry)
    await db.flush()
    return entry


async def journal_debit(db: AsyncSession, account: CreditAccount, result: DebitResult) -> CreditLedger:
    """Record an accepted debit with everything a later refund replays."""
    drawn = sum(item.amount for item in result.pools_charged)
    reference = result.reference_id
    return await insert_entry(
        db,
        account,
        entry_type="debit",
        delta_credits=-drawn,
        pool_deltas=pool_deltas(result.pools_charged, -1),
        overage_delta_cents=result.overage_charged_cents,
        overage_units=result.overage_units,
        overage_mode=result.overage_mode,
        overage_period_end=result.overage_period_end,
        reason=f"Generation debit ({reference})" if reference else "Generation debit",
        reference_type="debit",
        reference_id=result.debit_id,
    )


def replay_debit(entry: CreditLedger, debit_result: DebitResult) -> DebitResult:
    """Rebuild the debit from its journal entry.

    Raises ValueError when the caller's split disagrees with the journal.
    """
    recorded = entry.pool_deltas or {}
    if recorded != pool_deltas(debit_result.pools_charged, -1) or int(entry.overage_delta_cents or 0) != int(
        debit_result.overage_charged_cents
    ):
        raise ValueError("Debit split does not match the recorded debit")

    charges = [
        PoolCharge(pool=pool, amount=-int(recorded[pool.value]))
        for pool in POOL_PRIORITY
        if int(recorded.get(pool.value) or 0) < 0
    ]
    units = int(entry.overage_units or 0)
    return DebitResult(
        debit_id=debit_result.debit_id,
        store_id=entry.store_id,
        amount=sum(item.amount for item in charges) + units,
        reference_id=debit_result.reference_id,
        pools_charged=charges,
        overage_units=units,
        overage_charged_cents=int(entry.overage_delta_cents or 0),
        overage_mode=OverageMode(entry.overage_mode) if entry.overage_mode else None,
        overage_period_end=as_utc(entry.overage_period_end),
    )


async def journal_rollover(db: AsyncSession, account: CreditAccount, result: RolloverResult) -> None:
    if result.trial_converted:
        await insert_entry(
            db,
            account,
            entry_type="trial_conversion",
            delta_credits=result.credits_granted,
            pool_deltas={Pool.PLAN.value: result.credits_granted},
            reason="Trial ended; first plan allotment granted",
        )
    elif result.periods_advanced:
        await insert_entry(
            db,
            account,
            entry_type="period_grant",
            delta_credits=result.credits_granted,
            pool_deltas={Pool.PLAN.value: result.credits_granted},
            reason=f"Plan credits for {result.periods_advanced} period(s)",
        )
