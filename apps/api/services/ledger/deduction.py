"""Debit planning across credit pools and exact refund replay."""

from __future__ import annotations

import logging
import uuid
from datetime import datetime
from typing import List, Optional, Tuple

from models.credit_account import CreditAccount
from services.ledger.overage import OverageBillingAdapter, overage_mode_of
from services.ledger.pools import CreditPools, adjust_pool, pool_balance
from services.ledger.rollover import as_utc, period_boundary
from services.ledger.types import (
    POOL_PRIORITY,
    CreditResult,
    DebitResult,
    OverageCapReached,
    OverageMode,
    Pool,
    PoolCharge,
    RefusalReason,
    RemoteChargeFailed,
    SubscriptionStatus,
)

logger = logging.getLogger(__name__)


def plan_draw(pools: CreditPools, amount: int) -> Tuple[List[PoolCharge], int]:
    """Split `amount` across pools in priority order.

    Returns the per-pool charges and the units no pool could cover.
    """
    remaining = int(amount)
    charges: List[PoolCharge] = []
    for pool in POOL_PRIORITY:
        if remaining <= 0:
            break
        take = min(pools.get(pool), remaining)
        if take > 0:
            charges.append(PoolCharge(pool=pool, amount=take))
            remaining -= take
    return charges, remaining


def overage_idempotency_key(store_id: str, reference: str) -> str:
    return f"{store_id}:{reference}"


async def debit(
    account: CreditAccount,
    amount: int = 1,
    *,
    now: datetime,
    overage: Optional[OverageBillingAdapter] = None,
    reference_id: Optional[str] = None,
    debit_id: Optional[str] = None,
) -> DebitResult:
    """Consume `amount` credits from `account`.

    Refusals come back as a DebitResult with `refusal_reason` set and leave
    the account unchanged.
    """
    amount = int(amount)
    if amount <= 0:
        raise ValueError("Debit amount must be positive")

    result = DebitResult(
        debit_id=debit_id or str(uuid.uuid4()),
        store_id=account.store_id,
        amount=amount,
        reference_id=reference_id,
    )

    if SubscriptionStatus.parse(account.subscription_status) is not SubscriptionStatus.ACTIVE:
        result.refusal_reason = RefusalReason.SUBSCRIPTION_INACTIVE
        return result

    charges, remaining = plan_draw(CreditPools.from_account(account), amount)

    if remaining > 0:
        if overage is None or not overage.is_configured(account):
            result.refusal_reason = RefusalReason.CREDIT_AND_OVERAGE_EXHAUSTED
            return result
        try:
            charge = await overage.charge(
                account,
                remaining,
                idempotency_key=overage_idempotency_key(account.store_id, reference_id or result.debit_id),
            )
        except OverageCapReached:
            result.refusal_reason = RefusalReason.OVERAGE_CAP_REACHED
            return result
        except RemoteChargeFailed:
            result.refusal_reason = RefusalReason.REMOTE_CHARGE_FAILED
            return result
        result.overage_units = charge.units
        result.overage_charged_cents = charge.amount_cents
        result.overage_mode = charge.mode
        result.overage_period_end = period_boundary(account)

    trial_drawn = False
    for item in charges:
        adjust_pool(account, item.pool, -item.amount)
        trial_drawn = trial_drawn or item.pool is Pool.TRIAL
    result.pools_charged = charges
    account.credits_used_this_period = int(account.credits_used_this_period or 0) + amount

    if account.trial_active and trial_drawn and pool_balance(account, Pool.TRIAL) == 0:
        result.trial_ended = True
    return result


def credit(account: CreditAccount, debit_result: DebitResult) -> CreditResult:
    """Return exactly what `debit_result` took from each pool.

    Tracked overage is given back only while its period is still open.
    Usage-record overage was already billed remotely and is flagged for
    manual reconciliation instead.
    """
    result = CreditResult(debit_id=debit_result.debit_id, store_id=account.store_id)
    if debit_result.refused:
        return result

    for item in debit_result.pools_charged:
        adjust_pool(account, item.pool, item.amount)
        result.pools_restored.append(PoolCharge(pool=item.pool, amount=item.amount))

    units_restored = result.credits_restored
    if debit_result.overage_units:
        mode = debit_result.overage_mode or overage_mode_of(account)
        if mode is OverageMode.TRACKED:
            if as_utc(debit_result.overage_period_end) == period_boundary(account):
                account.overage_balance_used_cents = max(
                    int(account.overage_balance_used_cents or 0) - debit_result.overage_charged_cents, 0
                )
                account.overage_units_this_period = max(
                    int(account.overage_units_this_period or 0) - debit_result.overage_units, 0
                )
                result.overage_refunded_cents = debit_result.overage_charged_cents
                units_restored += debit_result.overage_units
            else:
                logger.info(
                    "Tracked overage for debit=%s belongs to a closed period; not refunded",
                    debit_result.debit_id,
                )
        else:
            result.manual_reconciliation = True
            logger.warning(
                "Usage-record overage not refunded automatically store=%s debit=%s cents=%s",
                account.store_id,
                debit_result.debit_id,
                debit_result.overage_charged_cents,
            )

    account.credits_used_this_period = max(int(account.credits_used_this_period or 0) - units_restored, 0)
    return result
