"""Month-end billing of overage tracked locally on annual plans."""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Dict, Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_account import CreditAccount
from services.billing_platform import BillingPlatformError, build_billing_client
from services.credits import BILLING_PROVIDER, get_ledger_store
from services.ledger.journal import insert_entry, journal_rollover, utcnow
from services.ledger.rollover import rollover_if_due
from services.ledger.store import LedgerStore
from services.ledger.types import LockTimeout, OverageMode, RemoteChargeFailed

logger = logging.getLogger(__name__)

MIN_BILLABLE_CENTS = 50
MAX_BILLABLE_CENTS = 1_000_000


async def bill_accumulated_overage(
    store_id: str,
    *,
    now: Optional[datetime] = None,
    store: Optional[LedgerStore] = None,
    client_factory: Optional[Callable[[str], Any]] = None,
) -> Dict[str, Any]:
    """Turn a store's unbilled tracked overage into one platform charge.

    Amounts under $0.50 keep accumulating. Raises RemoteChargeFailed when the
    platform refuses; the unbilled counters are then left as they were.
    """
    store = store or get_ledger_store()
    factory = client_factory or build_billing_client
    now = utcnow(now)

    async def _mutator(db: AsyncSession, account: Optional[CreditAccount]) -> Dict[str, Any]:
        if account is None:
            return {"billed": False, "reason": "unknown_store"}
        if account.overage_mode != OverageMode.TRACKED.value:
            return {"billed": False, "reason": "not_tracked"}

        rolled = rollover_if_due(account, now)
        if rolled.changed:
            await journal_rollover(db, account, rolled)

        unbilled = int(account.overage_unbilled_cents or 0)
        units = int(account.overage_unbilled_units or 0)
        if unbilled < MIN_BILLABLE_CENTS:
            return {"billed": False, "reason": "below_minimum", "unbilled_cents": unbilled}

        amount = unbilled
        if amount > MAX_BILLABLE_CENTS:
            logger.warning(
                "Unbilled overage %s for store=%s exceeds the %s maximum; billing the maximum",
                amount,
                store_id,
                MAX_BILLABLE_CENTS,
            )
            amount = MAX_BILLABLE_CENTS

        client = factory(store_id)
        try:
            receipt = await client.create_one_time_charge(
                f"Generation overage ({units} credit(s))",
                amount,
                f"{settings.APP_URL}/billing",
            )
        except BillingPlatformError as exc:
            logger.error("Annual overage charge failed for store=%s: %s", store_id, exc)
            raise RemoteChargeFailed() from exc

        account.overage_unbilled_cents = 0
        account.overage_unbilled_units = 0
        account.last_overage_billed_at = now
        await insert_entry(
            db,
            account,
            entry_type="overage_billed",
            delta_credits=0,
            overage_delta_cents=-amount,
            reason=f"Annual plan overage for {units} credit(s)",
            reference_type="overage",
            billing_provider=BILLING_PROVIDER,
            billing_reference=receipt.id,
        )
        logger.info("Billed annual overage store=%s amount_cents=%s charge=%s", store_id, amount, receipt.id)
        return {
            "billed": True,
            "amount_cents": amount,
            "units": units,
            "charge_id": receipt.id,
            "confirmation_url": receipt.confirmation_url,
        }

    return await store.mutate(store_id, _mutator, create=False)


async def bill_all_accumulated_overage(
    now: Optional[datetime] = None,
    *,
    store: Optional[LedgerStore] = None,
    client_factory: Optional[Callable[[str], Any]] = None,
) -> int:
    """Month-end batch over every tracked store with billable overage."""
    store = store or get_ledger_store()
    async with store.session_maker() as db:
        result = await db.execute(
            select(CreditAccount.store_id).where(
                CreditAccount.overage_mode == OverageMode.TRACKED.value,
                CreditAccount.overage_unbilled_cents >= MIN_BILLABLE_CENTS,
            )
        )
        store_ids = [row[0] for row in result.all()]

    billed = 0
    for store_id in store_ids:
        try:
            outcome = await bill_accumulated_overage(store_id, now=now, store=store, client_factory=client_factory)
        except (RemoteChargeFailed, LockTimeout) as exc:
            logger.warning("Annual overage billing skipped for store=%s: %s", store_id, exc.reason)
            continue
        if outcome.get("billed"):
            billed += 1
    return billed
