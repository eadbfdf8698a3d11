"""Overage billing once every credit pool is exhausted."""

from __future__ import annotations

import logging
from typing import Callable, Optional

from models.credit_account import CreditAccount
from services.billing_platform import BillingPlatformError, build_billing_client
from services.ledger.types import OverageCapReached, OverageCharge, OverageMode, RemoteChargeFailed

logger = logging.getLogger(__name__)

CAPPED_AMOUNT_EXCEEDED = "CAPPED_AMOUNT_EXCEEDED"


def overage_mode_of(account: CreditAccount) -> Optional[OverageMode]:
    if not account.overage_mode:
        return None
    try:
        return OverageMode(account.overage_mode)
    except ValueError:
        return None


def overage_headroom_cents(account: CreditAccount) -> int:
    return max(int(account.overage_capped_amount_cents or 0) - int(account.overage_balance_used_cents or 0), 0)


class OverageBillingAdapter:
    """Charges overage units as platform usage records or tracks them locally.

    Monthly plans (`usage_record`) bill each overage unit through the platform
    right away. Annual plans (`tracked`) only accumulate the amount here; the
    month-end batch turns it into a one-time charge.
    """

    def __init__(self, client_factory: Optional[Callable[[str], object]] = None) -> None:
        self.client_factory = client_factory or build_billing_client

    def is_configured(self, account: CreditAccount) -> bool:
        mode = overage_mode_of(account)
        if mode is None:
            return False
        if int(account.overage_capped_amount_cents or 0) <= 0 or int(account.overage_rate_cents or 0) <= 0:
            return False
        if mode is OverageMode.USAGE_RECORD and not account.usage_line_item_id:
            return False
        return True

    def fits_under_cap(self, account: CreditAccount, amount_cents: int) -> bool:
        # Exclusive cap: reaching the capped amount exactly is refused.
        used = int(account.overage_balance_used_cents or 0)
        return used + int(amount_cents) < int(account.overage_capped_amount_cents or 0)

    async def charge(
        self,
        account: CreditAccount,
        units: int,
        *,
        idempotency_key: str,
        description: Optional[str] = None,
    ) -> OverageCharge:
        """Bill `units` overage units and record them on `account`.

        The account is only mutated after the charge went through, so a raised
        OverageCapReached or RemoteChargeFailed leaves it untouched.
        """
        mode = overage_mode_of(account)
        if mode is None or not self.is_configured(account):
            raise OverageCapReached("Overage billing is not configured for this store.")

        units = int(units)
        amount_cents = units * int(account.overage_rate_cents or 0)
        if not self.fits_under_cap(account, amount_cents):
            logger.info(
                "Overage cap reached store=%s used=%s cap=%s requested=%s",
                account.store_id,
                account.overage_balance_used_cents,
                account.overage_capped_amount_cents,
                amount_cents,
            )
            raise OverageCapReached()

        remote_reference = None
        if mode is OverageMode.USAGE_RECORD:
            client = self.client_factory(account.store_id)
            try:
                receipt = await client.create_usage_charge(
                    account.usage_line_item_id,
                    amount_cents,
                    description or f"{units} generation credit(s) over plan allowance",
                    idempotency_key,
                )
            except BillingPlatformError as exc:
                if exc.code == CAPPED_AMOUNT_EXCEEDED:
                    logger.warning("Platform reported capped amount exceeded for store=%s", account.store_id)
                    raise OverageCapReached() from exc
                logger.error("Usage charge failed for store=%s key=%s: %s", account.store_id, idempotency_key, exc)
                raise RemoteChargeFailed() from exc
            remote_reference = receipt.id

        account.overage_balance_used_cents = int(account.overage_balance_used_cents or 0) + amount_cents
        account.overage_units_this_period = int(account.overage_units_this_period or 0) + units
        return OverageCharge(units=units, amount_cents=amount_cents, mode=mode, remote_reference=remote_reference)
