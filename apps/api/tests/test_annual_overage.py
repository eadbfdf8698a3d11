from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from services.annual_overage import MAX_BILLABLE_CENTS, bill_accumulated_overage, bill_all_accumulated_overage
from services.billing_platform import BillingPlatformError, OneTimeChargeReceipt
from services.ledger.types import RemoteChargeFailed


STORE = "annual.myshopify.com"


def _client(charge_id="gid://shopify/AppPurchaseOneTime/44"):
    client = AsyncMock()
    client.create_one_time_charge.return_value = OneTimeChargeReceipt(
        id=charge_id,
        amount_cents=0,
        confirmation_url="https://annual.myshopify.com/admin/charges/44/confirm",
    )
    return client


async def _seed_tracked(seed_account, store_id=STORE, monthly_period_end=None, **fields):
    if monthly_period_end is None:
        monthly_period_end = datetime.now(timezone.utc) + timedelta(days=5)
    await seed_account(
        store_id,
        billing_interval="ANNUAL",
        plan_handle="pro-annual",
        overage_mode="tracked",
        overage_capped_amount_cents=5000,
        overage_rate_cents=15,
        current_period_end=None,
        monthly_period_end=monthly_period_end,
        **fields,
    )


@pytest.mark.asyncio
async def test_unbilled_overage_is_charged_and_cleared(ledger_store, seed_account):
    await _seed_tracked(seed_account, overage_unbilled_cents=1234, overage_unbilled_units=82)
    client = _client()

    result = await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: client)

    assert result["billed"] is True
    assert result["amount_cents"] == 1234
    name, amount_cents, _return_url = client.create_one_time_charge.await_args.args
    assert amount_cents == 1234
    assert "82" in name
    stored = await ledger_store.read(STORE)
    assert stored.overage_unbilled_cents == 0
    assert stored.overage_unbilled_units == 0
    assert stored.last_overage_billed_at is not None


@pytest.mark.asyncio
async def test_small_amounts_keep_accumulating(ledger_store, seed_account):
    await _seed_tracked(seed_account, overage_unbilled_cents=45)
    client = _client()

    result = await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: client)

    assert result == {"billed": False, "reason": "below_minimum", "unbilled_cents": 45}
    client.create_one_time_charge.assert_not_awaited()
    assert (await ledger_store.read(STORE)).overage_unbilled_cents == 45


@pytest.mark.asyncio
async def test_large_amounts_are_capped(ledger_store, seed_account):
    await _seed_tracked(seed_account, overage_unbilled_cents=MAX_BILLABLE_CENTS + 500)
    client = _client()

    result = await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: client)

    assert result["amount_cents"] == MAX_BILLABLE_CENTS
    assert client.create_one_time_charge.await_args.args[1] == MAX_BILLABLE_CENTS


@pytest.mark.asyncio
async def test_platform_failure_keeps_unbilled_amount(ledger_store, seed_account):
    await _seed_tracked(seed_account, overage_unbilled_cents=900)
    client = AsyncMock()
    client.create_one_time_charge.side_effect = BillingPlatformError("down", code="NETWORK_ERROR")

    with pytest.raises(RemoteChargeFailed):
        await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: client)

    assert (await ledger_store.read(STORE)).overage_unbilled_cents == 900


@pytest.mark.asyncio
async def test_month_end_rollover_feeds_the_batch(ledger_store, seed_account):
    await _seed_tracked(
        seed_account,
        overage_balance_used_cents=300,
        overage_units_this_period=20,
        monthly_period_end=datetime.now(timezone.utc) - timedelta(minutes=5),
    )
    await seed_account("monthly.myshopify.com", overage_mode="usage_record", overage_unbilled_cents=0)
    client = _client()

    billed = await bill_all_accumulated_overage(store=ledger_store, client_factory=lambda _: client)
    assert billed == 0

    result = await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: client)
    assert result["billed"] is True
    assert result["amount_cents"] == 300
    assert (await ledger_store.read(STORE)).overage_balance_used_cents == 0


@pytest.mark.asyncio
async def test_monthly_accounts_are_not_batch_billed(ledger_store, seed_account):
    await seed_account(STORE, overage_mode="usage_record")

    result = await bill_accumulated_overage(STORE, store=ledger_store, client_factory=lambda _: _client())

    assert result == {"billed": False, "reason": "not_tracked"}
