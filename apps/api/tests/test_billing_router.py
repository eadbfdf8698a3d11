import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from main import app
from services.credits import get_ledger_store
from services.session_token import create_session_token


STORE = "router.myshopify.com"


def _auth_headers(store_id=STORE):
    return {"Authorization": f"Bearer {create_session_token(store_id)['token']}"}


@pytest_asyncio.fixture
async def client(ledger_store):
    app.dependency_overrides[get_ledger_store] = lambda: ledger_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.pop(get_ledger_store, None)


@pytest.mark.asyncio
async def test_plans_catalog_is_public(client):
    response = await client.get("/billing/plans")

    assert response.status_code == 200
    body = response.json()
    assert {plan["handle"] for plan in body["plans"]} == {"pro-monthly", "pro-annual"}
    assert {package["id"] for package in body["packages"]} == {"small", "medium", "large"}


@pytest.mark.asyncio
async def test_credits_require_session_token(client):
    response = await client.get("/billing/credits")

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_cross_store_access_is_forbidden(client):
    response = await client.get(
        "/billing/credits",
        params={"store_id": "other.myshopify.com"},
        headers=_auth_headers(),
    )

    assert response.status_code == 403


@pytest.mark.asyncio
async def test_debit_on_inactive_store_is_refused(client):
    response = await client.post("/billing/debit", json={"amount": 1}, headers=_auth_headers())

    assert response.status_code == 403
    assert response.json()["detail"]["reason"] == "subscription_inactive"


@pytest.mark.asyncio
async def test_debit_refund_round_trip(client, seed_account):
    await seed_account(STORE, plan_credits=2)

    debited = await client.post(
        "/billing/debit",
        json={"amount": 1, "reference_id": "gen-42"},
        headers=_auth_headers(),
    )
    assert debited.status_code == 200
    payload = debited.json()
    assert payload["pools_charged"] == [{"pool": "plan", "amount": 1}]

    refunded = await client.post("/billing/credit", json=payload, headers=_auth_headers())
    repeated = await client.post("/billing/credit", json=payload, headers=_auth_headers())

    assert refunded.status_code == 200
    assert refunded.json()["credits_restored"] == 1
    assert repeated.json()["already_refunded"] is True

    balance = await client.get("/billing/credits", headers=_auth_headers())
    assert balance.json()["breakdown"]["plan"] == 2


@pytest.mark.asyncio
async def test_exhausted_debit_returns_payment_required(client, seed_account):
    await seed_account(STORE, plan_credits=0)

    response = await client.post("/billing/debit", json={"amount": 1}, headers=_auth_headers())

    assert response.status_code == 402


@pytest.mark.asyncio
async def test_tampered_refund_is_unprocessable(client, seed_account):
    await seed_account(STORE, plan_credits=2)
    payload = (await client.post("/billing/debit", json={"amount": 1}, headers=_auth_headers())).json()
    payload["pools_charged"] = [{"pool": "purchased", "amount": 40}]

    response = await client.post("/billing/credit", json=payload, headers=_auth_headers())

    assert response.status_code == 422


@pytest.mark.asyncio
async def test_coupon_redeem_then_limit(client):
    first = await client.post("/billing/coupons/redeem", json={"code": "REFERRAL100"}, headers=_auth_headers())
    second = await client.post("/billing/coupons/redeem", json={"code": "REFERRAL100"}, headers=_auth_headers())

    assert first.status_code == 200
    assert first.json()["credits_added"] == 100
    assert second.status_code == 422
    assert second.json()["detail"]["reason"] == "USAGE_LIMIT_EXCEEDED"


@pytest.mark.asyncio
async def test_purchase_of_unknown_package_is_not_found(client):
    response = await client.post("/billing/purchases", json={"package_id": "huge"}, headers=_auth_headers())

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_purchase_completion_credits_once(client):
    body = {"package_id": "small", "charge_id": "gid://shopify/AppPurchaseOneTime/3"}

    first = await client.post("/billing/purchases/complete", json=body, headers=_auth_headers())
    second = await client.post("/billing/purchases/complete", json=body, headers=_auth_headers())

    assert first.json()["credits_added"] == 50
    assert second.json()["duplicate"] is True
    assert second.json()["purchased_credits"] == 50
