import base64
import hashlib
import hmac
import json
from types import SimpleNamespace

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from config import settings
from main import app
from routers import webhooks
from services.credits import get_ledger_store


SECRET = "whsec_test_secret_value"
SHOP = "hooks.myshopify.com"
SUB_ID = "gid://shopify/AppSubscription/555"


def _payload(status="ACTIVE"):
    return {
        "app_subscription": {
            "admin_graphql_api_id": SUB_ID,
            "name": "Plan Standard",
            "status": status,
            "interval": "EVERY_30_DAYS",
            "capped_amount": "50.00",
        }
    }


def _signed_headers(body: bytes, *, secret=SECRET, topic="app_subscriptions/update", shop=SHOP):
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    return {
        "Content-Type": "application/json",
        "X-Shopify-Hmac-Sha256": base64.b64encode(digest).decode("utf-8"),
        "X-Shopify-Topic": topic,
        "X-Shopify-Shop-Domain": shop,
        "X-Shopify-Webhook-Id": "webhook-1",
    }


@pytest.fixture(autouse=True)
def webhook_settings(monkeypatch):
    monkeypatch.setattr(settings, "SHOPIFY_API_SECRET", SECRET)
    monkeypatch.setattr(settings, "SUBSCRIPTION_EVENTS_ASYNC", False)


@pytest_asyncio.fixture
async def client(ledger_store):
    app.dependency_overrides[get_ledger_store] = lambda: ledger_store
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
    app.dependency_overrides.pop(get_ledger_store, None)


def test_hmac_verification():
    body = b'{"ok": true}'
    signature = _signed_headers(body)["X-Shopify-Hmac-Sha256"]

    assert webhooks.verify_webhook_hmac(body, signature)
    assert not webhooks.verify_webhook_hmac(body + b" ", signature)
    assert not webhooks.verify_webhook_hmac(body, None)


@pytest.mark.asyncio
async def test_bad_signature_is_rejected(client):
    body = json.dumps(_payload()).encode("utf-8")

    response = await client.post(
        "/webhooks/app/subscriptions/update",
        content=body,
        headers=_signed_headers(body, secret="wrong-secret"),
    )

    assert response.status_code == 401


@pytest.mark.asyncio
async def test_inline_event_is_applied_then_deduplicated(client, ledger_store):
    body = json.dumps(_payload()).encode("utf-8")

    first = await client.post("/webhooks/app/subscriptions/update", content=body, headers=_signed_headers(body))
    second = await client.post("/webhooks/app/subscriptions/update", content=body, headers=_signed_headers(body))

    assert first.status_code == 200
    assert first.json() == {"ok": True, "queued": False, "action": "applied"}
    assert second.json()["action"] == "duplicate"
    account = await ledger_store.read(SHOP)
    assert account.subscription_status == "ACTIVE"
    assert account.trial_credits == 100


@pytest.mark.asyncio
async def test_unknown_shape_is_acknowledged_and_dropped(client, ledger_store):
    body = json.dumps({"something": "else"}).encode("utf-8")

    response = await client.post("/webhooks/app/subscriptions/update", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": True}
    assert await ledger_store.read(SHOP) is None


@pytest.mark.asyncio
async def test_malformed_field_is_acknowledged_and_dropped(client, ledger_store):
    payload = _payload()
    payload["app_subscription"]["trial_days"] = "fifteen"
    body = json.dumps(payload).encode("utf-8")

    response = await client.post("/webhooks/app/subscriptions/update", content=body, headers=_signed_headers(body))

    assert response.status_code == 200
    assert response.json() == {"ok": True, "ignored": True}
    assert await ledger_store.read(SHOP) is None


@pytest.mark.asyncio
async def test_other_topics_are_ignored(client, ledger_store):
    body = json.dumps(_payload()).encode("utf-8")

    response = await client.post(
        "/webhooks/app/subscriptions/update",
        content=body,
        headers=_signed_headers(body, topic="app/uninstalled"),
    )

    assert response.json()["ignored"] is True
    assert await ledger_store.read(SHOP) is None


@pytest.mark.asyncio
async def test_async_mode_enqueues_event(client, monkeypatch):
    queued = []

    def _fake_enqueue(store_id, payload, webhook_id=None):
        queued.append((store_id, payload, webhook_id))
        return SimpleNamespace(id=f"subscription_event:{webhook_id}")

    monkeypatch.setattr(settings, "SUBSCRIPTION_EVENTS_ASYNC", True)
    monkeypatch.setattr(webhooks, "enqueue_subscription_event", _fake_enqueue)
    body = json.dumps(_payload()).encode("utf-8")

    response = await client.post("/webhooks/app/subscriptions/update", content=body, headers=_signed_headers(body))

    assert response.json() == {"ok": True, "queued": True, "job_id": "subscription_event:webhook-1"}
    assert queued == [(SHOP, _payload(), "webhook-1")]
