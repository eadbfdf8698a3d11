"""Platform webhook receiver for app subscription updates."""

from __future__ import annotations

import base64
import hashlib
import hmac
import json
import logging
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Request
from redis.exceptions import RedisError

from config import settings
from services.credits import apply_external_event, get_ledger_store
from services.ledger.store import LedgerStore
from services.ledger.types import LockTimeout, UnknownWebhookShape
from services.ledger_queue import enqueue_subscription_event

router = APIRouter()
logger = logging.getLogger(__name__)

SUBSCRIPTION_TOPIC = "app_subscriptions/update"


def verify_webhook_hmac(body: bytes, signature: Optional[str]) -> bool:
    """Check the base64 HMAC-SHA256 of the raw body against the app secret."""
    secret = (settings.SHOPIFY_API_SECRET or "").strip()
    if not secret or not signature:
        return False
    digest = hmac.new(secret.encode("utf-8"), body, hashlib.sha256).digest()
    expected = base64.b64encode(digest).decode("utf-8")
    return hmac.compare_digest(expected, signature.strip())


@router.post("/app/subscriptions/update")
async def app_subscriptions_update(
    request: Request,
    store: LedgerStore = Depends(get_ledger_store),
):
    body = await request.body()
    if not verify_webhook_hmac(body, request.headers.get("X-Shopify-Hmac-Sha256")):
        raise HTTPException(status_code=401, detail="Invalid webhook signature.")

    # Past this point every poison event is answered 200 so the platform stops retrying it.
    topic = request.headers.get("X-Shopify-Topic")
    shop_domain = (request.headers.get("X-Shopify-Shop-Domain") or "").strip().lower()
    if topic and topic != SUBSCRIPTION_TOPIC:
        logger.info("Ignoring webhook topic %s for shop=%s", topic, shop_domain)
        return {"ok": True, "ignored": True}
    if not shop_domain:
        logger.error("Subscription webhook without shop domain header dropped")
        return {"ok": True, "ignored": True}
    try:
        payload = json.loads(body)
    except ValueError:
        logger.error("Subscription webhook for shop=%s is not valid JSON", shop_domain)
        return {"ok": True, "ignored": True}

    if settings.SUBSCRIPTION_EVENTS_ASYNC:
        try:
            job = enqueue_subscription_event(shop_domain, payload, request.headers.get("X-Shopify-Webhook-Id"))
            return {"ok": True, "queued": True, "job_id": job.id}
        except RedisError as exc:
            logger.warning("Queue unavailable for shop=%s, applying inline: %s", shop_domain, exc)

    try:
        outcome = await apply_external_event(shop_domain, payload, store=store)
    except UnknownWebhookShape as exc:
        logger.error("Dropping subscription webhook for shop=%s: %s", shop_domain, exc)
        return {"ok": True, "ignored": True}
    except LockTimeout as exc:
        raise HTTPException(status_code=503, detail={"reason": exc.reason, "message": str(exc)}) from exc
    return {"ok": True, "queued": False, "action": outcome.action.value}
