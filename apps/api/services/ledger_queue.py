"""Durable ledger job queue helpers (Redis/RQ)."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Optional

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings
from services.annual_overage import bill_all_accumulated_overage
from services.credits import apply_external_event
from services.ledger.types import LockTimeout, SyncOutcome, UnknownWebhookShape

logger = logging.getLogger(__name__)

SUBSCRIPTION_QUEUE_NAME = "subscription_events"
OVERAGE_QUEUE_NAME = "overage_billing"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL)


def get_subscription_queue() -> Queue:
    """Return the configured subscription event queue."""
    return Queue(
        name=SUBSCRIPTION_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=300,
    )


def get_overage_queue() -> Queue:
    """Return the configured annual overage billing queue."""
    return Queue(
        name=OVERAGE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=1800,
    )


def enqueue_subscription_event(store_id: str, payload: Any, webhook_id: Optional[str] = None) -> Job:
    """Enqueue a subscription webhook with retries; redelivered webhooks share a job id."""
    queue = get_subscription_queue()
    return queue.enqueue(
        "services.ledger_queue.process_subscription_event_job",
        store_id,
        payload,
        job_id=f"subscription_event:{webhook_id}" if webhook_id else None,
        retry=Retry(max=3, interval=[5, 30, 120]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=604800,
    )


def enqueue_annual_overage_billing() -> Job:
    """Enqueue the annual overage batch; one pending batch at a time."""
    queue = get_overage_queue()
    return queue.enqueue(
        "services.ledger_queue.process_annual_overage_job",
        job_id="overage_billing:batch",
        retry=Retry(max=2, interval=[300, 1800]),
        job_timeout=1800,
        result_ttl=3600,
        failure_ttl=86400,
    )


async def process_subscription_event_async(store_id: str, payload: Any) -> Optional[SyncOutcome]:
    """Apply one queued webhook; malformed payloads are logged and dropped."""
    try:
        outcome = await apply_external_event(store_id, payload)
    except UnknownWebhookShape as exc:
        logger.error("Dropping subscription webhook for store=%s: %s", store_id, exc)
        return None
    except LockTimeout:
        logger.warning("Ledger busy for store=%s; subscription event will be retried", store_id)
        raise
    logger.info("Subscription event for store=%s -> %s", store_id, outcome.action.value)
    return outcome


def process_subscription_event_job(store_id: str, payload: Any) -> None:
    """RQ worker entrypoint for subscription webhook events."""
    asyncio.run(process_subscription_event_async(store_id, payload))


def process_annual_overage_job() -> None:
    """RQ worker entrypoint for the annual overage batch."""
    billed = asyncio.run(bill_all_accumulated_overage())
    logger.info("Annual overage batch billed %s store(s)", billed)
