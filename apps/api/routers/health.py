"""
Health check endpoints.
"""

from typing import List

from fastapi import APIRouter
from fastapi.responses import JSONResponse
import redis.asyncio as redis
from sqlalchemy import func, select

from config import settings
from database import async_session_maker
from models.credit_account import CreditAccount

router = APIRouter()


async def _database_status() -> str:
    try:
        async with async_session_maker() as session:
            await session.execute(select(func.count(CreditAccount.store_id)))
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


async def _redis_status() -> str:
    try:
        r = redis.from_url(settings.REDIS_URL)
        try:
            await r.ping()
        finally:
            await r.aclose()
        return "up"
    except Exception as e:
        return f"down: {str(e)}"


def _missing_billing_settings() -> List[str]:
    missing = []
    if not settings.SHOPIFY_API_SECRET:
        missing.append("SHOPIFY_API_SECRET")
    if not settings.SHOPIFY_ADMIN_ACCESS_TOKEN:
        missing.append("SHOPIFY_ADMIN_ACCESS_TOKEN")
    return missing


@router.get("/health")
async def health_check():
    """
    Health check endpoint.
    Redis is only required when locks or webhook processing depend on it.
    """
    redis_required = settings.LEDGER_LOCK_BACKEND == "redis" or settings.SUBSCRIPTION_EVENTS_ASYNC
    health_status = {
        "status": "healthy",
        "api": "up",
        "database": await _database_status(),
        "redis": await _redis_status(),
        "lock_backend": settings.LEDGER_LOCK_BACKEND,
        "webhooks": "queued" if settings.SUBSCRIPTION_EVENTS_ASYNC else "inline",
        "webhook_secret": "configured" if settings.SHOPIFY_API_SECRET else "missing",
    }
    if health_status["database"] != "up":
        health_status["status"] = "degraded"
    if redis_required and health_status["redis"] != "up":
        health_status["status"] = "degraded"
    return health_status


@router.get("/health/ready")
async def readiness_check():
    """Ready once billing credentials are configured and the ledger table answers."""
    missing = _missing_billing_settings()
    database = await _database_status()
    if missing or database != "up":
        return JSONResponse(
            status_code=503,
            content={"ready": False, "missing": missing, "database": database},
        )
    return {"ready": True}


@router.get("/health/live")
async def liveness_check():
    """Kubernetes-style liveness probe."""
    return {"alive": True}
