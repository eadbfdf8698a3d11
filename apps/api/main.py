"""
Storefront Credit Ledger - FastAPI Backend
Main application entry point with health check and API routing.
"""

import asyncio
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from contextlib import asynccontextmanager

from config import settings, validate_security_settings
from database import engine, Base
import models  # noqa: F401
from routers import health, billing, webhooks
from services.credits import run_due_rollovers
from services.ledger_queue import enqueue_annual_overage_billing


async def _periodic_rollover_sweep() -> None:
    interval_minutes = max(int(settings.ROLLOVER_SWEEP_INTERVAL_MINUTES), 0)
    if interval_minutes <= 0:
        return
    while True:
        await asyncio.sleep(interval_minutes * 60)
        try:
            rolled = await run_due_rollovers()
            if rolled:
                print(f"🔁 Rollover sweep: advanced {rolled} store(s)")
        except Exception as exc:
            print(f"⚠️ Rollover sweep tick failed: {exc}")
        try:
            enqueue_annual_overage_billing()
        except Exception as exc:
            print(f"⚠️ Annual overage batch not queued: {exc}")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan handler for startup/shutdown."""
    # Startup
    print("🚀 Starting Storefront Credit Ledger API...")
    validate_security_settings()
    if settings.AUTO_CREATE_DB_SCHEMA:
        try:
            async with engine.begin() as conn:
                await conn.run_sync(Base.metadata.create_all)
            print("🗄️ Database schema verified.")
        except Exception as e:
            print(f"⚠️ Database bootstrap skipped: {e}")
    try:
        rolled = await run_due_rollovers()
        if rolled:
            print(f"♻️ Rolled over {rolled} store(s) with missed period boundaries after startup.")
    except Exception as exc:
        print(f"⚠️ Startup rollover sweep skipped: {exc}")
    rollover_task = None
    if int(settings.ROLLOVER_SWEEP_INTERVAL_MINUTES) > 0:
        rollover_task = asyncio.create_task(_periodic_rollover_sweep())
        print(
            "📅 Rollover sweep loop enabled "
            f"(every {int(settings.ROLLOVER_SWEEP_INTERVAL_MINUTES)} min)."
        )
    yield
    # Shutdown
    if rollover_task is not None:
        rollover_task.cancel()
        try:
            await rollover_task
        except asyncio.CancelledError:
            pass
    print("👋 Shutting down API...")


app = FastAPI(
    title="Storefront Credit Ledger API",
    description="Credit pools, subscription sync and overage billing for storefront stores",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(health.router, tags=["Health"])
app.include_router(billing.router, prefix="/billing", tags=["Billing"])
app.include_router(webhooks.router, prefix="/webhooks", tags=["Webhooks"])


@app.get("/")
async def root():
    """Root endpoint."""
    return {
        "name": "Storefront Credit Ledger API",
        "version": "0.1.0",
        "status": "running"
    }
