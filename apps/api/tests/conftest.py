from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from database import Base
from main import app
from models.credit_account import new_credit_account
from routers import rate_limit
from services.ledger.locks import LocalLockRegistry
from services.ledger.store import LedgerStore


NOW = datetime(2026, 3, 10, 12, 0, tzinfo=timezone.utc)


@pytest.fixture(autouse=True)
def reset_local_rate_limit_counters():
    """Keep in-memory rate-limit state isolated between tests."""
    previous = getattr(app.state, "disable_rate_limits", False)
    app.state.disable_rate_limits = True
    rate_limit._local_counters.clear()
    yield
    rate_limit._local_counters.clear()
    app.state.disable_rate_limits = previous


@pytest.fixture
def make_account():
    """Build an unsaved CreditAccount; ACTIVE monthly with an open period by default."""

    def _factory(store_id="demo.myshopify.com", **overrides):
        account = new_credit_account(store_id, now=NOW)
        account.subscription_status = "ACTIVE"
        account.subscription_id = "gid://shopify/AppSubscription/1"
        account.billing_interval = "EVERY_30_DAYS"
        account.plan_handle = "pro-monthly"
        account.included_credits = 100
        account.current_period_end = NOW + timedelta(days=10)
        for key, value in overrides.items():
            setattr(account, key, value)
        return account

    return _factory


@pytest_asyncio.fixture
async def session_maker(tmp_path):
    db_path = tmp_path / "ledger.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield maker
    await engine.dispose()


@pytest_asyncio.fixture
async def ledger_store(session_maker):
    return LedgerStore(session_maker, locks=LocalLockRegistry(), lock_timeout=1.0, max_retries=3)


@pytest.fixture
def seed_account(ledger_store):
    """Persist account fields for a store through the ledger store."""

    async def _seed(store_id="demo.myshopify.com", **fields):
        async def _mutator(session, account):
            account.subscription_status = "ACTIVE"
            account.subscription_id = "gid://shopify/AppSubscription/1"
            account.billing_interval = "EVERY_30_DAYS"
            account.plan_handle = "pro-monthly"
            account.included_credits = 100
            account.current_period_end = datetime.now(timezone.utc) + timedelta(days=10)
            for key, value in fields.items():
                setattr(account, key, value)

        await ledger_store.mutate(store_id, _mutator)

    return _seed
