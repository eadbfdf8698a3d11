"""Atomic per-store access to CreditAccount rows."""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from sqlalchemy.orm.exc import StaleDataError

from config import settings
from models.credit_account import CreditAccount, new_credit_account
from services.ledger.locks import build_lock_registry
from services.ledger.types import LockTimeout

logger = logging.getLogger(__name__)

T = TypeVar("T")
Mutator = Callable[[AsyncSession, CreditAccount], Awaitable[T]]


class LedgerStore:
    """Runs every ledger mutation as one locked, version-checked transaction.

    The per-store lock serialises writers; the version column catches writers
    that bypass the lock (other processes on the local backend, manual SQL).
    """

    def __init__(
        self,
        session_maker: async_sessionmaker,
        *,
        locks=None,
        lock_timeout: Optional[float] = None,
        max_retries: Optional[int] = None,
    ) -> None:
        self.session_maker = session_maker
        self.locks = locks if locks is not None else build_lock_registry()
        self.lock_timeout = float(
            lock_timeout if lock_timeout is not None else settings.LEDGER_LOCK_TIMEOUT_SECONDS
        )
        self.max_retries = max(int(max_retries if max_retries is not None else settings.LEDGER_MAX_CAS_RETRIES), 1)

    async def read(self, store_id: str) -> Optional[CreditAccount]:
        """Detached snapshot for reporting; never authoritative for a later write."""
        async with self.session_maker() as session:
            result = await session.execute(select(CreditAccount).where(CreditAccount.store_id == store_id))
            return result.scalar_one_or_none()

    async def mutate(self, store_id: str, mutator: Mutator[T], *, create: bool = True) -> T:
        """Load the store's row, run `mutator`, commit with a version check.

        `mutator` may raise to abort; nothing it did is committed. Raises
        LockTimeout when the lock cannot be taken in time or the version check
        keeps failing.
        """
        async with self.locks.hold(store_id, self.lock_timeout):
            for attempt in range(1, self.max_retries + 1):
                async with self.session_maker() as session:
                    try:
                        account = await self._load(session, store_id, create=create)
                        result = await mutator(session, account)
                        await session.commit()
                        return result
                    except (StaleDataError, IntegrityError) as exc:
                        await session.rollback()
                        logger.warning(
                            "Ledger write conflict for store=%s attempt=%s/%s: %s",
                            store_id,
                            attempt,
                            self.max_retries,
                            exc.__class__.__name__,
                        )
                    except Exception:
                        await session.rollback()
                        raise
        raise LockTimeout(f"Ledger record for {store_id} kept changing; gave up after {self.max_retries} attempts")

    async def _load(self, session: AsyncSession, store_id: str, *, create: bool) -> Optional[CreditAccount]:
        result = await session.execute(
            select(CreditAccount)
            .where(CreditAccount.store_id == store_id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        account = result.scalar_one_or_none()
        if account is None and create:
            account = new_credit_account(store_id, now=datetime.now(timezone.utc))
            session.add(account)
            await session.flush()
            logger.info("Created credit account for store=%s", store_id)
        return account
