"""Per-store lock registries guarding ledger read-modify-write cycles."""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as redis
from redis.exceptions import LockError

from config import settings
from services.ledger.types import LockTimeout

logger = logging.getLogger(__name__)


class LocalLockRegistry:
    """asyncio locks keyed by store id, for single-process deployments."""

    def __init__(self) -> None:
        self._locks: Dict[str, asyncio.Lock] = {}
        self._holders: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        self._holders[key] = self._holders.get(key, 0) + 1
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout=max(float(timeout), 0.0))
            except asyncio.TimeoutError as exc:
                raise LockTimeout(f"Timed out waiting for ledger lock on {key}") from exc
            try:
                yield
            finally:
                lock.release()
        finally:
            self._holders[key] -= 1
            if self._holders[key] <= 0:
                self._holders.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return bool(lock and lock.locked())


class RedisLockRegistry:
    """Redis locks keyed by store id, shared by every API and worker process."""

    def __init__(self, redis_url: Optional[str] = None, lease_seconds: Optional[float] = None) -> None:
        self.redis_url = redis_url or settings.REDIS_URL
        self.lease_seconds = float(lease_seconds or settings.LEDGER_LOCK_LEASE_SECONDS)

    @asynccontextmanager
    async def hold(self, key: str, timeout: float) -> AsyncIterator[None]:
        client = redis.from_url(self.redis_url)
        lock = client.lock(
            f"ledger:lock:{key}",
            timeout=self.lease_seconds,
            blocking_timeout=max(float(timeout), 0.0),
        )
        try:
            acquired = await lock.acquire()
            if not acquired:
                raise LockTimeout(f"Timed out waiting for ledger lock on {key}")
            try:
                yield
            finally:
                try:
                    await lock.release()
                except LockError:
                    logger.warning("Ledger lock for %s expired before release", key)
        finally:
            await client.aclose()


def build_lock_registry(backend: Optional[str] = None):
    """Return the lock registry configured by LEDGER_LOCK_BACKEND."""
    selected = (backend or settings.LEDGER_LOCK_BACKEND or "local").strip().lower()
    if selected == "redis":
        return RedisLockRegistry()
    return LocalLockRegistry()
