"""
Per-subscription locks.

Every write path for a subscription runs under its lock, so a manual call and
the automatic sweep can never pay the same drop twice and no writer puts back
a stale drop list.
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import structlog
from redis.asyncio import Redis
from redis.exceptions import LockError

from dropmarket.settings import settings
from dropmarket.subscriptions.exceptions import SubscriptionLockedError

logger = structlog.get_logger(__name__)


class InMemoryLockManager:
    """``asyncio.Lock`` per key; serializes callers inside one process."""

    def __init__(self, timeout: float | None = None) -> None:
        self.timeout = (
            timeout if timeout is not None else settings.subscriptions.lock_timeout_seconds
        )
        self._locks: dict[str, asyncio.Lock] = {}

    def _lock_for(self, key: str) -> asyncio.Lock:
        lock = self._locks.get(key)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[key] = lock
        return lock

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self._lock_for(key)
        try:
            await asyncio.wait_for(lock.acquire(), timeout=self.timeout)
        except TimeoutError:
            logger.warning("subscription.lock.timeout", key=key, timeout=self.timeout)
            raise SubscriptionLockedError(key, self.timeout)
        try:
            yield
        finally:
            lock.release()


class RedisLockManager:
    """Cross-worker lock built on redis-py's ``Lock``."""

    def __init__(
        self,
        client: Redis,
        prefix: str | None = None,
        timeout: float | None = None,
        lease_seconds: float | None = None,
    ) -> None:
        self.client = client
        self.prefix = prefix or settings.redis.lock_key_prefix
        self.timeout = (
            timeout if timeout is not None else settings.subscriptions.lock_timeout_seconds
        )
        # The lease must outlive the slowest drop execution
        self.lease_seconds = lease_seconds or float(settings.celery.task_time_limit)

    def _name(self, key: str) -> str:
        return f"{self.prefix}:{key}"

    @asynccontextmanager
    async def hold(self, key: str) -> AsyncIterator[None]:
        lock = self.client.lock(
            self._name(key),
            timeout=self.lease_seconds,
            blocking_timeout=self.timeout,
        )
        acquired = await lock.acquire()
        if not acquired:
            logger.warning("subscription.lock.timeout", key=key, timeout=self.timeout)
            raise SubscriptionLockedError(key, self.timeout)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError as e:
                # Lease expired while we were still working
                logger.error("subscription.lock.release_failed", key=key, error=str(e))
