# /chatflow/services/lock_service.py

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

from redis.exceptions import LockError

from chatflow.utils.errors import ConcurrencyError
from chatflow.utils.metrics import lock_wait_histogram

# Per-key exclusive locks. The session store takes one per session id for
# the whole interpreter loop of an invocation; the scheduler takes one per
# (flow, conversation) while it creates a session.

logger = logging.getLogger(__name__)


class LockManager:
    def hold(self, key: str, timeout: Optional[float] = None):
        """Async context manager holding `key` exclusively. Raises ConcurrencyError on timeout."""
        raise NotImplementedError


class LocalLockManager(LockManager):
    """asyncio locks keyed by name. Only safe with a single worker process."""

    def __init__(self, default_timeout: float = 10.0):
        self.default_timeout = default_timeout
        self._locks: Dict[str, asyncio.Lock] = {}
        self._waiters: Dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self._locks.setdefault(key, asyncio.Lock())
        self._waiters[key] = self._waiters.get(key, 0) + 1
        started = time.monotonic()
        try:
            try:
                await asyncio.wait_for(lock.acquire(), timeout or self.default_timeout)
            except asyncio.TimeoutError:
                logger.warning(f"Timed out waiting for lock '{key}'")
                raise ConcurrencyError(f"Could not acquire lock '{key}'")
            lock_wait_histogram.observe(time.monotonic() - started)
            try:
                yield
            finally:
                lock.release()
        finally:
            self._waiters[key] -= 1
            if self._waiters[key] == 0:
                self._waiters.pop(key, None)
                self._locks.pop(key, None)

    def is_locked(self, key: str) -> bool:
        lock = self._locks.get(key)
        return lock is not None and lock.locked()


class RedisLockManager(LockManager):
    """
    Redis locks shared by every worker. The lease bounds how long a crashed
    worker can keep a session locked.
    """

    def __init__(self, redis_client, default_timeout: float = 10.0, lease_seconds: float = 60.0):
        self.redis = redis_client
        self.default_timeout = default_timeout
        self.lease_seconds = lease_seconds

    @asynccontextmanager
    async def hold(self, key: str, timeout: Optional[float] = None) -> AsyncIterator[None]:
        lock = self.redis.lock(
            f"chatflow:lock:{key}",
            timeout=self.lease_seconds,
            blocking_timeout=timeout or self.default_timeout,
        )
        started = time.monotonic()
        acquired = await lock.acquire()
        if not acquired:
            logger.warning(f"Timed out waiting for redis lock '{key}'")
            raise ConcurrencyError(f"Could not acquire lock '{key}'")
        lock_wait_histogram.observe(time.monotonic() - started)
        try:
            yield
        finally:
            try:
                await lock.release()
            except LockError:
                logger.error(f"Lock '{key}' lease expired before release; another worker may have run concurrently")
