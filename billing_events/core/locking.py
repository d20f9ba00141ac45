"""
Named distributed locks backed by Redis.

Locks carry a TTL so a crashed holder cannot block a resource forever, and
acquisition takes an explicit timeout so callers fail fast instead of
waiting indefinitely.
"""
import time
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Optional

import redis.asyncio as aioredis
import structlog
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

from billing_events.core.errors import LockContention
from billing_events.monitoring.metrics import metrics

logger = structlog.get_logger(__name__)


class LockManager:
    """
    Acquire and release named locks.

    One manager instance tracks the lock tokens it holds, so ``release`` must
    be called on the same instance that acquired the key.
    """

    def __init__(
        self,
        redis_client: aioredis.Redis,
        ttl_seconds: int = 30,
        default_timeout_ms: int = 2000,
        key_prefix: str = "lock:",
    ):
        self.redis_client = redis_client
        self.ttl_seconds = ttl_seconds
        self.default_timeout_ms = default_timeout_ms
        self.key_prefix = key_prefix
        self._held: Dict[str, Lock] = {}

    async def acquire(self, key: str, timeout_ms: int) -> bool:
        """
        Try to take ``key`` within ``timeout_ms``.

        Returns:
            bool: True if the lock is now held by this manager
        """
        lock = self.redis_client.lock(
            f"{self.key_prefix}{key}",
            timeout=self.ttl_seconds,
            blocking=True,
            blocking_timeout=timeout_ms / 1000,
            thread_local=False,
        )
        acquired = await lock.acquire()
        if acquired:
            self._held[key] = lock
            metrics.record_distributed_lock("acquired")
        else:
            metrics.record_distributed_lock("contended")
        return bool(acquired)

    async def release(self, key: str) -> None:
        lock = self._held.pop(key, None)
        if lock is None:
            return
        try:
            await lock.release()
        except LockError as e:
            # TTL expired and someone else may hold it now; nothing left to release.
            logger.warning("lock_release_failed", key=key, error=str(e))

    @asynccontextmanager
    async def hold(self, key: str, timeout_ms: Optional[int] = None) -> AsyncIterator[None]:
        """
        Hold ``key`` for the duration of the block.

        Raises:
            LockContention: If the lock could not be acquired in time
        """
        timeout_ms = self.default_timeout_ms if timeout_ms is None else timeout_ms
        if not await self.acquire(key, timeout_ms):
            raise LockContention(key, timeout_ms)

        started = time.monotonic()
        try:
            yield
        finally:
            await self.release(key)
            metrics.record_distributed_lock("released", time.monotonic() - started)
