"""
Redis-based distributed locking.

Keeps two scheduler passes from overlapping when beat fires while a
previous pass is still importing. A pass that finds the lock held is
skipped rather than queued behind it.

Usage:
    from rfp_intake.core.shared.lock_service import lock_service

    async with lock_service.lock("saved_search_scheduler", timeout=3600) as acquired:
        if acquired:
            ...
"""

import asyncio
import logging
import uuid
from contextlib import asynccontextmanager
from typing import AsyncIterator, Optional

import redis.asyncio as redis

from rfp_intake.config import settings

logger = logging.getLogger("rfp_intake.lock")

# Delete only if the key still holds our token
_RELEASE_SCRIPT = """
if redis.call('GET', KEYS[1]) == ARGV[1] then
    return redis.call('DEL', KEYS[1])
end
return 0
"""


class LockService:
    """Single-holder Redis locks keyed ``rfp_intake:lock:{resource}``."""

    key_prefix = "rfp_intake:lock:"

    def __init__(self, redis_url: Optional[str] = None):
        self._redis_url = redis_url or settings.redis_url
        self._redis: Optional[redis.Redis] = None
        self._redis_loop: Optional[asyncio.AbstractEventLoop] = None

    async def _get_redis(self) -> redis.Redis:
        loop = asyncio.get_running_loop()
        if self._redis is None or self._redis_loop is not loop:
            # A client bound to a closed loop (previous asyncio.run) is abandoned
            self._redis_loop = loop
            self._redis = redis.from_url(self._redis_url, decode_responses=True)
        return self._redis

    async def try_acquire(self, resource: str, ttl_seconds: int) -> Optional[str]:
        """
        Take the lock without waiting.

        The key expires after ``ttl_seconds`` so a crashed holder cannot
        block later passes forever.

        Returns:
            Holder token, or None when someone else holds the lock
        """
        client = await self._get_redis()
        token = uuid.uuid4().hex
        if await client.set(f"{self.key_prefix}{resource}", token, nx=True, ex=ttl_seconds):
            logger.debug(f"Lock acquired: {resource} (ttl={ttl_seconds}s)")
            return token
        logger.debug(f"Lock held elsewhere: {resource}")
        return None

    async def release(self, resource: str, token: str) -> bool:
        client = await self._get_redis()
        released = await client.eval(_RELEASE_SCRIPT, 1, f"{self.key_prefix}{resource}", token) == 1
        if not released:
            logger.warning(f"Lock {resource} expired before release")
        return released

    @asynccontextmanager
    async def lock(self, resource: str, timeout: int = 300) -> AsyncIterator[bool]:
        """Yield True when this caller holds ``resource`` for the block."""
        token = await self.try_acquire(resource, timeout)
        try:
            yield token is not None
        finally:
            if token:
                await self.release(resource, token)


lock_service = LockService()
