"""
Cross-process scoring lock.

Only one scoring run may write ``feed:current`` at a time across every
worker process. The lock is a Redis key set with NX and an expiry holding a
random token; release deletes the key only if it still holds our token, so a
run that outlived its TTL never frees a lock someone else now holds.

When Redis is unreachable the lock degrades to an in-process
``asyncio.Lock``, which still prevents overlap within this process.
"""

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import redis.asyncio as redis

logger = logging.getLogger(__name__)

# Delete the key only if it still holds the caller's token
_RELEASE_SCRIPT = """
if redis.call("get", KEYS[1]) == ARGV[1] then
    return redis.call("del", KEYS[1])
else
    return 0
end
"""


class ScoringLock:
    """
    Redis-backed mutual exclusion for scoring runs.

    Usage:
        lock = ScoringLock(redis_client)
        async with lock.hold() as acquired:
            if acquired:
                await run_pipeline()
    """

    def __init__(
        self,
        redis_client: redis.Redis | None,
        key: str = "scoring:lock",
        ttl_seconds: int = 300,
    ) -> None:
        self._redis = redis_client
        self._key = key
        self._ttl = ttl_seconds
        self._local = asyncio.Lock()
        self._token: str | None = None
        self._using_local = False

    @property
    def key(self) -> str:
        return self._key

    async def acquire(self) -> bool:
        """Try to take the lock without waiting.

        Returns:
            True if this caller now holds the lock.
        """
        if self._redis is not None:
            token = secrets.token_hex(16)
            try:
                acquired = await self._redis.set(self._key, token, nx=True, ex=self._ttl)
            except Exception as e:
                logger.warning("Redis lock unavailable, using in-process lock: %s", e)
            else:
                if acquired:
                    self._token = token
                    self._using_local = False
                    return True
                logger.info("Scoring lock %s held by another process", self._key)
                return False

        if self._local.locked():
            return False
        await self._local.acquire()
        self._using_local = True
        return True

    async def release(self) -> None:
        """Release the lock if this instance holds it."""
        if self._using_local:
            self._using_local = False
            if self._local.locked():
                self._local.release()
            return

        token, self._token = self._token, None
        if token is None or self._redis is None:
            return
        try:
            released = await self._redis.eval(_RELEASE_SCRIPT, 1, self._key, token)
            if not released:
                logger.warning("Scoring lock %s expired before release", self._key)
        except Exception as e:
            # The TTL frees the key eventually
            logger.warning("Failed to release scoring lock %s: %s", self._key, e)

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[bool]:
        """Acquire for the duration of the block; yields whether it was acquired."""
        acquired = await self.acquire()
        try:
            yield acquired
        finally:
            if acquired:
                await self.release()
