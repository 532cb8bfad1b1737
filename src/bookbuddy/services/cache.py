"""RedisSearchCacheStore - fast tier of the book search cache.

Redis holds normalized search results for hours with jittered TTLs so a batch
of entries written together does not expire together. The same client also
provides the distributed stampede lock: redis-py's ``Lock`` is a
``SET key token NX PX`` with an owner token, so a crashed holder frees the key
when its TTL runs out and a late release never deletes someone else's lock.

Connection errors propagate to the caller. ``CacheManager`` decides how each
tier degrades.

Key layout:
    - book:search:{hash} - Canonical results for one query (12h TTL)
    - book:search:{hash}:lock - Stampede lock for that query (10s TTL)
"""

import json
import random
from typing import Any

import structlog
from redis.asyncio import Redis
from redis.asyncio.lock import Lock
from redis.exceptions import LockError

logger = structlog.get_logger(__name__)


class RedisSearchCacheStore:
    """Redis-backed fast cache tier with an atomic lock primitive.

    Configuration:
        Redis should be configured with:
        - maxmemory 256mb
        - maxmemory-policy allkeys-lru
    """

    KEY_PREFIX = "book:search:"
    LOCK_SUFFIX = ":lock"

    # Default TTL (in seconds)
    TTL_SEARCH_RESULTS = 43200  # 12 hours

    def __init__(self, redis: Redis) -> None:
        """Initialize the store.

        Args:
            redis: Async Redis client
        """
        self.redis = redis

    def key(self, search_key: str) -> str:
        """Redis key for a hashed search key."""
        return f"{self.KEY_PREFIX}{search_key}"

    def lock_key(self, search_key: str) -> str:
        return f"{self.key(search_key)}{self.LOCK_SUFFIX}"

    async def get(self, search_key: str) -> list[dict[str, Any]] | None:
        """Read cached results.

        Returns:
            Decoded results, or None if the key is absent
        """
        payload = await self.redis.get(self.key(search_key))
        if payload is None:
            return None
        return json.loads(payload)

    async def set(
        self,
        search_key: str,
        value: list[dict[str, Any]],
        ttl: int | None = None,
    ) -> None:
        """Store results with a jittered TTL.

        Args:
            search_key: Hashed search key
            value: JSON-serializable results
            ttl: Base TTL in seconds (defaults to 12 hours)
        """
        jittered = self._jitter_ttl(ttl or self.TTL_SEARCH_RESULTS)
        await self.redis.setex(self.key(search_key), jittered, json.dumps(value))
        logger.debug("cache_set", tier="redis", search_key=search_key, ttl=jittered)

    async def delete(self, search_key: str) -> None:
        await self.redis.delete(self.key(search_key))
        logger.debug("cache_invalidated", tier="redis", search_key=search_key)

    async def acquire_lock(self, search_key: str, ttl: int) -> Lock | None:
        """Try once to take the stampede lock for a key.

        Args:
            search_key: Hashed search key
            ttl: Lock lifetime in seconds

        Returns:
            The held lock, to be passed back to ``release_lock``, or None if
            another caller holds it
        """
        lock = self.redis.lock(self.lock_key(search_key), timeout=ttl, blocking=False)
        if await lock.acquire():
            return lock
        return None

    async def release_lock(self, search_key: str, lock: Lock) -> None:
        """Release one acquisition of the stampede lock.

        The owner token makes this a no-op for Redis if the lock already
        expired and someone else took it; that case is logged and ignored.
        """
        try:
            await lock.release()
        except LockError:
            logger.warning(
                "cache_lock_expired_before_release", lock_key=self.lock_key(search_key)
            )

    async def is_locked(self, search_key: str) -> bool:
        """Check whether any caller currently holds the lock for a key."""
        return bool(await self.redis.exists(self.lock_key(search_key)))

    def _jitter_ttl(self, base_ttl: int) -> int:
        """Add ±10% random jitter so co-written entries expire apart.

        Args:
            base_ttl: Base TTL in seconds

        Returns:
            Jittered TTL
        """
        jitter = random.uniform(-0.1, 0.1)
        return max(1, int(base_ttl * (1 + jitter)))
