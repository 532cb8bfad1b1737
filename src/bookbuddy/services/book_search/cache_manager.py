"""CacheManager - two-tier read-through cache for normalized search results.

Tiers:
    - Fast (Redis): checked first, hours-long TTL
    - Durable (SQL): checked on a fast miss, weeks-long TTL, backfills Redis

Either tier can be missing or failing; its errors are logged and the manager
carries on with the other one. Caching never decides whether a search
succeeds.

Stampede protection (``get_with_lock``): within a process, concurrent callers
for a cold key share one in-flight fetch and its outcome, success or failure.
Across processes, the in-flight fetch takes the Redis lock and other
processes poll Redis until the result is published. If the lock itself cannot
be reached the caller fetches without it. That bypass trades duplicate
upstream calls during a Redis outage for staying available, and is logged as
``stampede_lock_unavailable``.

Empty result lists are returned but never cached.
"""

import asyncio
import hashlib
import json
from collections.abc import Awaitable, Callable
from typing import Any, Protocol

import structlog

from bookbuddy.config import Settings
from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.services.book_search.results import BookProvider, CanonicalSearchResult
from bookbuddy.services.book_search.stores import CacheEntry

logger = structlog.get_logger(__name__)

FetchFn = Callable[[], Awaitable[list[CanonicalSearchResult]]]


class FastCacheStore(Protocol):
    async def get(self, search_key: str) -> list[dict[str, Any]] | None: ...

    async def set(
        self, search_key: str, value: list[dict[str, Any]], ttl: int | None = None
    ) -> None: ...

    async def delete(self, search_key: str) -> None: ...

    async def acquire_lock(self, search_key: str, ttl: int) -> Any | None: ...

    async def release_lock(self, search_key: str, lock: Any) -> None: ...

    async def is_locked(self, search_key: str) -> bool: ...


class DurableCacheStore(Protocol):
    async def get(
        self, key: str, provider: str, *, include_expired: bool = False
    ) -> CacheEntry | None: ...

    async def set(
        self, key: str, provider: str, results: list[dict[str, Any]], ttl_days: int
    ) -> None: ...

    async def delete(self, key: str, provider: str) -> int: ...

    async def clean_expired(self) -> int: ...


def _provider_name(provider: BookProvider | str) -> str:
    return provider.value if isinstance(provider, BookProvider) else str(provider)


def _encode(results: list[CanonicalSearchResult]) -> list[dict[str, Any]]:
    return [result.to_dict() for result in results]


def _decode(payload: list[dict[str, Any]]) -> list[CanonicalSearchResult]:
    return [CanonicalSearchResult.from_dict(item) for item in payload]


def _consume_outcome(future: asyncio.Future) -> None:
    # A failed fetch with no waiters is still re-raised by its holder
    if not future.cancelled():
        future.exception()


class CacheManager:
    """Read-through, write-through cache over the fast and durable tiers."""

    def __init__(
        self,
        fast: FastCacheStore | None,
        durable: DurableCacheStore | None,
        metrics: SearchMetrics | None = None,
        *,
        redis_ttl_seconds: int = 43200,
        database_ttl_days: int = 30,
        lock_ttl_seconds: int = 10,
        lock_poll_interval: float = 0.1,
        lock_wait_timeout: float = 12.0,
    ) -> None:
        """Initialize the manager.

        Args:
            fast: Redis tier, or None to run durable-only
            durable: SQL tier, or None to run fast-only
            metrics: Metrics sink for hits and misses
            redis_ttl_seconds: Fast tier TTL
            database_ttl_days: Durable tier TTL
            lock_ttl_seconds: Lifetime of a stampede lock
            lock_poll_interval: Seconds between polls while another caller fetches
            lock_wait_timeout: Longest a caller waits before fetching itself
        """
        self.fast = fast
        self.durable = durable
        self.metrics = metrics or SearchMetrics()
        self.redis_ttl_seconds = redis_ttl_seconds
        self.database_ttl_days = database_ttl_days
        self.lock_ttl_seconds = lock_ttl_seconds
        self.lock_poll_interval = lock_poll_interval
        self.lock_wait_timeout = lock_wait_timeout
        self._inflight: dict[str, asyncio.Future[list[CanonicalSearchResult]]] = {}

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        fast: FastCacheStore | None,
        durable: DurableCacheStore | None,
        metrics: SearchMetrics | None = None,
    ) -> "CacheManager":
        return cls(
            fast,
            durable,
            metrics,
            redis_ttl_seconds=settings.cache_redis_ttl_seconds,
            database_ttl_days=settings.cache_database_ttl_days,
            lock_ttl_seconds=settings.cache_lock_ttl_seconds,
            lock_poll_interval=settings.cache_lock_poll_interval,
            lock_wait_timeout=settings.cache_lock_wait_timeout,
        )

    # -------------------------------------------------------------------------
    # Cache Key
    # -------------------------------------------------------------------------

    @staticmethod
    def search_key(
        query: str,
        provider: BookProvider | str,
        filters: dict[str, Any] | None = None,
    ) -> str:
        """Deterministic key for a search.

        The query is lowercased and trimmed; filter order does not matter.

        Returns:
            sha256 hex digest
        """
        payload = {
            "query": query.lower().strip(),
            "provider": _provider_name(provider),
            "filters": filters or {},
        }
        canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
        return hashlib.sha256(canonical.encode("utf-8")).hexdigest()

    # -------------------------------------------------------------------------
    # Read / Write
    # -------------------------------------------------------------------------

    async def get(
        self,
        query: str,
        provider: BookProvider | str,
        filters: dict[str, Any] | None = None,
        *,
        include_expired: bool = False,
    ) -> list[CanonicalSearchResult] | None:
        """Tiered lookup.

        Args:
            query: Search query
            provider: Provider name
            filters: Search filters that are part of the key
            include_expired: Let the durable tier return unswept expired entries

        Returns:
            Cached results, or None on a miss in both tiers
        """
        key = self.search_key(query, provider, filters)
        provider_name = _provider_name(provider)

        if self.fast is not None:
            try:
                cached = await self.fast.get(key)
                if cached is not None:
                    results = _decode(cached)
                    self.metrics.record_cache_hit("redis")
                    logger.debug("cache_hit", tier="redis", search_key=key)
                    return results
            except Exception as e:
                logger.warning("cache_get_failed", tier="redis", search_key=key, error=str(e))

        if self.durable is not None:
            try:
                entry = await self.durable.get(
                    key, provider_name, include_expired=include_expired
                )
                if entry is not None:
                    results = _decode(entry.results)
                    self.metrics.record_cache_hit("database")
                    logger.debug(
                        "cache_hit", tier="database", search_key=key, expired=entry.is_expired
                    )
                    if not entry.is_expired:
                        await self._backfill(key, entry.results)
                    return results
            except Exception as e:
                logger.warning(
                    "cache_get_failed", tier="database", search_key=key, error=str(e)
                )

        self.metrics.record_cache_miss()
        logger.debug("cache_miss", search_key=key, provider=provider_name)
        return None

    async def set(
        self,
        query: str,
        provider: BookProvider | str,
        results: list[CanonicalSearchResult],
        filters: dict[str, Any] | None = None,
    ) -> None:
        """Write results to both tiers. Failures are logged, never raised."""
        key = self.search_key(query, provider, filters)
        await self._store(key, _provider_name(provider), _encode(results))

    async def invalidate(
        self,
        query: str,
        provider: BookProvider | str,
        filters: dict[str, Any] | None = None,
    ) -> None:
        """Delete a search from both tiers."""
        key = self.search_key(query, provider, filters)

        if self.fast is not None:
            try:
                await self.fast.delete(key)
            except Exception as e:
                logger.warning(
                    "cache_invalidate_failed", tier="redis", search_key=key, error=str(e)
                )

        if self.durable is not None:
            try:
                await self.durable.delete(key, _provider_name(provider))
            except Exception as e:
                logger.warning(
                    "cache_invalidate_failed", tier="database", search_key=key, error=str(e)
                )

        logger.info("cache_invalidated", search_key=key, provider=_provider_name(provider))

    async def clean_expired(self) -> int:
        """Sweep expired entries from the durable tier.

        Returns:
            Number of entries removed (0 if the sweep failed)
        """
        if self.durable is None:
            return 0
        try:
            removed = await self.durable.clean_expired()
        except Exception as e:
            logger.error("cache_clean_expired_failed", error=str(e))
            return 0
        logger.info("cache_clean_expired", removed=removed)
        return removed

    # -------------------------------------------------------------------------
    # Stampede Protection
    # -------------------------------------------------------------------------

    async def get_with_lock(
        self,
        query: str,
        provider: BookProvider | str,
        fetch_fn: FetchFn,
        filters: dict[str, Any] | None = None,
    ) -> list[CanonicalSearchResult]:
        """Cached results, fetching at most once per cold key across callers.

        Callers in this process that arrive while a fetch for the key is in
        flight share its outcome, including its exception. Callers in other
        processes coordinate through the Redis lock.

        Errors raised by ``fetch_fn`` propagate unchanged.

        Args:
            query: Search query
            provider: Provider name
            fetch_fn: Coroutine factory producing fresh results
            filters: Search filters that are part of the key
        """
        cached = await self.get(query, provider, filters)
        if cached is not None:
            return cached

        key = self.search_key(query, provider, filters)
        provider_name = _provider_name(provider)

        while True:
            inflight = self._inflight.get(key)
            if inflight is None:
                break
            try:
                return list(await asyncio.shield(inflight))
            except asyncio.CancelledError:
                if not inflight.cancelled():
                    raise
                # Holder was abandoned, take over the key
                logger.debug("stampede_holder_abandoned", search_key=key)

        outcome: asyncio.Future[list[CanonicalSearchResult]] = (
            asyncio.get_running_loop().create_future()
        )
        outcome.add_done_callback(_consume_outcome)
        self._inflight[key] = outcome
        try:
            results = await self._fetch_exclusive(key, provider_name, fetch_fn)
            outcome.set_result(results)
            return results
        except Exception as e:
            outcome.set_exception(e)
            raise
        finally:
            if self._inflight.get(key) is outcome:
                del self._inflight[key]
            if not outcome.done():
                outcome.cancel()

    async def _fetch_exclusive(
        self, key: str, provider: str, fetch_fn: FetchFn
    ) -> list[CanonicalSearchResult]:
        """Fetch under the Redis lock, or wait for whoever holds it."""
        if self.fast is None:
            return await self._fetch_and_store(key, provider, fetch_fn)

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.lock_wait_timeout

        while True:
            try:
                lock = await self.fast.acquire_lock(key, self.lock_ttl_seconds)
            except Exception as e:
                logger.warning("stampede_lock_unavailable", search_key=key, error=str(e))
                return await self._fetch_and_store(key, provider, fetch_fn)

            if lock is not None:
                try:
                    # Another holder may have published between our miss and the lock
                    published = await self._read_fast(key)
                    if published is not None:
                        return published
                    return await self._fetch_and_store(key, provider, fetch_fn)
                finally:
                    await self._release(key, lock)

            published = await self._wait_for_publish(key, deadline)
            if published is not None:
                return published

            if loop.time() >= deadline:
                logger.warning(
                    "stampede_lock_wait_timeout",
                    search_key=key,
                    waited_seconds=self.lock_wait_timeout,
                )
                return await self._fetch_and_store(key, provider, fetch_fn)

            logger.debug("stampede_lock_released_without_value", search_key=key)

    async def _wait_for_publish(
        self, key: str, deadline: float
    ) -> list[CanonicalSearchResult] | None:
        """Poll until the holder publishes, the lock frees up, or time runs out."""
        loop = asyncio.get_running_loop()
        while loop.time() < deadline:
            await asyncio.sleep(self.lock_poll_interval)
            published = await self._read_fast(key)
            if published is not None:
                return published
            try:
                if not await self.fast.is_locked(key):
                    return None
            except Exception as e:
                logger.warning("cache_lock_check_failed", search_key=key, error=str(e))
                return None
        return None

    async def _read_fast(self, key: str) -> list[CanonicalSearchResult] | None:
        try:
            cached = await self.fast.get(key)
            return _decode(cached) if cached is not None else None
        except Exception as e:
            logger.warning("cache_get_failed", tier="redis", search_key=key, error=str(e))
            return None

    async def _release(self, key: str, lock: Any) -> None:
        try:
            await self.fast.release_lock(key, lock)
        except Exception as e:
            logger.warning("cache_lock_release_failed", search_key=key, error=str(e))

    async def _fetch_and_store(
        self, key: str, provider: str, fetch_fn: FetchFn
    ) -> list[CanonicalSearchResult]:
        results = await fetch_fn()
        if not results:
            logger.debug("cache_skip_empty", search_key=key, provider=provider)
            return results
        await self._store(key, provider, _encode(results))
        return results

    async def _store(self, key: str, provider: str, payload: list[dict[str, Any]]) -> None:
        if self.fast is not None:
            try:
                await self.fast.set(key, payload, self.redis_ttl_seconds)
            except Exception as e:
                logger.warning("cache_set_failed", tier="redis", search_key=key, error=str(e))

        if self.durable is not None:
            try:
                await self.durable.set(key, provider, payload, self.database_ttl_days)
            except Exception as e:
                logger.warning(
                    "cache_set_failed", tier="database", search_key=key, error=str(e)
                )

    async def _backfill(self, key: str, payload: list[dict[str, Any]]) -> None:
        if self.fast is None:
            return
        try:
            await self.fast.set(key, payload, self.redis_ttl_seconds)
        except Exception as e:
            logger.warning("cache_backfill_failed", search_key=key, error=str(e))
