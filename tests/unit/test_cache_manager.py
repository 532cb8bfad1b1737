"""Tests for CacheManager.

Covers key generation, the tiered read path with backfill, write-through,
degradation when a tier fails, and stampede protection.
"""

import asyncio

import pytest

from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.services.book_search.cache_manager import CacheManager
from bookbuddy.services.book_search.normalizer import normalize_search_results
from bookbuddy.services.book_search.results import BookProvider, CanonicalSearchResult
from mocks.fakes import FakeDurableStore, FakeFastStore
from mocks.google_books_responses import FELLOWSHIP_VOLUME, HOBBIT_VOLUME

PROVIDER = BookProvider.GOOGLE_BOOKS
FILTERS = {"type": "general", "limit": 20, "offset": 0}


@pytest.fixture
def results() -> list[CanonicalSearchResult]:
    return normalize_search_results([HOBBIT_VOLUME, FELLOWSHIP_VOLUME], PROVIDER)


def key_for(query: str = "the hobbit") -> str:
    return CacheManager.search_key(query, PROVIDER, FILTERS)


# =============================================================================
# Cache Key Tests
# =============================================================================


class TestSearchKey:
    """Tests for deterministic search key generation."""

    def test_sha256_hex(self) -> None:
        key = key_for()
        assert len(key) == 64
        int(key, 16)

    def test_normalized_query(self) -> None:
        assert key_for("The Hobbit") == key_for("  the hobbit ")

    def test_filter_order_irrelevant(self) -> None:
        reordered = {"offset": 0, "limit": 20, "type": "general"}
        assert CacheManager.search_key("hobbit", PROVIDER, reordered) == CacheManager.search_key(
            "hobbit", PROVIDER, FILTERS
        )

    def test_provider_and_filters_matter(self) -> None:
        base = CacheManager.search_key("hobbit", PROVIDER, FILTERS)
        assert base != CacheManager.search_key("hobbit", BookProvider.OPEN_LIBRARY, FILTERS)
        assert base != CacheManager.search_key("hobbit", PROVIDER, {**FILTERS, "offset": 20})

    def test_enum_and_string_provider_agree(self) -> None:
        assert CacheManager.search_key("hobbit", PROVIDER) == CacheManager.search_key(
            "hobbit", "google_books"
        )


# =============================================================================
# Read Path Tests
# =============================================================================


class TestGet:
    """Tests for the tiered lookup."""

    async def test_miss_in_both_tiers(
        self, cache_manager: CacheManager, metrics: SearchMetrics
    ) -> None:
        assert await cache_manager.get("the hobbit", PROVIDER, FILTERS) is None
        assert metrics.cache_misses == 1

    async def test_set_then_get(
        self,
        cache_manager: CacheManager,
        results: list[CanonicalSearchResult],
        metrics: SearchMetrics,
    ) -> None:
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)

        cached = await cache_manager.get("the hobbit", PROVIDER, FILTERS)

        assert cached == results
        assert metrics.cache_hits["redis"] == 1

    async def test_set_writes_both_tiers(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)

        assert key_for() in fast_store.data
        assert fast_store.ttls[key_for()] == 43200
        entry = durable_store.entries[(key_for(), "google_books")]
        assert entry.ttl_seconds == pytest.approx(30 * 86400, abs=5)

    async def test_durable_hit_backfills_fast_tier(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
        metrics: SearchMetrics,
    ) -> None:
        await durable_store.set(
            key_for(), "google_books", [r.to_dict() for r in results], 30
        )

        cached = await cache_manager.get("the hobbit", PROVIDER, FILTERS)

        assert cached == results
        assert metrics.cache_hits["database"] == 1
        assert key_for() in fast_store.data

        await cache_manager.get("the hobbit", PROVIDER, FILTERS)
        assert metrics.cache_hits["redis"] == 1

    async def test_expired_durable_entry_is_a_miss(
        self,
        cache_manager: CacheManager,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await durable_store.set(
            key_for(), "google_books", [r.to_dict() for r in results], 30
        )
        durable_store.expire_all()

        assert await cache_manager.get("the hobbit", PROVIDER, FILTERS) is None

    async def test_include_expired_returns_without_backfill(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await durable_store.set(
            key_for(), "google_books", [r.to_dict() for r in results], 30
        )
        durable_store.expire_all()

        cached = await cache_manager.get(
            "the hobbit", PROVIDER, FILTERS, include_expired=True
        )

        assert cached == results
        assert fast_store.data == {}


# =============================================================================
# Degradation Tests
# =============================================================================


class TestDegradation:
    """Tests for carrying on when a tier is down or absent."""

    async def test_fast_tier_down_reads_durable(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await durable_store.set(
            key_for(), "google_books", [r.to_dict() for r in results], 30
        )
        fast_store.fail = True

        assert await cache_manager.get("the hobbit", PROVIDER, FILTERS) == results

    async def test_both_tiers_down_is_a_miss(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        fast_store.fail = True
        durable_store.fail = True

        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)
        assert await cache_manager.get("the hobbit", PROVIDER, FILTERS) is None

    async def test_durable_down_still_writes_fast(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        durable_store.fail = True
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)
        assert key_for() in fast_store.data

    async def test_no_tiers_configured(self, results: list[CanonicalSearchResult]) -> None:
        manager = CacheManager(None, None)

        await manager.set("the hobbit", PROVIDER, results)
        assert await manager.get("the hobbit", PROVIDER) is None
        assert await manager.clean_expired() == 0

    async def test_clean_expired_failure_returns_zero(
        self, cache_manager: CacheManager, durable_store: FakeDurableStore
    ) -> None:
        durable_store.fail = True
        assert await cache_manager.clean_expired() == 0


# =============================================================================
# Invalidation and Sweep Tests
# =============================================================================


class TestMaintenance:
    """Tests for invalidate and clean_expired."""

    async def test_invalidate_both_tiers(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)

        await cache_manager.invalidate("The Hobbit", PROVIDER, FILTERS)

        assert fast_store.data == {}
        assert durable_store.entries == {}

    async def test_clean_expired(
        self,
        cache_manager: CacheManager,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)
        await cache_manager.set("silmarillion", PROVIDER, results, FILTERS)
        durable_store.expire_all()
        await cache_manager.set("beren and luthien", PROVIDER, results, FILTERS)

        assert await cache_manager.clean_expired() == 2
        assert len(durable_store.entries) == 1


# =============================================================================
# Stampede Protection Tests
# =============================================================================


class TestGetWithLock:
    """Tests for at-most-once fetching on a cold key."""

    async def test_cached_value_skips_fetch(
        self, cache_manager: CacheManager, results: list[CanonicalSearchResult]
    ) -> None:
        await cache_manager.set("the hobbit", PROVIDER, results, FILTERS)
        calls = 0

        async def fetch() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            return results

        assert await cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS) == results
        assert calls == 0

    async def test_concurrent_callers_fetch_once(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        calls = 0

        async def fetch() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            return results

        outcomes = await asyncio.gather(
            *(
                cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS)
                for _ in range(10)
            )
        )

        assert calls == 1
        assert all(outcome == results for outcome in outcomes)
        assert fast_store.locks == set()

    async def test_fetch_error_propagates_and_releases_lock(
        self, cache_manager: CacheManager, fast_store: FakeFastStore
    ) -> None:
        async def fetch() -> list[CanonicalSearchResult]:
            raise RuntimeError("upstream broke")

        with pytest.raises(RuntimeError):
            await cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS)

        assert fast_store.locks == set()

    async def test_concurrent_callers_share_failure(
        self, cache_manager: CacheManager, fast_store: FakeFastStore
    ) -> None:
        calls = 0

        async def slow_failure() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.05)
            raise TimeoutError("upstream too slow")

        loop = asyncio.get_running_loop()
        started = loop.time()
        outcomes = await asyncio.gather(
            *(
                cache_manager.get_with_lock("the hobbit", PROVIDER, slow_failure, FILTERS)
                for _ in range(8)
            ),
            return_exceptions=True,
        )
        elapsed = loop.time() - started

        assert calls == 1
        assert all(isinstance(outcome, TimeoutError) for outcome in outcomes)
        # Nobody queued behind a second attempt
        assert elapsed < 0.5
        assert fast_store.locks == set()
        assert cache_manager._inflight == {}

    async def test_next_caller_after_failure_fetches_again(
        self, cache_manager: CacheManager, results: list[CanonicalSearchResult]
    ) -> None:
        calls = 0

        async def flaky() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            if calls == 1:
                raise RuntimeError("first fetch fails")
            return results

        with pytest.raises(RuntimeError):
            await cache_manager.get_with_lock("the hobbit", PROVIDER, flaky, FILTERS)

        assert await cache_manager.get_with_lock("the hobbit", PROVIDER, flaky, FILTERS) == results
        assert calls == 2

    async def test_empty_results_not_cached(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
    ) -> None:
        calls = 0

        async def nothing() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            await asyncio.sleep(0.02)
            return []

        outcomes = await asyncio.gather(
            *(
                cache_manager.get_with_lock("zzqx nothing", PROVIDER, nothing, FILTERS)
                for _ in range(4)
            )
        )

        assert outcomes == [[], [], [], []]
        assert calls == 1
        assert fast_store.data == {}
        assert durable_store.entries == {}

        await cache_manager.get_with_lock("zzqx nothing", PROVIDER, nothing, FILTERS)
        assert calls == 2

    async def test_deadline_on_holder_releases_lock(
        self, cache_manager: CacheManager, fast_store: FakeFastStore
    ) -> None:
        async def slow() -> list[CanonicalSearchResult]:
            await asyncio.sleep(1)
            return []

        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(
                cache_manager.get_with_lock("the hobbit", PROVIDER, slow, FILTERS), 0.05
            )

        assert fast_store.locks == set()
        assert cache_manager._inflight == {}

    async def test_cancelled_waiter_leaves_holder_alone(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        release = asyncio.Event()
        calls = 0

        async def gated() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            await release.wait()
            return results

        holder = asyncio.create_task(
            cache_manager.get_with_lock("the hobbit", PROVIDER, gated, FILTERS)
        )
        await asyncio.sleep(0.02)
        waiters = [
            asyncio.create_task(
                cache_manager.get_with_lock("the hobbit", PROVIDER, gated, FILTERS)
            )
            for _ in range(2)
        ]
        await asyncio.sleep(0.02)

        waiters[0].cancel()
        release.set()

        assert await holder == results
        assert await waiters[1] == results
        with pytest.raises(asyncio.CancelledError):
            await waiters[0]
        assert calls == 1
        assert fast_store.locks == set()

    async def test_cancelled_holder_hands_key_to_waiter(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        calls = 0

        async def fetch() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            if calls == 1:
                await asyncio.sleep(1)
            return results

        holder = asyncio.create_task(
            cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS)
        )
        await asyncio.sleep(0.02)
        waiter = asyncio.create_task(
            cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS)
        )
        await asyncio.sleep(0.02)

        holder.cancel()

        assert await waiter == results
        with pytest.raises(asyncio.CancelledError):
            await holder
        assert calls == 2
        assert fast_store.locks == set()

    async def test_late_release_keeps_newer_holders_lock(
        self,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        # Two managers over one Redis tier stand in for two processes
        first = CacheManager(fast_store, durable_store, lock_poll_interval=0.01)
        second = CacheManager(fast_store, durable_store, lock_poll_interval=0.01)
        lock_taken = asyncio.Event()
        finish_second = asyncio.Event()

        async def outlives_lock() -> list[CanonicalSearchResult]:
            fast_store.expire_lock(key_for())
            await lock_taken.wait()
            return results

        async def second_fetch() -> list[CanonicalSearchResult]:
            lock_taken.set()
            await finish_second.wait()
            return results

        first_task = asyncio.create_task(
            first.get_with_lock("the hobbit", PROVIDER, outlives_lock, FILTERS)
        )
        await asyncio.sleep(0.01)
        second_task = asyncio.create_task(
            second.get_with_lock("the hobbit", PROVIDER, second_fetch, FILTERS)
        )

        assert await first_task == results
        assert key_for() in fast_store.locks

        finish_second.set()
        assert await second_task == results
        assert fast_store.locks == set()

    async def test_lock_unavailable_fetches_directly(
        self,
        cache_manager: CacheManager,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        fast_store.lock_fail = True

        async def fetch() -> list[CanonicalSearchResult]:
            return results

        assert await cache_manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS) == results
        assert (key_for(), "google_books") in durable_store.entries

    async def test_wait_timeout_fetches_directly(
        self,
        fast_store: FakeFastStore,
        durable_store: FakeDurableStore,
        results: list[CanonicalSearchResult],
    ) -> None:
        manager = CacheManager(
            fast_store, durable_store, lock_poll_interval=0.01, lock_wait_timeout=0.05
        )
        # Held by a crashed process that never publishes
        fast_store.locks.add(key_for())
        calls = 0

        async def fetch() -> list[CanonicalSearchResult]:
            nonlocal calls
            calls += 1
            return results

        assert await manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS) == results
        assert calls == 1

    async def test_without_fast_tier(
        self, durable_store: FakeDurableStore, results: list[CanonicalSearchResult]
    ) -> None:
        manager = CacheManager(None, durable_store)

        async def fetch() -> list[CanonicalSearchResult]:
            return results

        assert await manager.get_with_lock("the hobbit", PROVIDER, fetch, FILTERS) == results
        assert len(durable_store.entries) == 1


class TestFromSettings:
    """Tests for settings wiring."""

    def test_from_settings(self, test_settings) -> None:
        manager = CacheManager.from_settings(test_settings, None, None)

        assert manager.redis_ttl_seconds == test_settings.cache_redis_ttl_seconds
        assert manager.database_ttl_days == test_settings.cache_database_ttl_days
        assert manager.lock_wait_timeout == test_settings.cache_lock_wait_timeout
