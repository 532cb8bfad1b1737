"""Tests for the failure-rate circuit breaker.

A manually advanced clock drives the rolling window and the reset timeout,
so state transitions are deterministic.
"""

import asyncio
from unittest.mock import AsyncMock

import pytest

from bookbuddy.core.exceptions import (
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitedError,
    UpstreamServerError,
    ValidationError,
)
from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.services.book_search.circuit_breaker import (
    BreakerEvent,
    BreakerState,
    CircuitBreaker,
    categorize_error,
)
from mocks.fakes import FakeClock

# =============================================================================
# Fixtures
# =============================================================================


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def upstream() -> AsyncMock:
    """Guarded function that succeeds unless told otherwise."""
    return AsyncMock(return_value="ok")


@pytest.fixture
def breaker(upstream: AsyncMock, clock: FakeClock) -> CircuitBreaker:
    return CircuitBreaker(
        upstream,
        name="google_books_search",
        timeout=0.2,
        error_threshold_percentage=50,
        reset_timeout=30,
        rolling_count_timeout=10,
        rolling_count_buckets=10,
        volume_threshold=5,
        clock=clock,
    )


async def fail_times(breaker: CircuitBreaker, count: int) -> None:
    for _ in range(count):
        with pytest.raises(UpstreamServerError):
            await breaker.call("query")


async def trip(breaker: CircuitBreaker, upstream: AsyncMock) -> None:
    upstream.side_effect = UpstreamServerError("boom")
    await fail_times(breaker, breaker.volume_threshold)
    assert breaker.state == BreakerState.OPEN


# =============================================================================
# Closed State Tests
# =============================================================================


class TestClosedState:
    """Tests for pass-through behaviour while closed."""

    async def test_passes_arguments_through(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        result = await breaker.call("hobbit", limit=10)

        assert result == "ok"
        upstream.assert_awaited_once_with("hobbit", limit=10)
        assert breaker.state == BreakerState.CLOSED

    async def test_success_recorded(self, breaker: CircuitBreaker) -> None:
        await breaker.call("hobbit")
        stats = breaker.stats()
        assert stats["successes"] == 1
        assert stats["failures"] == 0
        assert stats["latency_mean"] is not None

    async def test_failure_propagates_unchanged(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        error = RateLimitedError("slow down")
        upstream.side_effect = error

        with pytest.raises(RateLimitedError) as exc_info:
            await breaker.call("hobbit")

        assert exc_info.value is error
        assert breaker.stats()["failures"] == 1


# =============================================================================
# Opening Tests
# =============================================================================


class TestOpening:
    """Tests for the error threshold and volume threshold."""

    async def test_opens_at_threshold(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        await trip(breaker, upstream)
        assert breaker.opened_at is not None

    async def test_stays_closed_below_volume_threshold(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        upstream.side_effect = UpstreamServerError("boom")
        await fail_times(breaker, 4)
        assert breaker.state == BreakerState.CLOSED

    async def test_stays_closed_below_error_percentage(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        for _ in range(6):
            await breaker.call("query")
        upstream.side_effect = UpstreamServerError("boom")
        await fail_times(breaker, 5)

        # 5 failures out of 11 completions is below 50%
        assert breaker.state == BreakerState.CLOSED

        await fail_times(breaker, 1)
        assert breaker.state == BreakerState.OPEN

    async def test_old_failures_leave_the_window(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        upstream.side_effect = UpstreamServerError("boom")
        await fail_times(breaker, 4)

        clock.advance(11)
        await fail_times(breaker, 1)

        assert breaker.state == BreakerState.CLOSED
        assert breaker.stats()["failures"] == 1

    async def test_filtered_errors_do_not_count(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        upstream.side_effect = ValidationError("bad query")
        for _ in range(10):
            with pytest.raises(ValidationError):
                await breaker.call("query")

        assert breaker.state == BreakerState.CLOSED
        assert breaker.stats()["failures"] == 0

    async def test_custom_error_filter(self, upstream: AsyncMock, clock: FakeClock) -> None:
        breaker = CircuitBreaker(
            upstream,
            volume_threshold=1,
            error_filter=lambda e: isinstance(e, RateLimitedError),
            clock=clock,
        )
        upstream.side_effect = RateLimitedError("slow down")

        with pytest.raises(RateLimitedError):
            await breaker.call()

        assert breaker.state == BreakerState.CLOSED


# =============================================================================
# Open State Tests
# =============================================================================


class TestOpenState:
    """Tests for rejection while open."""

    async def test_rejects_without_calling_upstream(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        await trip(breaker, upstream)
        upstream.reset_mock()

        with pytest.raises(CircuitOpenError) as exc_info:
            await breaker.call("query")

        upstream.assert_not_awaited()
        assert exc_info.value.message == "Breaker is open: google_books_search"
        assert exc_info.value.status_code == 503
        assert breaker.stats()["rejects"] == 1

    async def test_still_open_before_reset_timeout(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        await trip(breaker, upstream)
        clock.advance(29.9)
        assert breaker.state == BreakerState.OPEN


# =============================================================================
# Half-Open Tests
# =============================================================================


class TestHalfOpen:
    """Tests for the single trial call after the reset timeout."""

    async def test_half_open_after_reset_timeout(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        await trip(breaker, upstream)
        clock.advance(30)
        assert breaker.state == BreakerState.HALF_OPEN

    async def test_trial_success_closes(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        await trip(breaker, upstream)
        clock.advance(30)
        upstream.side_effect = None

        assert await breaker.call("query") == "ok"
        assert breaker.state == BreakerState.CLOSED
        assert breaker.stats()["failures"] == 0

    async def test_trial_failure_reopens(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        await trip(breaker, upstream)
        clock.advance(30)

        with pytest.raises(UpstreamServerError):
            await breaker.call("query")

        assert breaker.state == BreakerState.OPEN
        clock.advance(29)
        assert breaker.state == BreakerState.OPEN
        clock.advance(1)
        assert breaker.state == BreakerState.HALF_OPEN

    async def test_only_one_trial_in_flight(
        self, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        release = asyncio.Event()

        async def slow(*args: object, **kwargs: object) -> str:
            await release.wait()
            return "ok"

        guarded = AsyncMock(side_effect=UpstreamServerError("boom"))
        breaker = CircuitBreaker(guarded, volume_threshold=1, timeout=5, clock=clock)
        with pytest.raises(UpstreamServerError):
            await breaker.call()
        assert breaker.state == BreakerState.OPEN

        clock.advance(30)
        guarded.side_effect = slow
        trial = asyncio.create_task(breaker.call())
        await asyncio.sleep(0)

        with pytest.raises(CircuitOpenError):
            await breaker.call()

        release.set()
        assert await trial == "ok"
        assert breaker.state == BreakerState.CLOSED

    async def test_cancelled_trial_frees_the_slot(self, clock: FakeClock) -> None:
        never = asyncio.Event()

        async def hang(*args: object, **kwargs: object) -> str:
            await never.wait()
            return "ok"

        guarded = AsyncMock(side_effect=UpstreamServerError("boom"))
        breaker = CircuitBreaker(guarded, volume_threshold=1, timeout=5, clock=clock)
        with pytest.raises(UpstreamServerError):
            await breaker.call()

        clock.advance(30)
        guarded.side_effect = hang
        trial = asyncio.create_task(breaker.call())
        await asyncio.sleep(0)
        trial.cancel()
        with pytest.raises(asyncio.CancelledError):
            await trial

        guarded.side_effect = None
        guarded.return_value = "ok"
        assert await breaker.call() == "ok"
        assert breaker.state == BreakerState.CLOSED


# =============================================================================
# Timeout Tests
# =============================================================================


class TestTimeout:
    """Tests for the hard per-call deadline."""

    async def test_slow_call_times_out(self, clock: FakeClock) -> None:
        async def slow(*args: object, **kwargs: object) -> str:
            await asyncio.sleep(1)
            return "late"

        breaker = CircuitBreaker(slow, name="slow", timeout=0.05, clock=clock)

        with pytest.raises(ProviderTimeoutError) as exc_info:
            await breaker.call()

        assert exc_info.value.message == "Timed out after 0.05s"
        assert breaker.stats()["timeouts"] == 1

    async def test_timeouts_open_the_circuit(self, clock: FakeClock) -> None:
        async def slow(*args: object, **kwargs: object) -> str:
            await asyncio.sleep(1)
            return "late"

        breaker = CircuitBreaker(slow, timeout=0.01, volume_threshold=2, clock=clock)
        for _ in range(2):
            with pytest.raises(ProviderTimeoutError):
                await breaker.call()

        assert breaker.state == BreakerState.OPEN


# =============================================================================
# Fallback, Listener and Metrics Tests
# =============================================================================


class TestFallback:
    """Tests for the optional fallback."""

    async def test_fallback_on_failure(self, upstream: AsyncMock, clock: FakeClock) -> None:
        fallback = AsyncMock(return_value="cached")
        error = UpstreamServerError("boom")
        upstream.side_effect = error
        breaker = CircuitBreaker(upstream, fallback=fallback, clock=clock)

        assert await breaker.call("hobbit", limit=5) == "cached"
        fallback.assert_awaited_once_with("hobbit", error=error, limit=5)
        assert breaker.stats()["fallbacks"] == 1

    async def test_fallback_on_reject(self, upstream: AsyncMock, clock: FakeClock) -> None:
        fallback = AsyncMock(return_value="cached")
        upstream.side_effect = UpstreamServerError("boom")
        breaker = CircuitBreaker(
            upstream, fallback=fallback, volume_threshold=1, clock=clock
        )
        await breaker.call()
        upstream.reset_mock()

        assert await breaker.call() == "cached"
        upstream.assert_not_awaited()
        assert isinstance(fallback.await_args.kwargs["error"], CircuitOpenError)


class TestEvents:
    """Tests for listeners and metrics."""

    async def test_listeners_receive_transitions(
        self, breaker: CircuitBreaker, upstream: AsyncMock, clock: FakeClock
    ) -> None:
        events: list[BreakerEvent] = []
        breaker.add_listener(events.append)

        await trip(breaker, upstream)
        with pytest.raises(CircuitOpenError):
            await breaker.call()
        clock.advance(30)
        upstream.side_effect = None
        await breaker.call()

        kinds = [event.kind for event in events]
        assert kinds.count("failure") == 5
        assert kinds[5:] == ["open", "reject", "half_open", "success", "close"]

    async def test_failing_listener_is_isolated(
        self, breaker: CircuitBreaker
    ) -> None:
        def broken(event: BreakerEvent) -> None:
            raise RuntimeError("listener bug")

        breaker.add_listener(broken)
        assert await breaker.call() == "ok"

    async def test_metrics_recorded(self, upstream: AsyncMock, clock: FakeClock) -> None:
        metrics = SearchMetrics()
        breaker = CircuitBreaker(upstream, volume_threshold=2, metrics=metrics, clock=clock)
        upstream.side_effect = RateLimitedError("slow down")

        for _ in range(2):
            with pytest.raises(RateLimitedError):
                await breaker.call()

        assert metrics.circuit_breaker_opens == 1
        assert metrics.errors["rate_limit"] == 2

    def test_categorize_error(self) -> None:
        assert categorize_error(ProviderTimeoutError()) == "timeout"
        assert categorize_error(RateLimitedError()) == "rate_limit"
        assert categorize_error(UpstreamServerError()) == "server_error"
        assert categorize_error(RuntimeError()) == "other"


class TestStatsAndReset:
    """Tests for stats snapshots and manual reset."""

    async def test_stats_shape(self, breaker: CircuitBreaker) -> None:
        await breaker.call()
        stats = breaker.stats()

        assert stats["name"] == "google_books_search"
        assert stats["state"] == "closed"
        assert set(stats["percentiles"]) == {"p50", "p90", "p99"}

    async def test_reset_closes(
        self, breaker: CircuitBreaker, upstream: AsyncMock
    ) -> None:
        await trip(breaker, upstream)
        breaker.reset()

        assert breaker.state == BreakerState.CLOSED
        assert breaker.stats()["failures"] == 0
        assert "state=closed" in repr(breaker)
