"""Failure-rate circuit breaker for provider calls.

One breaker wraps one provider's search function:

- closed: calls pass through, completions land in a rolling bucketed window
- open: calls are rejected without touching upstream
- half_open: after ``reset_timeout`` one trial call decides between closed and open

Counters are only touched in synchronous code between awaits, so every update
is atomic on the event loop without a lock.
"""

from __future__ import annotations

import asyncio
import statistics
import time
from collections import deque
from collections.abc import Awaitable, Callable, Iterable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

import structlog

from bookbuddy.core.exceptions import (
    CircuitOpenError,
    ProviderTimeoutError,
    RateLimitedError,
    UpstreamServerError,
    ValidationError,
)
from bookbuddy.core.metrics import SearchMetrics

logger = structlog.get_logger(__name__)


class BreakerState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


@dataclass(frozen=True)
class BreakerEvent:
    """Something the breaker observed or did."""

    name: str
    kind: str  # open, half_open, close, success, failure, timeout, reject, fallback
    error: BaseException | None = None


BreakerListener = Callable[[BreakerEvent], None]


@dataclass
class _Bucket:
    index: int
    successes: int = 0
    failures: int = 0
    timeouts: int = 0
    rejects: int = 0
    fallbacks: int = 0
    latencies: list[float] = field(default_factory=list)


def categorize_error(error: BaseException) -> str:
    """Metrics category for a failed provider call."""
    if isinstance(error, ProviderTimeoutError):
        return "timeout"
    if isinstance(error, RateLimitedError):
        return "rate_limit"
    if isinstance(error, UpstreamServerError):
        return "server_error"
    return "other"


def _percentile(ordered: list[float], q: float) -> float | None:
    if not ordered:
        return None
    return ordered[min(len(ordered) - 1, int(q * len(ordered)))]


class CircuitBreaker:
    """Rolling-window circuit breaker with timeout and optional fallback."""

    def __init__(
        self,
        func: Callable[..., Awaitable[Any]],
        *,
        name: str = "book_search",
        timeout: float = 2.5,
        error_threshold_percentage: float = 50.0,
        reset_timeout: float = 30.0,
        rolling_count_timeout: float = 10.0,
        rolling_count_buckets: int = 10,
        volume_threshold: int = 5,
        error_filter: Callable[[BaseException], bool] | None = None,
        fallback: Callable[..., Awaitable[Any]] | None = None,
        listeners: Iterable[BreakerListener] = (),
        metrics: SearchMetrics | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the breaker.

        Args:
            func: Async function to guard
            name: Breaker name used in logs and errors
            timeout: Hard per-call deadline in seconds
            error_threshold_percentage: Failure percentage that opens the circuit
            reset_timeout: Seconds to stay open before the half-open trial
            rolling_count_timeout: Length of the statistics window in seconds
            rolling_count_buckets: Number of buckets the window is split into
            volume_threshold: Minimum completions in the window before opening
            error_filter: Returns True for errors that should not count as failures
            fallback: Called as ``fallback(*args, error=err, **kwargs)`` on reject or failure
            listeners: Callbacks receiving every BreakerEvent
            metrics: Metrics sink for opens and categorized errors
            clock: Monotonic time source in seconds
        """
        self._func = func
        self.name = name
        self.timeout = timeout
        self.error_threshold_percentage = error_threshold_percentage
        self.reset_timeout = reset_timeout
        self.rolling_count_timeout = rolling_count_timeout
        self.rolling_count_buckets = rolling_count_buckets
        self.volume_threshold = volume_threshold
        self.error_filter = error_filter or (lambda e: isinstance(e, ValidationError))
        self.fallback = fallback
        self.metrics = metrics
        self._listeners: list[BreakerListener] = list(listeners)
        self._clock = clock

        self._state = BreakerState.CLOSED
        self._opened_at: float | None = None
        self._trial_in_flight = False
        self._buckets: deque[_Bucket] = deque()

    # -------------------------------------------------------------------------
    # Public API
    # -------------------------------------------------------------------------

    @property
    def state(self) -> BreakerState:
        self._maybe_half_open()
        return self._state

    @property
    def opened_at(self) -> float | None:
        return self._opened_at

    def add_listener(self, listener: BreakerListener) -> None:
        self._listeners.append(listener)

    async def call(self, *args: Any, **kwargs: Any) -> Any:
        """Invoke the guarded function.

        Raises:
            CircuitOpenError: The circuit is open (and no fallback is set)
            ProviderTimeoutError: The call exceeded ``timeout`` (and no fallback is set)
        """
        admitted, is_trial = self._admit()
        if not admitted:
            self._bucket().rejects += 1
            error = CircuitOpenError(self.name)
            self._emit("reject", error)
            return await self._fallback_or_raise(error, args, kwargs)

        started = self._clock()
        try:
            result = await asyncio.wait_for(self._func(*args, **kwargs), self.timeout)
        except TimeoutError as e:
            error = ProviderTimeoutError(
                f"Timed out after {self.timeout}s", provider=self.name
            )
            error.__cause__ = e
            self._on_timeout(error, is_trial)
            return await self._fallback_or_raise(error, args, kwargs)
        except asyncio.CancelledError:
            if is_trial:
                self._trial_in_flight = False
            raise
        except Exception as e:
            if self.error_filter(e):
                if is_trial:
                    self._trial_in_flight = False
                raise
            self._on_failure(e, is_trial)
            return await self._fallback_or_raise(e, args, kwargs)

        self._on_success((self._clock() - started) * 1000, is_trial)
        return result

    def stats(self) -> dict[str, Any]:
        """Snapshot of the state machine and rolling window."""
        counts = self._window_counts()
        latencies = sorted(
            latency for bucket in self._live_buckets() for latency in bucket.latencies
        )
        return {
            "name": self.name,
            "state": self.state.value,
            "failures": counts["failures"],
            "successes": counts["successes"],
            "timeouts": counts["timeouts"],
            "rejects": counts["rejects"],
            "fallbacks": counts["fallbacks"],
            "latency_mean": statistics.fmean(latencies) if latencies else None,
            "percentiles": {
                "p50": _percentile(latencies, 0.5),
                "p90": _percentile(latencies, 0.9),
                "p99": _percentile(latencies, 0.99),
            },
        }

    def reset(self) -> None:
        """Force the breaker closed and clear its window."""
        self._buckets.clear()
        self._trial_in_flight = False
        if self._state != BreakerState.CLOSED:
            self._state = BreakerState.CLOSED
            self._opened_at = None
            self._emit("close")

    # -------------------------------------------------------------------------
    # State Machine
    # -------------------------------------------------------------------------

    def _admit(self) -> tuple[bool, bool]:
        """Decide whether a call may run. Returns (admitted, is_trial)."""
        self._maybe_half_open()
        if self._state == BreakerState.OPEN:
            return False, False
        if self._state == BreakerState.HALF_OPEN:
            if self._trial_in_flight:
                return False, False
            self._trial_in_flight = True
            return True, True
        return True, False

    def _maybe_half_open(self) -> None:
        if (
            self._state == BreakerState.OPEN
            and self._opened_at is not None
            and self._clock() - self._opened_at >= self.reset_timeout
        ):
            self._state = BreakerState.HALF_OPEN
            self._trial_in_flight = False
            logger.info("circuit_breaker_half_open", breaker=self.name)
            self._emit("half_open")

    def _open(self, reason: str) -> None:
        self._state = BreakerState.OPEN
        self._opened_at = self._clock()
        self._trial_in_flight = False
        logger.warning("circuit_breaker_open", breaker=self.name, reason=reason)
        if self.metrics is not None:
            self.metrics.record_circuit_breaker_open()
        self._emit("open")

    def _close(self) -> None:
        self._state = BreakerState.CLOSED
        self._opened_at = None
        self._trial_in_flight = False
        self._buckets.clear()
        logger.info("circuit_breaker_closed", breaker=self.name)
        self._emit("close")

    def _on_success(self, latency_ms: float, is_trial: bool) -> None:
        bucket = self._bucket()
        bucket.successes += 1
        bucket.latencies.append(latency_ms)
        self._emit("success")
        if is_trial:
            self._close()

    def _on_failure(self, error: Exception, is_trial: bool) -> None:
        self._bucket().failures += 1
        logger.warning(
            "circuit_breaker_call_failed",
            breaker=self.name,
            error=str(error),
            error_type=type(error).__name__,
        )
        if self.metrics is not None:
            self.metrics.record_error(categorize_error(error))
        self._emit("failure", error)
        self._after_failure(is_trial)

    def _on_timeout(self, error: ProviderTimeoutError, is_trial: bool) -> None:
        self._bucket().timeouts += 1
        logger.warning("circuit_breaker_timeout", breaker=self.name, timeout=self.timeout)
        if self.metrics is not None:
            self.metrics.record_error("timeout")
        self._emit("timeout", error)
        self._after_failure(is_trial)

    def _after_failure(self, is_trial: bool) -> None:
        if is_trial:
            self._open("half_open_trial_failed")
        elif self._state == BreakerState.CLOSED and self._threshold_crossed():
            self._open("error_threshold_exceeded")

    def _threshold_crossed(self) -> bool:
        counts = self._window_counts()
        bad = counts["failures"] + counts["timeouts"]
        total = bad + counts["successes"]
        if total < self.volume_threshold:
            return False
        return bad / total * 100 >= self.error_threshold_percentage

    async def _fallback_or_raise(
        self, error: Exception, args: tuple[Any, ...], kwargs: dict[str, Any]
    ) -> Any:
        if self.fallback is None:
            raise error
        self._bucket().fallbacks += 1
        self._emit("fallback", error)
        return await self.fallback(*args, error=error, **kwargs)

    # -------------------------------------------------------------------------
    # Rolling Window
    # -------------------------------------------------------------------------

    @property
    def _bucket_width(self) -> float:
        return self.rolling_count_timeout / self.rolling_count_buckets

    def _current_index(self) -> int:
        return int(self._clock() // self._bucket_width)

    def _live_buckets(self) -> list[_Bucket]:
        oldest = self._current_index() - self.rolling_count_buckets + 1
        while self._buckets and self._buckets[0].index < oldest:
            self._buckets.popleft()
        return list(self._buckets)

    def _bucket(self) -> _Bucket:
        index = self._current_index()
        self._live_buckets()
        if not self._buckets or self._buckets[-1].index != index:
            self._buckets.append(_Bucket(index=index))
        return self._buckets[-1]

    def _window_counts(self) -> dict[str, int]:
        counts = dict.fromkeys(
            ("successes", "failures", "timeouts", "rejects", "fallbacks"), 0
        )
        for bucket in self._live_buckets():
            counts["successes"] += bucket.successes
            counts["failures"] += bucket.failures
            counts["timeouts"] += bucket.timeouts
            counts["rejects"] += bucket.rejects
            counts["fallbacks"] += bucket.fallbacks
        return counts

    def _emit(self, kind: str, error: BaseException | None = None) -> None:
        event = BreakerEvent(name=self.name, kind=kind, error=error)
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("circuit_breaker_listener_failed", breaker=self.name, kind=kind)

    def __repr__(self) -> str:
        counts = self._window_counts()
        return (
            f"CircuitBreaker({self.name}, state={self._state.value}, "
            f"failures={counts['failures']}, timeouts={counts['timeouts']}, "
            f"successes={counts['successes']})"
        )
