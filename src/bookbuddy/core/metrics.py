"""In-process metrics for the book search subsystem.

Counters are plain integers mutated from the event loop thread, so no locking
is needed. Provider latency keeps the most recent samples per provider for
mean and percentile summaries.
"""

from __future__ import annotations

import statistics
from collections import Counter, defaultdict, deque
from dataclasses import dataclass, field
from typing import Any

LATENCY_SAMPLE_SIZE = 100

ERROR_CATEGORIES = ("timeout", "rate_limit", "server_error", "other")


def _percentile(samples: list[float], q: float) -> float | None:
    if not samples:
        return None
    ordered = sorted(samples)
    index = min(len(ordered) - 1, max(0, round(q * (len(ordered) - 1))))
    return ordered[index]


@dataclass
class SearchMetrics:
    """Counters and latency samples for search, cache and breaker events."""

    total_searches: int = 0
    cache_hits: Counter[str] = field(default_factory=Counter)
    cache_misses: int = 0
    circuit_breaker_opens: int = 0
    errors: Counter[str] = field(default_factory=Counter)
    provider_calls: Counter[str] = field(default_factory=Counter)
    provider_latency: defaultdict[str, deque[float]] = field(
        default_factory=lambda: defaultdict(lambda: deque(maxlen=LATENCY_SAMPLE_SIZE))
    )

    def record_search(self) -> None:
        self.total_searches += 1

    def record_cache_hit(self, tier: str) -> None:
        self.cache_hits[tier] += 1

    def record_cache_miss(self) -> None:
        self.cache_misses += 1

    def record_circuit_breaker_open(self) -> None:
        self.circuit_breaker_opens += 1

    def record_error(self, category: str) -> None:
        if category not in ERROR_CATEGORIES:
            category = "other"
        self.errors[category] += 1

    def record_provider_call(self, provider: str, latency_ms: float) -> None:
        self.provider_calls[provider] += 1
        self.provider_latency[provider].append(latency_ms)

    @property
    def cache_hit_rate(self) -> float:
        """Share of cache lookups that hit either tier (0.0~1.0)."""
        hits = sum(self.cache_hits.values())
        total = hits + self.cache_misses
        return hits / total if total > 0 else 0.0

    def latency_summary(self, provider: str) -> dict[str, float | None]:
        samples = list(self.provider_latency.get(provider, ()))
        return {
            "mean": statistics.fmean(samples) if samples else None,
            "p50": _percentile(samples, 0.5),
            "p90": _percentile(samples, 0.9),
            "p99": _percentile(samples, 0.99),
        }

    def snapshot(self) -> dict[str, Any]:
        """JSON-serializable view of every counter."""
        return {
            "total_searches": self.total_searches,
            "cache_hits": dict(self.cache_hits),
            "cache_misses": self.cache_misses,
            "cache_hit_rate": round(self.cache_hit_rate, 4),
            "circuit_breaker_opens": self.circuit_breaker_opens,
            "errors": {category: self.errors[category] for category in ERROR_CATEGORIES},
            "provider_calls": dict(self.provider_calls),
            "provider_latency_ms": {
                provider: self.latency_summary(provider)
                for provider in self.provider_latency
            },
        }

    def __repr__(self) -> str:
        return (
            f"SearchMetrics(searches={self.total_searches}, "
            f"hit_rate={self.cache_hit_rate:.1%}, "
            f"breaker_opens={self.circuit_breaker_opens})"
        )
