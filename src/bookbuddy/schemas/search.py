"""Book search API schemas.

Response models mirror the service dataclasses; the raw provider payload is
only included when explicitly requested.
"""

from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from bookbuddy.schemas.common import BaseSchema
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    SearchOutcome,
)

# =============================================================================
# Search Results
# =============================================================================


class BookSearchResultItem(BaseSchema):
    """Single normalized book record."""

    provider_id: str = Field(..., description="Catalog-specific identifier")
    provider: BookProvider = Field(..., description="Catalog the record came from")
    title: str = Field(..., description="Book title")
    author: str = Field(..., description="Author names, comma separated")
    subtitle: str | None = None
    isbn10: str | None = None
    isbn13: str | None = None
    publisher: str | None = None
    published_date: str | None = Field(None, description="YYYY-MM-DD when known")
    page_count: int | None = None
    description: str | None = None
    categories: list[str] | None = Field(None, description="Up to 5 categories")
    language: str | None = None
    cover_image_url: str | None = None
    format: str | None = None
    raw: dict[str, Any] | None = Field(
        None, description="Original provider payload (only with include_raw)"
    )

    model_config = ConfigDict(
        json_schema_extra={
            "example": {
                "provider_id": "pD6arNyKyi8C",
                "provider": "google_books",
                "title": "The Hobbit",
                "author": "J.R.R. Tolkien",
                "isbn13": "9780547928227",
                "published_date": "2012-09-18",
                "page_count": 300,
                "categories": ["Fiction"],
                "language": "en",
            }
        }
    )

    @classmethod
    def from_result(
        cls, result: CanonicalSearchResult, *, include_raw: bool = False
    ) -> "BookSearchResultItem":
        data = result.to_dict()
        if not include_raw:
            data["raw"] = None
        return cls.model_validate(data)


class BookSearchResponse(BaseModel):
    """Search results with cache metadata."""

    results: list[BookSearchResultItem]
    total_count: int = Field(..., description="Total matches reported upstream")
    provider: BookProvider
    query: str
    from_cache: bool = Field(..., description="Served without calling the provider")
    stale: bool = Field(False, description="Served from cache while upstream is down")
    latency_ms: float | None = Field(None, description="Provider call latency")
    notice: str | None = Field(None, description="Degradation notice for the client")

    @classmethod
    def from_outcome(
        cls, outcome: SearchOutcome, *, include_raw: bool = False
    ) -> "BookSearchResponse":
        return cls(
            results=[
                BookSearchResultItem.from_result(result, include_raw=include_raw)
                for result in outcome.results
            ],
            total_count=outcome.total_count,
            provider=outcome.provider,
            query=outcome.query,
            from_cache=outcome.from_cache,
            stale=outcome.stale,
            latency_ms=outcome.latency_ms,
            notice=outcome.notice,
        )


# =============================================================================
# Operations
# =============================================================================


class CircuitBreakerStats(BaseModel):
    """Rolling-window statistics of one provider breaker."""

    name: str
    state: str
    failures: int
    successes: int
    timeouts: int
    rejects: int
    fallbacks: int
    latency_mean: float | None = None
    percentiles: dict[str, float | None] = Field(default_factory=dict)


class SearchStatsResponse(BaseModel):
    """Breaker states and search metrics."""

    circuit_breakers: dict[str, CircuitBreakerStats]
    metrics: dict[str, Any]


class CacheInvalidationResponse(BaseModel):
    """Acknowledges a cache invalidation."""

    query: str
    provider: BookProvider
    invalidated: bool = True
