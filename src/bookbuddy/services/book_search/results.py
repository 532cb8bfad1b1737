"""Canonical data shapes shared by providers, cache and the search service.

Every provider-specific payload is mapped into ``CanonicalSearchResult``
before it is cached or returned, so nothing past the normalizer needs to know
which catalog a record came from.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any


class BookProvider(str, Enum):
    """External catalogs the search layer can query."""

    GOOGLE_BOOKS = "google_books"
    OPEN_LIBRARY = "open_library"


class QueryType(str, Enum):
    """How a query string should be interpreted by the catalog."""

    GENERAL = "general"
    ISBN = "isbn"
    TITLE = "title"
    AUTHOR = "author"


UNKNOWN_TITLE = "Unknown Title"
UNKNOWN_AUTHOR = "Unknown Author"


@dataclass
class CanonicalSearchResult:
    """Provider-agnostic book record.

    Only ``provider``, ``provider_id`` and ``title`` are guaranteed; every
    other field is None when the catalog did not supply it.
    """

    provider_id: str
    provider: BookProvider
    title: str = UNKNOWN_TITLE
    author: str = UNKNOWN_AUTHOR
    subtitle: str | None = None
    isbn10: str | None = None
    isbn13: str | None = None
    publisher: str | None = None
    published_date: str | None = None
    page_count: int | None = None
    description: str | None = None
    categories: list[str] | None = None
    language: str | None = None
    cover_image_url: str | None = None
    format: str | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert to JSON-serializable dict for caching."""
        return {
            "provider_id": self.provider_id,
            "provider": self.provider.value,
            "title": self.title,
            "author": self.author,
            "subtitle": self.subtitle,
            "isbn10": self.isbn10,
            "isbn13": self.isbn13,
            "publisher": self.publisher,
            "published_date": self.published_date,
            "page_count": self.page_count,
            "description": self.description,
            "categories": self.categories,
            "language": self.language,
            "cover_image_url": self.cover_image_url,
            "format": self.format,
            "raw": self.raw,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "CanonicalSearchResult":
        """Create from cached dict."""
        return cls(
            provider_id=data.get("provider_id") or "",
            provider=BookProvider(data["provider"]),
            title=data.get("title") or UNKNOWN_TITLE,
            author=data.get("author") or UNKNOWN_AUTHOR,
            subtitle=data.get("subtitle"),
            isbn10=data.get("isbn10"),
            isbn13=data.get("isbn13"),
            publisher=data.get("publisher"),
            published_date=data.get("published_date"),
            page_count=data.get("page_count"),
            description=data.get("description"),
            categories=data.get("categories"),
            language=data.get("language"),
            cover_image_url=data.get("cover_image_url"),
            format=data.get("format"),
            raw=data.get("raw") or {},
        )


@dataclass
class ProviderSearchResponse:
    """Raw page of records returned by one provider search call."""

    results: list[dict[str, Any]]
    total_count: int
    provider: BookProvider
    query: str
    latency_ms: float


@dataclass
class SearchOutcome:
    """What the search service hands back to its caller."""

    results: list[CanonicalSearchResult]
    total_count: int
    provider: BookProvider
    query: str
    from_cache: bool = False
    stale: bool = False
    latency_ms: float | None = None
    notice: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {
            "results": [result.to_dict() for result in self.results],
            "total_count": self.total_count,
            "provider": self.provider.value,
            "query": self.query,
            "from_cache": self.from_cache,
            "stale": self.stale,
        }
        if self.latency_ms is not None:
            data["latency_ms"] = self.latency_ms
        if self.notice:
            data["notice"] = self.notice
        return data
