"""Contract every catalog provider implements.

Providers are selected through ``ProviderRegistry`` rather than subclassing:
each catalog is an independent class that satisfies this protocol.
"""

from typing import Any, Protocol, runtime_checkable

from bookbuddy.core.exceptions import ValidationError
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    ProviderSearchResponse,
    QueryType,
)

MIN_QUERY_LENGTH = 2
MAX_QUERY_LENGTH = 500

DEFAULT_LIMIT = 20


def validate_query(query: Any) -> str:
    """Return the trimmed query or raise ValidationError.

    Raises:
        ValidationError: If the query is not a string of 2-500 characters
    """
    if not isinstance(query, str):
        raise ValidationError("Query must be a string", field="query")

    trimmed = query.strip()
    if len(trimmed) < MIN_QUERY_LENGTH:
        raise ValidationError(
            f"Query must be at least {MIN_QUERY_LENGTH} characters", field="query"
        )
    if len(trimmed) > MAX_QUERY_LENGTH:
        raise ValidationError(
            f"Query must be at most {MAX_QUERY_LENGTH} characters", field="query"
        )
    return trimmed


@runtime_checkable
class BookSearchProvider(Protocol):
    """One external catalog API."""

    name: BookProvider
    max_limit: int

    async def search(
        self,
        query: str,
        *,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        query_type: QueryType = QueryType.GENERAL,
    ) -> ProviderSearchResponse: ...

    def normalize(self, raw: dict[str, Any]) -> CanonicalSearchResult: ...

    async def hydrate(self, provider_id: str) -> CanonicalSearchResult: ...

    async def close(self) -> None: ...
