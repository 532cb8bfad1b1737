"""External book search aggregation.

Queries third-party catalogs, normalizes their records into one shape,
guards each catalog with a circuit breaker and caches results in two tiers.
"""

from bookbuddy.services.book_search.cache_manager import CacheManager
from bookbuddy.services.book_search.circuit_breaker import (
    BreakerEvent,
    BreakerState,
    CircuitBreaker,
)
from bookbuddy.services.book_search.providers import (
    BookSearchProvider,
    GoogleBooksProvider,
    OpenLibraryProvider,
    ProviderRegistry,
    build_default_registry,
)
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    ProviderSearchResponse,
    QueryType,
    SearchOutcome,
)
from bookbuddy.services.book_search.service import BookSearchService
from bookbuddy.services.book_search.stores import CacheEntry, DatabaseSearchCacheStore

__all__ = [
    "BookProvider",
    "BookSearchProvider",
    "BookSearchService",
    "BreakerEvent",
    "BreakerState",
    "CacheEntry",
    "CacheManager",
    "CanonicalSearchResult",
    "CircuitBreaker",
    "DatabaseSearchCacheStore",
    "GoogleBooksProvider",
    "OpenLibraryProvider",
    "ProviderRegistry",
    "ProviderSearchResponse",
    "QueryType",
    "SearchOutcome",
    "build_default_registry",
]
