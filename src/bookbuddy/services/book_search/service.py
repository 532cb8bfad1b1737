"""BookSearchService - orchestrates providers, breakers and the search cache.

Per request:
    validate -> cache lookup -> (hit: return)
             -> breaker-guarded provider call -> normalize -> cache write -> return
    breaker open -> stale cache lookup -> (hit: return stale) -> (miss: raise)

The service is built once at startup and stored on ``app.state``; routes
receive it through a FastAPI dependency.
"""

from typing import Any

import structlog

from bookbuddy.config import Settings
from bookbuddy.core.exceptions import (
    CircuitOpenError,
    HydrateFailedError,
    SearchFailedError,
    ServiceUnavailableError,
    ValidationError,
)
from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.services.book_search.cache_manager import CacheManager
from bookbuddy.services.book_search.circuit_breaker import BreakerListener, CircuitBreaker
from bookbuddy.services.book_search.normalizer import normalize_search_results
from bookbuddy.services.book_search.providers import ProviderRegistry, validate_query
from bookbuddy.services.book_search.providers.base import DEFAULT_LIMIT
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    ProviderSearchResponse,
    QueryType,
    SearchOutcome,
)

logger = structlog.get_logger(__name__)

STALE_NOTICE = "Service temporarily unavailable, showing cached results"


def _query_type(value: QueryType | str) -> QueryType:
    try:
        return QueryType(value)
    except ValueError:
        raise ValidationError(f"Unsupported query type: {value}", field="type") from None


def _search_filters(query_type: QueryType, limit: int, offset: int) -> dict[str, Any]:
    return {"type": query_type.value, "limit": limit, "offset": offset}


class BookSearchService:
    """Entry point for book search and detail lookups."""

    def __init__(
        self,
        registry: ProviderRegistry,
        cache: CacheManager,
        metrics: SearchMetrics | None = None,
        *,
        breaker_options: dict[str, Any] | None = None,
        breaker_listeners: list[BreakerListener] | None = None,
    ) -> None:
        """Initialize the service.

        Args:
            registry: Providers available for search
            cache: Two-tier search cache
            metrics: Metrics sink shared with the cache and breakers
            breaker_options: Keyword arguments for every CircuitBreaker
            breaker_listeners: Callbacks attached to every breaker
        """
        self.registry = registry
        self.cache = cache
        self.metrics = metrics or cache.metrics
        self.breakers: dict[BookProvider, CircuitBreaker] = {
            provider.name: CircuitBreaker(
                provider.search,
                name=f"{provider.name.value}_search",
                metrics=self.metrics,
                listeners=breaker_listeners or (),
                **(breaker_options or {}),
            )
            for provider in registry
        }

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        registry: ProviderRegistry,
        cache: CacheManager,
        metrics: SearchMetrics | None = None,
    ) -> "BookSearchService":
        return cls(
            registry,
            cache,
            metrics,
            breaker_options={
                "timeout": settings.breaker_timeout,
                "error_threshold_percentage": settings.breaker_error_threshold_percentage,
                "reset_timeout": settings.breaker_reset_timeout,
                "rolling_count_timeout": settings.breaker_rolling_count_timeout,
                "rolling_count_buckets": settings.breaker_rolling_count_buckets,
                "volume_threshold": settings.breaker_volume_threshold,
            },
        )

    # -------------------------------------------------------------------------
    # Search
    # -------------------------------------------------------------------------

    async def search(
        self,
        query: str,
        *,
        query_type: QueryType | str = QueryType.GENERAL,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        provider: BookProvider | str = BookProvider.GOOGLE_BOOKS,
        use_cache: bool = True,
    ) -> SearchOutcome:
        """Search one catalog, through the cache unless told otherwise.

        Args:
            query: Free-text query (2-500 characters after trimming)
            query_type: general, isbn, title or author
            limit: Page size
            offset: Index of the first result
            provider: Catalog to search
            use_cache: Skip both cache reads and writes when False

        Returns:
            SearchOutcome with normalized results

        Raises:
            ValidationError: Bad query or query type
            UnsupportedProviderError: Provider is not registered
            ServiceUnavailableError: Breaker open and nothing cached
            SearchFailedError: Provider call failed
        """
        self.metrics.record_search()

        normalized_query = validate_query(query)
        query_type = _query_type(query_type)
        search_provider = self.registry.get(provider)
        provider_name = search_provider.name
        breaker = self.breakers[provider_name]
        filters = _search_filters(query_type, limit, offset)

        fetched: ProviderSearchResponse | None = None

        async def fetch() -> list[CanonicalSearchResult]:
            nonlocal fetched
            response = await breaker.call(
                normalized_query, limit=limit, offset=offset, query_type=query_type
            )
            self.metrics.record_provider_call(provider_name.value, response.latency_ms)
            fetched = response
            return normalize_search_results(response.results, provider_name)

        try:
            if use_cache:
                results = await self.cache.get_with_lock(
                    normalized_query, provider_name, fetch, filters
                )
            else:
                results = await fetch()
        except CircuitOpenError as e:
            return await self._stale_or_raise(normalized_query, provider_name, filters, e)
        except ValidationError:
            raise
        except Exception as e:
            logger.warning(
                "search_failed",
                provider=provider_name.value,
                query=normalized_query,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise SearchFailedError(e) from e

        if fetched is None:
            logger.info(
                "search_completed",
                provider=provider_name.value,
                query=normalized_query,
                results=len(results),
                from_cache=True,
            )
            return SearchOutcome(
                results=results,
                total_count=len(results),
                provider=provider_name,
                query=normalized_query,
                from_cache=True,
            )

        logger.info(
            "search_completed",
            provider=provider_name.value,
            query=normalized_query,
            results=len(results),
            from_cache=False,
            latency_ms=round(fetched.latency_ms, 1),
        )
        return SearchOutcome(
            results=results,
            total_count=fetched.total_count,
            provider=provider_name,
            query=normalized_query,
            from_cache=False,
            latency_ms=fetched.latency_ms,
        )

    async def _stale_or_raise(
        self,
        query: str,
        provider: BookProvider,
        filters: dict[str, Any],
        error: CircuitOpenError,
    ) -> SearchOutcome:
        stale = await self.cache.get(query, provider, filters, include_expired=True)
        if stale is None:
            logger.error("search_unavailable", provider=provider.value, query=query)
            raise ServiceUnavailableError(
                f"Search failed: {error.message}",
                details={"provider": provider.value, "cause_code": error.code},
            ) from error

        logger.warning(
            "search_served_stale",
            provider=provider.value,
            query=query,
            results=len(stale),
        )
        return SearchOutcome(
            results=stale,
            total_count=len(stale),
            provider=provider,
            query=query,
            from_cache=True,
            stale=True,
            notice=STALE_NOTICE,
        )

    # -------------------------------------------------------------------------
    # Hydrate
    # -------------------------------------------------------------------------

    async def hydrate(
        self,
        provider_id: str,
        provider: BookProvider | str = BookProvider.GOOGLE_BOOKS,
    ) -> CanonicalSearchResult:
        """Fetch full details for one record. Not cached.

        Raises:
            UnsupportedProviderError: Provider is not registered
            ValidationError: Empty provider id
            HydrateFailedError: Provider lookup failed (status of the cause kept)
        """
        search_provider = self.registry.get(provider)
        if not provider_id or not provider_id.strip():
            raise ValidationError("Provider ID is required", field="provider_id")

        try:
            return await search_provider.hydrate(provider_id.strip())
        except Exception as e:
            logger.warning(
                "hydrate_failed",
                provider=search_provider.name.value,
                provider_id=provider_id,
                error=str(e),
            )
            raise HydrateFailedError(e) from e

    # -------------------------------------------------------------------------
    # Maintenance
    # -------------------------------------------------------------------------

    async def invalidate_cache(
        self,
        query: str,
        provider: BookProvider | str = BookProvider.GOOGLE_BOOKS,
        *,
        query_type: QueryType | str = QueryType.GENERAL,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
    ) -> None:
        """Drop one cached search from both tiers."""
        search_provider = self.registry.get(provider)
        filters = _search_filters(_query_type(query_type), limit, offset)
        await self.cache.invalidate(query.strip(), search_provider.name, filters)

    async def clean_expired_cache(self) -> int:
        return await self.cache.clean_expired()

    def get_circuit_breaker_stats(self) -> dict[str, dict[str, Any]]:
        return {name.value: breaker.stats() for name, breaker in self.breakers.items()}

    def get_metrics(self) -> dict[str, Any]:
        return self.metrics.snapshot()

    async def close(self) -> None:
        await self.registry.close()
