"""Book search endpoints.

Thin HTTP layer over BookSearchService: parse parameters, call the service,
shape the response. Errors raised by the service are rendered by the
application's BookBuddyError handler.
"""

from typing import Annotated

from fastapi import APIRouter, Query, status

from bookbuddy.core.logging import get_logger
from bookbuddy.dependencies import BookSearchServiceDep
from bookbuddy.schemas.common import ErrorResponse
from bookbuddy.schemas.search import (
    BookSearchResponse,
    BookSearchResultItem,
    CacheInvalidationResponse,
    CircuitBreakerStats,
    SearchStatsResponse,
)

logger = get_logger(__name__)

router = APIRouter()

ERROR_RESPONSES = {
    400: {"model": ErrorResponse, "description": "Invalid request"},
    429: {"model": ErrorResponse, "description": "Provider rate limit exceeded"},
    502: {"model": ErrorResponse, "description": "Provider error"},
    503: {"model": ErrorResponse, "description": "Provider unavailable, nothing cached"},
    504: {"model": ErrorResponse, "description": "Provider timed out"},
}


# =============================================================================
# Search Endpoints
# =============================================================================


@router.get(
    "/search",
    response_model=BookSearchResponse,
    status_code=status.HTTP_200_OK,
    summary="Search for books",
    description="Search an external catalog. Results are cached for repeated queries.",
    responses={200: {"description": "Search results"}, **ERROR_RESPONSES},
)
async def search_books(
    service: BookSearchServiceDep,
    q: Annotated[str, Query(max_length=500, description="Search query")],
    type: Annotated[str, Query(description="general, isbn, title or author")] = "general",
    limit: Annotated[int, Query(ge=1, le=100, description="Results per page")] = 20,
    offset: Annotated[int, Query(ge=0, description="Index of the first result")] = 0,
    provider: Annotated[str, Query(description="Catalog to search")] = "google_books",
    use_cache: Annotated[bool, Query(description="Read and write the cache")] = True,
    include_raw: Annotated[
        bool, Query(description="Include the raw provider payload")
    ] = False,
) -> BookSearchResponse:
    """Search books through the cache and circuit breaker."""
    outcome = await service.search(
        q,
        query_type=type,
        limit=limit,
        offset=offset,
        provider=provider,
        use_cache=use_cache,
    )
    return BookSearchResponse.from_outcome(outcome, include_raw=include_raw)


@router.get(
    "/search/stats",
    response_model=SearchStatsResponse,
    summary="Search statistics",
    description="Circuit breaker state per provider and search metrics.",
)
async def search_stats(service: BookSearchServiceDep) -> SearchStatsResponse:
    return SearchStatsResponse(
        circuit_breakers={
            name: CircuitBreakerStats(**stats)
            for name, stats in service.get_circuit_breaker_stats().items()
        },
        metrics=service.get_metrics(),
    )


@router.delete(
    "/search/cache",
    response_model=CacheInvalidationResponse,
    summary="Invalidate a cached search",
    responses={400: ERROR_RESPONSES[400]},
)
async def invalidate_search_cache(
    service: BookSearchServiceDep,
    q: Annotated[str, Query(min_length=1, max_length=500, description="Search query")],
    type: Annotated[str, Query(description="general, isbn, title or author")] = "general",
    limit: Annotated[int, Query(ge=1, le=100)] = 20,
    offset: Annotated[int, Query(ge=0)] = 0,
    provider: Annotated[str, Query(description="Catalog of the cached search")] = "google_books",
) -> CacheInvalidationResponse:
    await service.invalidate_cache(
        q, provider, query_type=type, limit=limit, offset=offset
    )
    logger.info("search_cache_invalidated", query=q, provider=provider)
    return CacheInvalidationResponse(
        query=q.strip(), provider=service.registry.get(provider).name
    )


@router.get(
    "/search/{provider}/{provider_id:path}",
    response_model=BookSearchResultItem,
    summary="Get book details",
    description="Fetch full details for one record from its catalog.",
    responses={404: {"model": ErrorResponse, "description": "Book not found"}, **ERROR_RESPONSES},
)
async def hydrate_book(
    service: BookSearchServiceDep,
    provider: str,
    provider_id: str,
    include_raw: Annotated[bool, Query()] = False,
) -> BookSearchResultItem:
    result = await service.hydrate(provider_id, provider)
    return BookSearchResultItem.from_result(result, include_raw=include_raw)
