"""Google Books API v1 provider.

See: https://developers.google.com/books/docs/v1/using
"""

import re
from typing import Any

import httpx
import structlog

from bookbuddy.config import Settings
from bookbuddy.services.book_search.normalizer import normalize_google_books
from bookbuddy.services.book_search.providers.base import DEFAULT_LIMIT, validate_query
from bookbuddy.services.book_search.providers.http import ProviderHTTPClient
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    ProviderSearchResponse,
    QueryType,
)

logger = structlog.get_logger(__name__)

_NON_ISBN_CHARS = re.compile(r"[^0-9X]")


def build_google_query(query: str, query_type: QueryType) -> str:
    """Apply Google's field prefixes for typed queries."""
    if query_type == QueryType.ISBN:
        return f"isbn:{_NON_ISBN_CHARS.sub('', query.upper())}"
    if query_type == QueryType.TITLE:
        return f"intitle:{query}"
    if query_type == QueryType.AUTHOR:
        return f"inauthor:{query}"
    return query


class GoogleBooksProvider:
    """Search and volume lookup against Google Books."""

    name = BookProvider.GOOGLE_BOOKS
    max_limit = 40

    def __init__(
        self,
        *,
        base_url: str = "https://www.googleapis.com/books/v1",
        api_key: str | None = None,
        timeout: float = 5.0,
        user_agent: str = "BookBuddy/1.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.api_key = api_key
        self.http = ProviderHTTPClient(
            provider=self.name.value,
            label="Google Books API",
            base_url=base_url,
            timeout=timeout,
            user_agent=user_agent,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleBooksProvider":
        api_key = settings.google_books_api_key
        return cls(
            base_url=settings.google_books_base_url,
            api_key=api_key.get_secret_value() if api_key else None,
            timeout=settings.google_books_timeout,
            user_agent=settings.provider_user_agent,
        )

    def _key_params(self) -> dict[str, Any]:
        return {"key": self.api_key} if self.api_key else {}

    async def search(
        self,
        query: str,
        *,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        query_type: QueryType = QueryType.GENERAL,
    ) -> ProviderSearchResponse:
        """Search volumes.

        Args:
            query: Free-text query (2-500 characters after trimming)
            limit: Page size, capped at 40
            offset: Index of the first result
            query_type: How to interpret the query

        Returns:
            ProviderSearchResponse with raw volume items
        """
        search_query = build_google_query(validate_query(query), QueryType(query_type))
        params = {
            "q": search_query,
            "maxResults": max(1, min(limit, self.max_limit)),
            "startIndex": max(0, offset),
            "printType": "books",
            "orderBy": "relevance",
            **self._key_params(),
        }

        data, latency_ms = await self.http.get_json("/volumes", params=params)
        items = data.get("items") or []

        logger.info(
            "provider_search_completed",
            provider=self.name.value,
            query=search_query,
            results=len(items),
            latency_ms=round(latency_ms, 1),
        )
        return ProviderSearchResponse(
            results=items,
            total_count=data.get("totalItems") or 0,
            provider=self.name,
            query=search_query,
            latency_ms=latency_ms,
        )

    def normalize(self, raw: dict[str, Any]) -> CanonicalSearchResult:
        return normalize_google_books(raw)

    async def hydrate(self, provider_id: str) -> CanonicalSearchResult:
        """Fetch one volume by its Google id.

        Raises:
            BookNotFoundError: If Google has no such volume
        """
        data, _ = await self.http.get_json(
            f"/volumes/{provider_id}",
            params=self._key_params(),
            not_found_id=provider_id,
        )
        return self.normalize(data)

    async def close(self) -> None:
        await self.http.close()
