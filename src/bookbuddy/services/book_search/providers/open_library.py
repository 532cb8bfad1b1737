"""Open Library provider.

Search goes through ``/search.json``; hydrate reads the work record and then
resolves its author keys to names, since work records only carry keys.

See: https://openlibrary.org/dev/docs/api/search
"""

import asyncio
from typing import Any

import httpx
import structlog

from bookbuddy.config import Settings
from bookbuddy.core.exceptions import BookBuddyError
from bookbuddy.services.book_search.normalizer import (
    normalize_open_library,
    normalize_open_library_work,
)
from bookbuddy.services.book_search.providers.base import DEFAULT_LIMIT, validate_query
from bookbuddy.services.book_search.providers.http import ProviderHTTPClient
from bookbuddy.services.book_search.results import (
    BookProvider,
    CanonicalSearchResult,
    ProviderSearchResponse,
    QueryType,
)

logger = structlog.get_logger(__name__)

SEARCH_FIELDS = (
    "key,title,subtitle,author_name,first_publish_year,number_of_pages_median,"
    "cover_i,cover_edition_key,isbn,language,publisher,subject"
)

_QUERY_PARAMS = {
    QueryType.GENERAL: "q",
    QueryType.ISBN: "isbn",
    QueryType.TITLE: "title",
    QueryType.AUTHOR: "author",
}


def work_id(provider_id: str) -> str:
    """Accept either ``OL27448W`` or ``/works/OL27448W``."""
    return provider_id.strip().strip("/").rsplit("/", 1)[-1]


class OpenLibraryProvider:
    """Search and work lookup against Open Library."""

    name = BookProvider.OPEN_LIBRARY
    max_limit = 100

    def __init__(
        self,
        *,
        base_url: str = "https://openlibrary.org",
        timeout: float = 5.0,
        user_agent: str = "BookBuddy/1.0",
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.http = ProviderHTTPClient(
            provider=self.name.value,
            label="Open Library API",
            base_url=base_url,
            timeout=timeout,
            user_agent=user_agent,
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "OpenLibraryProvider":
        return cls(
            base_url=settings.openlibrary_base_url,
            timeout=settings.openlibrary_timeout,
            user_agent=settings.provider_user_agent,
        )

    async def search(
        self,
        query: str,
        *,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        query_type: QueryType = QueryType.GENERAL,
    ) -> ProviderSearchResponse:
        """Search works.

        Args:
            query: Free-text query (2-500 characters after trimming)
            limit: Page size, capped at 100
            offset: Index of the first result
            query_type: Which search field receives the query

        Returns:
            ProviderSearchResponse with raw search documents
        """
        trimmed = validate_query(query)
        query_type = QueryType(query_type)
        if query_type == QueryType.ISBN:
            trimmed = trimmed.replace("-", "").replace(" ", "")

        params: dict[str, Any] = {
            _QUERY_PARAMS[query_type]: trimmed,
            "limit": max(1, min(limit, self.max_limit)),
            "offset": max(0, offset),
            "fields": SEARCH_FIELDS,
        }

        data, latency_ms = await self.http.get_json("/search.json", params=params)
        docs = data.get("docs") or []

        logger.info(
            "provider_search_completed",
            provider=self.name.value,
            query=trimmed,
            query_type=query_type.value,
            results=len(docs),
            latency_ms=round(latency_ms, 1),
        )
        return ProviderSearchResponse(
            results=docs,
            total_count=data.get("numFound") or data.get("num_found") or 0,
            provider=self.name,
            query=trimmed,
            latency_ms=latency_ms,
        )

    def normalize(self, raw: dict[str, Any]) -> CanonicalSearchResult:
        return normalize_open_library(raw)

    async def hydrate(self, provider_id: str) -> CanonicalSearchResult:
        """Fetch one work and its author names.

        Raises:
            BookNotFoundError: If Open Library has no such work
        """
        identifier = work_id(provider_id)
        work, _ = await self.http.get_json(
            f"/works/{identifier}.json", not_found_id=identifier
        )
        author_names = await self._author_names(work.get("authors") or [])
        return normalize_open_library_work(work, author_names)

    async def _author_names(self, authors: list[Any]) -> list[str]:
        keys = []
        for entry in authors:
            author = entry.get("author") if isinstance(entry, dict) else None
            if isinstance(author, dict) and author.get("key"):
                keys.append(author["key"])

        if not keys:
            return []

        lookups = await asyncio.gather(
            *(self.http.get_json(f"{key}.json") for key in keys),
            return_exceptions=True,
        )

        names = []
        for key, lookup in zip(keys, lookups, strict=True):
            if isinstance(lookup, BookBuddyError):
                logger.warning("author_lookup_failed", author_key=key, error=lookup.message)
                continue
            if isinstance(lookup, BaseException):
                raise lookup
            data, _ = lookup
            if isinstance(data, dict) and data.get("name"):
                names.append(data["name"])
        return names

    async def close(self) -> None:
        await self.http.close()
