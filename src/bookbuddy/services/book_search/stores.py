"""Durable tier of the search cache.

``DatabaseSearchCacheStore`` opens a short-lived session per operation so the
cache can be used outside a request scope (background sweeps, lock holders
finishing after their caller was cancelled).
"""

from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from typing import Any

import structlog
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from bookbuddy.models.book_search_cache import BookSearchCache
from bookbuddy.repositories.book_search_cache import BookSearchCacheRepository

logger = structlog.get_logger(__name__)


def as_utc(value: datetime) -> datetime:
    """SQLite hands back naive datetimes; they are stored as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value


@dataclass
class CacheEntry:
    """One durable-tier record as seen by the cache manager."""

    key: str
    provider: str
    results: list[dict[str, Any]]
    stored_at: datetime
    expires_at: datetime

    @property
    def ttl_seconds(self) -> int:
        return int((self.expires_at - self.stored_at).total_seconds())

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= datetime.now(UTC)

    @classmethod
    def from_model(cls, row: BookSearchCache) -> "CacheEntry":
        return cls(
            key=row.search_key,
            provider=row.provider,
            results=list(row.results or []),
            stored_at=as_utc(row.updated_at or row.created_at),
            expires_at=as_utc(row.expires_at),
        )


class DatabaseSearchCacheStore:
    """SQL-backed durable cache tier."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        """Initialize the store.

        Args:
            session_factory: Factory producing async sessions
        """
        self._session_factory = session_factory

    async def get(
        self,
        key: str,
        provider: str,
        *,
        include_expired: bool = False,
    ) -> CacheEntry | None:
        """Read the entry for a key and provider.

        Args:
            key: Hashed search key
            provider: Provider name
            include_expired: Also return entries past their TTL that were not swept
        """
        async with self._session_factory() as session:
            row = await BookSearchCacheRepository(session).get_entry(
                key, provider, include_expired=include_expired
            )
            return CacheEntry.from_model(row) if row is not None else None

    async def set(
        self,
        key: str,
        provider: str,
        results: list[dict[str, Any]],
        ttl_days: int,
    ) -> None:
        expires_at = datetime.now(UTC) + timedelta(days=ttl_days)
        async with self._session_factory() as session:
            await BookSearchCacheRepository(session).upsert(
                key, provider, results, expires_at
            )
            await session.commit()
        logger.debug("cache_set", tier="database", search_key=key, provider=provider)

    async def delete(self, key: str, provider: str) -> int:
        async with self._session_factory() as session:
            removed = await BookSearchCacheRepository(session).delete_by_key(key, provider)
            await session.commit()
        return removed

    async def clean_expired(self) -> int:
        """Delete every expired entry.

        Returns:
            Number of entries removed
        """
        async with self._session_factory() as session:
            removed = await BookSearchCacheRepository(session).delete_expired()
            await session.commit()
        return removed
