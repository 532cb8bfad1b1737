"""BookSearchCacheRepository for the durable search cache table.

Provides keyed lookups, upserts and expiry sweeps over BookSearchCache rows.
"""

from datetime import UTC, datetime

from sqlalchemy import delete, func, select
from sqlalchemy.dialects import postgresql, sqlite

from bookbuddy.models.book_search_cache import BookSearchCache
from bookbuddy.repositories.base import BaseRepository

# Dialects whose insert() supports on_conflict_do_update
_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


class BookSearchCacheRepository(BaseRepository[BookSearchCache]):
    """Repository for BookSearchCache entries."""

    async def get_entry(
        self,
        search_key: str,
        provider: str,
        *,
        include_expired: bool = False,
        now: datetime | None = None,
    ) -> BookSearchCache | None:
        """Find the entry for a key and provider.

        Args:
            search_key: Hashed search key
            provider: Provider name
            include_expired: Also return rows past their expiry
            now: Reference time for the expiry check (defaults to utcnow)

        Returns:
            The entry if present (and unexpired unless asked), None otherwise
        """
        query = select(BookSearchCache).where(
            BookSearchCache.search_key == search_key,
            BookSearchCache.provider == provider,
        )
        if not include_expired:
            query = query.where(BookSearchCache.expires_at > (now or datetime.now(UTC)))

        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def upsert(
        self,
        search_key: str,
        provider: str,
        results: list[dict],
        expires_at: datetime,
    ) -> BookSearchCache:
        """Insert a new entry or replace the results of an existing one.

        Runs as one ``INSERT ... ON CONFLICT (search_key, provider) DO UPDATE``
        so concurrent writers for the same key never trip the unique
        constraint.

        Args:
            search_key: Hashed search key
            provider: Provider name
            results: Canonical results as JSON-ready dicts
            expires_at: New expiry time

        Returns:
            The stored entry
        """
        dialect = self.session.get_bind().dialect.name
        insert = _UPSERT_INSERTS.get(dialect)
        if insert is None:
            raise RuntimeError(f"Upsert not supported for database dialect: {dialect}")

        statement = insert(BookSearchCache).values(
            search_key=search_key,
            provider=provider,
            results=results,
            result_count=len(results),
            expires_at=expires_at,
        )
        statement = statement.on_conflict_do_update(
            index_elements=[BookSearchCache.search_key, BookSearchCache.provider],
            set_={
                "results": statement.excluded.results,
                "result_count": statement.excluded.result_count,
                "expires_at": statement.excluded.expires_at,
                "updated_at": func.now(),
            },
        )
        await self.session.execute(statement)

        # Reload so an instance already in the identity map sees the new row
        result = await self.session.execute(
            select(BookSearchCache)
            .where(
                BookSearchCache.search_key == search_key,
                BookSearchCache.provider == provider,
            )
            .execution_options(populate_existing=True)
        )
        return result.scalar_one()

    async def delete_by_key(self, search_key: str, provider: str) -> int:
        """Delete the entry for a key and provider.

        Returns:
            Number of rows removed (0 or 1)
        """
        result = await self.session.execute(
            delete(BookSearchCache).where(
                BookSearchCache.search_key == search_key,
                BookSearchCache.provider == provider,
            )
        )
        return result.rowcount or 0

    async def delete_expired(self, now: datetime | None = None) -> int:
        """Delete every entry whose expiry has passed.

        Returns:
            Number of rows removed
        """
        result = await self.session.execute(
            delete(BookSearchCache).where(
                BookSearchCache.expires_at < (now or datetime.now(UTC))
            )
        )
        return result.rowcount or 0
