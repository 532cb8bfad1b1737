"""BookSearchCache model - durable tier of the search cache.

Redis holds search results for hours; this table holds the same normalized
results for weeks so a cold Redis (restart, eviction) does not send every
query back to the catalog APIs. Rows past ``expires_at`` are ignored by
regular reads and removed by the periodic sweep.
"""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from bookbuddy.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin


class BookSearchCache(UUIDPrimaryKeyMixin, TimestampMixin, Base):
    """Persisted search results keyed by (search_key, provider).

    Attributes:
        search_key: sha256 hex digest of the normalized query
        provider: Provider the results came from (e.g., "google_books")
        result_count: Number of canonical results stored
        results: List of canonical search results as JSON
        expires_at: When this entry stops being served as fresh
    """

    __tablename__ = "book_search_cache"

    search_key: Mapped[str] = mapped_column(String(64), nullable=False)
    provider: Mapped[str] = mapped_column(String(50), nullable=False)
    result_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    results: Mapped[list] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=False,
    )
    expires_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        nullable=False,
    )

    __table_args__ = (
        UniqueConstraint("search_key", "provider", name="uq_book_search_cache_key"),
        # Sweep deletes by expiry
        Index("ix_book_search_cache_expires_at", "expires_at"),
    )

    def __repr__(self) -> str:
        return (
            f"<BookSearchCache(key='{self.search_key[:12]}', "
            f"provider='{self.provider}', count={self.result_count}, "
            f"expires_at={self.expires_at})>"
        )
