"""Generic base repository for async SQLAlchemy access.

This module provides a generic repository pattern for SQLAlchemy models:
- BaseRepository[T]: Generic class holding the session and model type
- All methods are async and use SQLAlchemy 2.0 style

Usage:
    from bookbuddy.repositories.base import BaseRepository
    from bookbuddy.models.book_search_cache import BookSearchCache

    class BookSearchCacheRepository(BaseRepository[BookSearchCache]):
        pass

    repo = BookSearchCacheRepository(session)
    total = await repo.count()
"""

from typing import Any, Generic, TypeVar

from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from bookbuddy.models.base import Base

# Type variable for model classes
T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Generic repository bound to one model class and session.

    Type Parameters:
        T: The SQLAlchemy model class

    Attributes:
        session: The async database session
        model_class: The model class for this repository
    """

    model_class: type[T]

    def __init__(self, session: AsyncSession) -> None:
        """Initialize the repository with a database session.

        Args:
            session: Async database session
        """
        self.session = session

    def __init_subclass__(cls, **kwargs: Any) -> None:
        """Extract model class from Generic type parameter."""
        super().__init_subclass__(**kwargs)
        for base in cls.__orig_bases__:  # type: ignore[attr-defined]
            if hasattr(base, "__args__"):
                cls.model_class = base.__args__[0]
                break

    async def count(self) -> int:
        """Count total entities."""
        result = await self.session.execute(
            select(func.count()).select_from(self.model_class)
        )
        return result.scalar_one()
