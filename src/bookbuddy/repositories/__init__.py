"""Repository pattern package for BookBuddy.

This module exports base repository classes and concrete repositories.
"""

from bookbuddy.repositories.base import BaseRepository
from bookbuddy.repositories.book_search_cache import BookSearchCacheRepository

__all__ = [
    "BaseRepository",
    "BookSearchCacheRepository",
]
