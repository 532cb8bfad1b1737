"""Models package for BookBuddy.

This module exports the Base class and all model classes.
"""

from bookbuddy.models.base import Base, TimestampMixin, UUIDPrimaryKeyMixin
from bookbuddy.models.book_search_cache import BookSearchCache

__all__ = [
    # Base and Mixins
    "Base",
    "UUIDPrimaryKeyMixin",
    "TimestampMixin",
    # Search cache
    "BookSearchCache",
]
