"""Services package for BookBuddy.

This module exports service classes for business logic.
"""

from bookbuddy.services.book_search import BookSearchService, CacheManager
from bookbuddy.services.cache import RedisSearchCacheStore

__all__ = [
    "BookSearchService",
    "CacheManager",
    "RedisSearchCacheStore",
]
