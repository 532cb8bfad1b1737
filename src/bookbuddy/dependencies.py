"""FastAPI dependency injection container.

This module provides dependency injection functions for use with FastAPI's
Depends() pattern. Long-lived objects are built in the lifespan and stored on
``app.state``; dependencies only hand them out, so tests can swap in fakes
through ``app.dependency_overrides``.
"""

from typing import Annotated

from fastapi import Depends, Request

from bookbuddy.services.book_search import BookSearchService


# ========================================
# Service Dependencies
# ========================================
def get_book_search_service(request: Request) -> BookSearchService:
    """Get the book search service built at startup.

    Raises:
        RuntimeError: If the application lifespan has not run
    """
    service = getattr(request.app.state, "book_search_service", None)
    if service is None:
        raise RuntimeError("Book search service not initialized. Check app lifespan.")
    return service


# Type alias for common dependency patterns
BookSearchServiceDep = Annotated[BookSearchService, Depends(get_book_search_service)]
