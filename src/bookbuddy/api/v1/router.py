"""API v1 main router.

Aggregates all v1 API routers into a single router for inclusion in the app.
"""

from fastapi import APIRouter

from bookbuddy.api.v1.search import router as search_router

router = APIRouter()

router.include_router(search_router, prefix="/books", tags=["Books"])
