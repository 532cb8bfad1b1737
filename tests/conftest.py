"""Pytest configuration and fixtures for BookBuddy tests.

This module provides reusable fixtures for:
- Async test client
- Settings overrides
- In-memory cache tiers and fake providers
- A search service wired entirely from fakes
"""

from collections.abc import AsyncGenerator

import pytest
from fastapi import FastAPI
from httpx import ASGITransport, AsyncClient

from bookbuddy.config import Settings
from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.dependencies import get_book_search_service
from bookbuddy.main import create_app
from bookbuddy.services.book_search import (
    BookProvider,
    BookSearchService,
    CacheManager,
    ProviderRegistry,
)
from mocks.fakes import FakeDurableStore, FakeFastStore, FakeProvider
from mocks.google_books_responses import FELLOWSHIP_VOLUME, HOBBIT_VOLUME
from mocks.open_library_responses import HOBBIT_DOC, LOTR_DOC

# =============================================================================
# Settings Fixtures
# =============================================================================


@pytest.fixture
def test_settings() -> Settings:
    """Create test-specific settings.

    Overrides production settings with test-appropriate values.
    """
    return Settings(
        app_env="development",  # type: ignore[arg-type]
        debug=True,
        log_level="DEBUG",  # type: ignore[arg-type]
        log_format="console",  # type: ignore[arg-type]
        database_url="sqlite+aiosqlite:///:memory:",
        redis_url="redis://localhost:6379/15",  # Use DB 15 for tests
        cache_sweep_interval_seconds=0,
    )


# =============================================================================
# Application Fixtures
# =============================================================================


@pytest.fixture
def app(test_settings: Settings) -> FastAPI:
    """Create a test FastAPI application with test settings."""
    return create_app(settings=test_settings)


@pytest.fixture
async def async_client(app: FastAPI) -> AsyncGenerator[AsyncClient, None]:
    """Create an async HTTP client for testing.

    The lifespan is not run, so nothing connects to Redis or the database.

    Usage:
        async def test_endpoint(async_client: AsyncClient):
            response = await async_client.get("/health/live")
            assert response.status_code == 200
    """
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client


@pytest.fixture
async def search_client(
    app: FastAPI, search_service: BookSearchService
) -> AsyncGenerator[AsyncClient, None]:
    """Async client whose routes use the fake-backed search service."""
    app.dependency_overrides[get_book_search_service] = lambda: search_service
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as client:
        yield client
    app.dependency_overrides.clear()


# =============================================================================
# Cache Fixtures
# =============================================================================


@pytest.fixture
def metrics() -> SearchMetrics:
    return SearchMetrics()


@pytest.fixture
def fast_store() -> FakeFastStore:
    """In-memory stand-in for the Redis tier."""
    return FakeFastStore()


@pytest.fixture
def durable_store() -> FakeDurableStore:
    """In-memory stand-in for the SQL tier."""
    return FakeDurableStore()


@pytest.fixture
def cache_manager(
    fast_store: FakeFastStore,
    durable_store: FakeDurableStore,
    metrics: SearchMetrics,
) -> CacheManager:
    """CacheManager with short lock timings."""
    return CacheManager(
        fast_store,
        durable_store,
        metrics,
        lock_poll_interval=0.01,
        lock_wait_timeout=1.0,
    )


# =============================================================================
# Provider Fixtures
# =============================================================================


@pytest.fixture
def google_provider() -> FakeProvider:
    return FakeProvider(
        BookProvider.GOOGLE_BOOKS,
        [HOBBIT_VOLUME, FELLOWSHIP_VOLUME],
        total_count=1423,
    )


@pytest.fixture
def open_library_provider() -> FakeProvider:
    return FakeProvider(BookProvider.OPEN_LIBRARY, [LOTR_DOC, HOBBIT_DOC])


@pytest.fixture
def registry(
    google_provider: FakeProvider, open_library_provider: FakeProvider
) -> ProviderRegistry:
    registry = ProviderRegistry()
    registry.register(google_provider)
    registry.register(open_library_provider)
    return registry


@pytest.fixture
def search_service(
    registry: ProviderRegistry,
    cache_manager: CacheManager,
    metrics: SearchMetrics,
) -> BookSearchService:
    """Search service over fake providers and in-memory cache tiers."""
    return BookSearchService(
        registry,
        cache_manager,
        metrics,
        breaker_options={
            "timeout": 0.5,
            "reset_timeout": 30.0,
            "volume_threshold": 3,
        },
    )
