"""FastAPI application factory for BookBuddy.

This module creates and configures the FastAPI application with:
- Lifespan management (database, Redis, search service, cache sweep)
- Middleware configuration (CORS, request ID, logging)
- Exception handlers
- API routers
"""

import asyncio
import contextlib
import time
import uuid
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from redis.asyncio import Redis

from bookbuddy.config import Settings, get_settings
from bookbuddy.core.exceptions import BookBuddyError
from bookbuddy.core.logging import (
    clear_correlation_id,
    configure_logging,
    get_logger,
    set_correlation_id,
)
from bookbuddy.core.metrics import SearchMetrics
from bookbuddy.services.book_search import (
    BookSearchService,
    CacheManager,
    DatabaseSearchCacheStore,
    build_default_registry,
)
from bookbuddy.services.cache import RedisSearchCacheStore

# Initialize logger for this module
logger = get_logger(__name__)


async def sweep_expired_cache(service: BookSearchService, interval: float) -> None:
    """Periodically delete expired durable-tier entries until cancelled."""
    sweep_logger = get_logger("bookbuddy.cache_sweep")
    while True:
        await asyncio.sleep(interval)
        removed = await service.clean_expired_cache()
        sweep_logger.debug("cache_sweep_completed", removed=removed)


def build_search_service(
    settings: Settings,
    redis: Redis,
    session_factory: Any,
) -> BookSearchService:
    """Wire stores, cache manager, providers and breakers together."""
    metrics = SearchMetrics()
    cache = CacheManager.from_settings(
        settings,
        fast=RedisSearchCacheStore(redis),
        durable=DatabaseSearchCacheStore(session_factory),
        metrics=metrics,
    )
    return BookSearchService.from_settings(
        settings, build_default_registry(settings), cache, metrics
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application lifespan events.

    Handles initialization and cleanup of:
    - Logging configuration
    - Database connection pool
    - Redis connection
    - Book search service and its periodic cache sweep

    Args:
        app: The FastAPI application instance

    Yields:
        None: Control back to the application
    """
    from bookbuddy.core.database import close_db, get_session_factory, init_db

    settings = getattr(app.state, "settings", None) or get_settings()

    # ========================================
    # Startup
    # ========================================
    # Configure logging first
    configure_logging(settings)

    # Re-get logger after configuration
    startup_logger = get_logger(__name__)

    # Initialize database connection pool
    await init_db(settings)

    # Redis backs the fast cache tier and the stampede lock
    redis = Redis.from_url(settings.redis_url)
    service = build_search_service(settings, redis, get_session_factory())

    # Store long-lived objects in app state for access in dependencies
    app.state.settings = settings
    app.state.redis = redis
    app.state.book_search_service = service

    # Periodic durable-tier sweep
    sweep_task: asyncio.Task[None] | None = None
    if settings.cache_sweep_interval_seconds > 0:
        sweep_task = asyncio.create_task(
            sweep_expired_cache(service, settings.cache_sweep_interval_seconds)
        )

    # Log startup
    startup_logger.info(
        "Application starting",
        app_name=settings.app_name,
        version=settings.app_version,
        environment=settings.app_env.value,
        debug=settings.debug,
        providers=[name.value for name in service.registry.names()],
    )

    yield

    # ========================================
    # Shutdown
    # ========================================
    # Stop the sweep before closing what it uses
    if sweep_task is not None:
        sweep_task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await sweep_task

    # Close provider clients and connections
    await service.close()
    await redis.aclose()
    await close_db()

    startup_logger.info("Application shutting down", app_name=settings.app_name)


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    This is the application factory function that creates a fully configured
    FastAPI instance with all middleware, routes, and exception handlers.

    Args:
        settings: Optional settings override for testing

    Returns:
        FastAPI: Configured application instance
    """
    if settings is None:
        settings = get_settings()

    app = FastAPI(
        title=settings.app_name,
        description=(
            "Book search aggregation for the BookBuddy reading tracker. "
            "Queries Google Books and Open Library with caching and circuit breaking."
        ),
        version=settings.app_version,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # ========================================
    # Middleware
    # ========================================
    configure_middleware(app, settings)

    # ========================================
    # Exception Handlers
    # ========================================
    configure_exception_handlers(app)

    # ========================================
    # Routes
    # ========================================
    configure_routes(app)

    return app


def configure_middleware(app: FastAPI, settings: Settings) -> None:
    """Configure application middleware.

    Args:
        app: The FastAPI application instance
        settings: Application settings
    """
    # CORS middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"] if settings.is_development else [],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Request logging middleware
    @app.middleware("http")
    async def logging_middleware(request: Request, call_next: Any) -> Any:
        """Log requests and responses with correlation ID."""
        # Generate or extract request ID
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        request.state.request_id = request_id

        # Set correlation ID for all logs in this request context
        set_correlation_id(request_id)

        # Log request start
        request_logger = get_logger("bookbuddy.request")
        start_time = time.perf_counter()

        request_logger.info(
            "Request started",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
        )

        try:
            response = await call_next(request)

            # Calculate duration
            duration_ms = (time.perf_counter() - start_time) * 1000

            # Log request completion
            request_logger.info(
                "Request completed",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )

            # Add request ID to response headers
            response.headers["X-Request-ID"] = request_id

            return response

        except Exception as exc:
            duration_ms = (time.perf_counter() - start_time) * 1000
            request_logger.error(
                "Request failed",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
                error=str(exc),
            )
            raise

        finally:
            # Clear correlation ID
            clear_correlation_id()


def configure_exception_handlers(app: FastAPI) -> None:
    """Configure global exception handlers.

    Args:
        app: The FastAPI application instance
    """
    exception_logger = get_logger("bookbuddy.exceptions")

    @app.exception_handler(BookBuddyError)
    async def bookbuddy_exception_handler(
        request: Request, exc: BookBuddyError
    ) -> JSONResponse:
        """Handle BookBuddy exceptions with structured error response."""
        request_id = getattr(request.state, "request_id", None)

        # Log at appropriate level based on status code
        if exc.status_code >= 500:
            exception_logger.error(
                "Application error",
                error_code=exc.code,
                error_message=exc.message,
                status_code=exc.status_code,
                path=request.url.path,
            )
        else:
            exception_logger.warning(
                "Client error",
                error_code=exc.code,
                error_message=exc.message,
                status_code=exc.status_code,
                path=request.url.path,
            )

        return JSONResponse(
            status_code=exc.status_code,
            content=exc.to_dict(request_id=request_id),
        )

    @app.exception_handler(Exception)
    async def global_exception_handler(
        request: Request, exc: Exception
    ) -> JSONResponse:
        """Handle unexpected exceptions with a consistent error response."""
        request_id = getattr(request.state, "request_id", None)

        exception_logger.exception(
            "Unhandled exception",
            error_type=type(exc).__name__,
            error_message=str(exc),
            path=request.url.path,
        )

        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={
                "error": {
                    "code": "INTERNAL_SERVER_ERROR",
                    "message": "An unexpected error occurred",
                    "request_id": request_id,
                }
            },
        )


def configure_routes(app: FastAPI) -> None:
    """Configure application routes.

    Args:
        app: The FastAPI application instance
    """

    # Health check endpoints
    @app.get(
        "/health/live",
        tags=["Health"],
        summary="Liveness probe",
        description="Returns OK if the service is running",
    )
    async def liveness() -> dict[str, str]:
        """Liveness probe for container orchestration."""
        return {"status": "ok"}

    @app.get(
        "/health/ready",
        tags=["Health"],
        summary="Readiness probe",
        description="Reports database and Redis connectivity",
    )
    async def readiness(request: Request) -> dict[str, Any]:
        """Readiness probe checking the cache tiers.

        Search keeps working with either tier down, so this reports rather
        than gates.
        """
        from bookbuddy.core.database import check_db_connection

        # Check database connectivity
        db_ok = await check_db_connection()

        # Check Redis connectivity
        redis_ok = False
        redis = getattr(request.app.state, "redis", None)
        if redis is not None:
            try:
                redis_ok = bool(await redis.ping())
            except Exception as e:
                logger.warning("Redis health check failed", error=str(e))

        overall_status = "ok" if (db_ok and redis_ok) else "degraded"

        return {
            "status": overall_status,
            "checks": {
                "database": "ok" if db_ok else "error",
                "redis": "ok" if redis_ok else "error",
            },
        }

    # Root endpoint
    @app.get(
        "/",
        tags=["Root"],
        summary="API root",
        description="Returns API information",
    )
    async def root(request: Request) -> dict[str, str]:
        """API root endpoint with service information."""
        settings = request.app.state.settings
        return {
            "service": settings.app_name,
            "version": settings.app_version,
            "docs": "/docs",
            "health": "/health/live",
        }

    # Include API v1 router
    from bookbuddy.api.v1.router import router as v1_router

    app.include_router(v1_router, prefix="/api/v1")


# Create the application instance
app = create_app()


def cli() -> None:
    """CLI entry point for running the application."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "bookbuddy.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.is_development,
        log_level=settings.log_level.value.lower(),
    )


if __name__ == "__main__":
    cli()
