"""Custom exception hierarchy for BookBuddy.

Every error raised by the book search subsystem derives from
``BookBuddyError`` so the HTTP layer can render a structured response with a
stable error code and status:

- Input errors (400) never reach the cache or the network
- Upstream errors (429/502/504) are raised by providers
- Availability errors (503) come from the circuit breaker

Usage:
    from bookbuddy.core.exceptions import RateLimitedError

    raise RateLimitedError(provider="google_books")
"""

from typing import Any


class BookBuddyError(Exception):
    """Base exception for all BookBuddy errors.

    Attributes:
        code: Machine-readable error code (e.g., "RATE_LIMITED")
        message: Human-readable error message
        status_code: HTTP status code to return
        details: Additional error details (optional)
    """

    code: str = "INTERNAL_ERROR"
    message: str = "An unexpected error occurred"
    status_code: int = 500

    def __init__(
        self,
        message: str | None = None,
        code: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize the exception.

        Args:
            message: Override default message
            code: Override default error code
            details: Additional error details
        """
        if message:
            self.message = message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self, request_id: str | None = None) -> dict[str, Any]:
        """Convert exception to API error response format.

        Args:
            request_id: Request correlation ID

        Returns:
            Error response dictionary
        """
        error: dict[str, Any] = {
            "code": self.code,
            "message": self.message,
        }
        if request_id:
            error["request_id"] = request_id
        if self.details:
            error["details"] = self.details
        return {"error": error}


# =============================================================================
# Validation Errors (400)
# =============================================================================


class ValidationError(BookBuddyError):
    """Raised when input validation fails."""

    code: str = "VALIDATION_ERROR"
    message: str = "Validation error"
    status_code: int = 400

    def __init__(
        self,
        message: str | None = None,
        field: str | None = None,
        details: dict[str, Any] | None = None,
    ) -> None:
        """Initialize with optional field information."""
        if details is None:
            details = {}
        if field:
            details["field"] = field
        super().__init__(message=message, details=details if details else None)


class UnsupportedProviderError(ValidationError):
    """Raised when a search names a provider that is not registered."""

    code: str = "UNSUPPORTED_PROVIDER"
    message: str = "Unsupported provider"

    def __init__(self, provider: str | None = None, message: str | None = None) -> None:
        if not message and provider:
            message = f"Unsupported provider: {provider}"
        super().__init__(
            message=message,
            field="provider",
            details={"provider": provider} if provider else None,
        )


class UnknownProviderError(UnsupportedProviderError):
    """Raised by the normalizer for a provider it has no mapping for."""

    code: str = "UNKNOWN_PROVIDER"
    message: str = "Unknown provider"

    def __init__(self, provider: str | None = None) -> None:
        super().__init__(
            provider=provider,
            message=f"Unknown provider: {provider}" if provider else None,
        )


# =============================================================================
# Resource Not Found Errors (404)
# =============================================================================


class NotFoundError(BookBuddyError):
    """Base class for resource not found errors."""

    status_code: int = 404


class BookNotFoundError(NotFoundError):
    """Raised when a provider has no record for an identifier."""

    code: str = "BOOK_NOT_FOUND"
    message: str = "Book not found"

    def __init__(
        self,
        provider_id: str | None = None,
        provider: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize with optional identifiers.

        Args:
            provider_id: Catalog-specific book identifier
            provider: Provider name
            message: Override default message
        """
        details: dict[str, Any] = {}
        if provider_id:
            details["provider_id"] = provider_id
        if provider:
            details["provider"] = provider

        if not message and provider_id:
            message = f"Book with ID {provider_id} not found"

        super().__init__(message=message, details=details if details else None)


# =============================================================================
# External Service Errors (429, 502, 503, 504)
# =============================================================================


class ExternalServiceError(BookBuddyError):
    """Base class for external service errors."""

    code: str = "EXTERNAL_SERVICE_ERROR"
    message: str = "External service error"
    status_code: int = 502


class ProviderError(ExternalServiceError):
    """Catch-all for catalog API failures."""

    code: str = "PROVIDER_ERROR"
    message: str = "Book provider request failed"

    def __init__(
        self,
        message: str | None = None,
        provider: str | None = None,
        status: int | None = None,
    ) -> None:
        details: dict[str, Any] = {}
        if provider:
            details["provider"] = provider
        if status is not None:
            details["upstream_status"] = status
        super().__init__(message=message, details=details if details else None)


class RateLimitedError(ProviderError):
    """Upstream answered 429."""

    code: str = "RATE_LIMITED"
    message: str = "Provider rate limit exceeded"
    status_code: int = 429


class UpstreamServerError(ProviderError):
    """Upstream answered with a 5xx status."""

    code: str = "UPSTREAM_SERVER_ERROR"
    message: str = "Provider server error"


class UpstreamBadRequestError(ProviderError):
    """Upstream rejected the query as malformed."""

    code: str = "UPSTREAM_BAD_REQUEST"
    message: str = "Provider rejected the query"
    status_code: int = 400


class ProviderTimeoutError(ProviderError):
    """The provider call did not finish within its deadline."""

    code: str = "PROVIDER_TIMEOUT"
    message: str = "Provider request timed out"
    status_code: int = 504


class CircuitOpenError(ExternalServiceError):
    """The circuit breaker rejected the call without contacting upstream."""

    code: str = "CIRCUIT_OPEN"
    message: str = "Breaker is open"
    status_code: int = 503

    def __init__(self, breaker: str | None = None) -> None:
        super().__init__(
            message=f"Breaker is open: {breaker}" if breaker else None,
            details={"breaker": breaker} if breaker else None,
        )


class ServiceUnavailableError(ExternalServiceError):
    """Upstream is unavailable and no cached copy could be served."""

    code: str = "SERVICE_UNAVAILABLE"
    message: str = "Search service temporarily unavailable"
    status_code: int = 503


class _WrappedFailure(ExternalServiceError):
    """Adds context to a lower-level failure while keeping its status."""

    prefix: str = "Failed"

    def __init__(self, cause: Exception) -> None:
        cause_message = getattr(cause, "message", None) or str(cause)
        details: dict[str, Any] = {"cause": type(cause).__name__}
        if isinstance(cause, BookBuddyError):
            self.status_code = cause.status_code
            details["cause_code"] = cause.code
        super().__init__(message=f"{self.prefix}: {cause_message}", details=details)
        self.cause = cause


class SearchFailedError(_WrappedFailure):
    """Raised by the search service when the provider call fails."""

    code: str = "SEARCH_FAILED"
    prefix = "Search failed"


class HydrateFailedError(_WrappedFailure):
    """Raised by the search service when a detail lookup fails."""

    code: str = "HYDRATE_FAILED"
    prefix = "Hydrate failed"
