"""Shared httpx plumbing for catalog providers.

``ProviderHTTPClient`` owns one lazily created ``httpx.AsyncClient`` and maps
transport and status failures onto the provider error taxonomy, so each
provider only describes its own endpoints.
"""

import time
from typing import Any

import httpx
import structlog

from bookbuddy.core.exceptions import (
    BookNotFoundError,
    ProviderError,
    ProviderTimeoutError,
    RateLimitedError,
    UpstreamBadRequestError,
    UpstreamServerError,
)

logger = structlog.get_logger(__name__)


def _error_detail(response: httpx.Response) -> str:
    """Best-effort upstream error message from a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return "Unknown error"
    if isinstance(body, dict):
        error = body.get("error")
        if isinstance(error, dict) and error.get("message"):
            return str(error["message"])
        if isinstance(error, str):
            return error
    return "Unknown error"


class ProviderHTTPClient:
    """Async HTTP client bound to one catalog API."""

    def __init__(
        self,
        *,
        provider: str,
        label: str,
        base_url: str,
        timeout: float,
        user_agent: str,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        """Initialize the client.

        Args:
            provider: Provider name used in errors and logs
            label: Human-readable API name used in error messages
            base_url: API base URL
            timeout: Request timeout in seconds
            user_agent: User-Agent header value
            transport: Optional transport override (tests)
        """
        self.provider = provider
        self.label = label
        self.base_url = base_url
        self.timeout = timeout
        self.user_agent = user_agent
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    async def _get_client(self) -> httpx.AsyncClient:
        """Get or create the HTTP client."""
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                base_url=self.base_url,
                timeout=self.timeout,
                headers={"User-Agent": self.user_agent},
                transport=self._transport,
            )
        return self._client

    async def close(self) -> None:
        """Close the HTTP client."""
        if self._client and not self._client.is_closed:
            await self._client.aclose()
            self._client = None

    async def get_json(
        self,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        not_found_id: str | None = None,
    ) -> tuple[Any, float]:
        """GET a JSON document.

        Args:
            path: Path relative to the base URL
            params: Query parameters
            not_found_id: When set, a 404 raises BookNotFoundError for this id

        Returns:
            Tuple of (decoded body, latency in milliseconds)

        Raises:
            RateLimitedError: HTTP 429
            UpstreamServerError: HTTP 5xx
            UpstreamBadRequestError: HTTP 400
            BookNotFoundError: HTTP 404 when not_found_id is set
            ProviderTimeoutError: The request timed out
            ProviderError: Any other failure
        """
        client = await self._get_client()
        started = time.perf_counter()

        try:
            response = await client.get(path, params=params)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise self._status_error(e.response, path, not_found_id) from e
        except httpx.TimeoutException as e:
            logger.warning("provider_request_timeout", provider=self.provider, path=path)
            raise ProviderTimeoutError(
                f"{self.label} request timed out", provider=self.provider
            ) from e
        except httpx.RequestError as e:
            logger.error(
                "provider_request_error", provider=self.provider, path=path, error=str(e)
            )
            raise ProviderError(
                f"{self.label} request failed: {e}", provider=self.provider
            ) from e

        latency_ms = (time.perf_counter() - started) * 1000
        try:
            data = response.json()
        except ValueError as e:
            raise ProviderError(
                f"{self.label} returned invalid JSON", provider=self.provider
            ) from e

        logger.debug(
            "provider_request_completed",
            provider=self.provider,
            path=path,
            latency_ms=round(latency_ms, 1),
        )
        return data, latency_ms

    def _status_error(
        self,
        response: httpx.Response,
        path: str,
        not_found_id: str | None,
    ) -> ProviderError | BookNotFoundError:
        status = response.status_code
        logger.warning(
            "provider_request_failed", provider=self.provider, path=path, status_code=status
        )

        if status == 429:
            return RateLimitedError(
                f"{self.label} rate limit exceeded", provider=self.provider, status=status
            )
        if status >= 500:
            return UpstreamServerError(
                f"{self.label} server error ({status})",
                provider=self.provider,
                status=status,
            )
        if status == 404 and not_found_id is not None:
            return BookNotFoundError(
                provider_id=not_found_id,
                provider=self.provider,
                message=f"Book with ID {not_found_id} not found",
            )
        if status == 400:
            return UpstreamBadRequestError(
                f"Invalid query - {_error_detail(response)}",
                provider=self.provider,
                status=status,
            )
        return ProviderError(
            f"{self.label} request failed: {status}", provider=self.provider, status=status
        )
