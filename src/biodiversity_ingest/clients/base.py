"""Base HTTP client with rate limiting and error classification.

Provides shared functionality for provider clients:
- Session management with a project User-Agent
- Rate limiting between requests
- GET with per-call timeout and optional streaming
- Conversion of requests failures into pipeline error categories
"""

import logging
import time
from typing import Any

import requests

from biodiversity_ingest.errors import (
    ErrorCategory,
    IngestError,
    ResourceNotFoundError,
    TransportError,
    classify_exception,
)

logger = logging.getLogger(__name__)

# Default configuration
DEFAULT_RATE_LIMIT_DELAY = 0.1  # seconds between requests
DEFAULT_TIMEOUT = 30.0  # request timeout in seconds
DEFAULT_USER_AGENT = "biodiversity-ingest/0.1.0"

Timeout = float | tuple[float, float]


def to_pipeline_error(exc: Exception, url: str) -> IngestError:
    """Wrap a requests exception in the matching pipeline error.

    Args:
        exc: Exception raised while talking to a provider
        url: The URL being requested

    Returns:
        ResourceNotFoundError for 404/410 responses, TransportError otherwise
    """
    if isinstance(exc, IngestError):
        return exc
    category = classify_exception(exc)
    if category is ErrorCategory.NOT_FOUND:
        status = None
        if isinstance(exc, requests.HTTPError) and exc.response is not None:
            status = exc.response.status_code
        return ResourceNotFoundError(f"Resource not found: {url}", url=url, status_code=status)
    return TransportError(f"Request to {url} failed: {exc}", url=url)


class HTTPClientBase:
    """Base class for provider HTTP clients.

    Subclasses add provider-specific methods on top of :meth:`_get`, which
    raises :class:`~biodiversity_ingest.errors.ResourceNotFoundError` or
    :class:`~biodiversity_ingest.errors.TransportError` instead of raw
    ``requests`` exceptions.
    """

    def __init__(
        self,
        rate_limit_delay: float = DEFAULT_RATE_LIMIT_DELAY,
        timeout: float = DEFAULT_TIMEOUT,
        user_agent: str | None = None,
        session: requests.Session | None = None,
    ):
        """Initialize the client.

        Args:
            rate_limit_delay: Seconds to wait between requests
            timeout: Default request timeout in seconds
            user_agent: Custom User-Agent string (uses default if not provided)
            session: Existing session to use, mainly for tests
        """
        self.rate_limit_delay = rate_limit_delay
        self.timeout = timeout
        self._last_request_time: float = 0
        self._session = session or requests.Session()
        self._session.headers.update({"User-Agent": user_agent or DEFAULT_USER_AGENT})

    def _wait_for_rate_limit(self) -> None:
        """Wait if needed to respect rate limit."""
        elapsed = time.time() - self._last_request_time
        if elapsed < self.rate_limit_delay:
            time.sleep(self.rate_limit_delay - elapsed)
        self._last_request_time = time.time()

    def _get(
        self,
        url: str,
        params: dict[str, Any] | None = None,
        timeout: Timeout | None = None,
        stream: bool = False,
    ) -> requests.Response:
        """Make a GET request with rate limiting.

        Args:
            url: Full URL to fetch
            params: Query parameters
            timeout: Override of the default timeout; a (connect, read) tuple
                bounds the wait between received chunks when streaming
            stream: Defer downloading the body

        Returns:
            Response object with a 2xx status

        Raises:
            ResourceNotFoundError: On HTTP 404 or 410
            TransportError: On any other network or HTTP failure
        """
        self._wait_for_rate_limit()
        logger.debug(f"GET {url} params={params}")
        try:
            response = self._session.get(
                url,
                params=params,
                timeout=timeout if timeout is not None else self.timeout,
                stream=stream,
            )
            response.raise_for_status()
        except requests.RequestException as e:
            raise to_pipeline_error(e, url) from e
        return response

    def close(self) -> None:
        """Close the underlying session."""
        self._session.close()

    def __enter__(self) -> "HTTPClientBase":
        """Context manager entry."""
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        """Context manager exit - close session."""
        self.close()
