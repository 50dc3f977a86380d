"""Base HTTP client with retry logic for The Algorithm backend."""

import logging
from typing import Callable, Optional

import requests

from .retry import RetryConfig, retry_with_backoff, RetryExhausted

__all__ = [
    "BaseApiClient",
    "CompanionClientError",
    "CompanionAuthError",
]

logger = logging.getLogger(__name__)


class CompanionClientError(Exception):
    """Backend client error."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        self.status_code = status_code
        super().__init__(message)


class CompanionAuthError(CompanionClientError):
    """Missing, invalid or rejected bearer token."""

    pass


class _TransientError(Exception):
    """Internal: Marks an error as transient/retryable."""

    pass


class BaseApiClient:
    """Base HTTP client for the backend.

    Handles:
    - Session management
    - Bearer authentication (token read fresh on every request)
    - Retry with exponential backoff for transient failures
    - Error classification
    """

    DEFAULT_RETRY_CONFIG = RetryConfig()

    USER_AGENT = "AlgorithmCompanion/1.0.0"

    def __init__(
        self,
        base_url: str,
        token_provider: Optional[Callable[[], Optional[str]]] = None,
        timeout: int = 30,
        retry_config: Optional[RetryConfig] = None,
        session: Optional[requests.Session] = None,
    ):
        """Initialize base API client.

        Args:
            base_url: Backend base URL, e.g. "https://thealgorithm.live"
            token_provider: Returns the current bearer token (or None)
            timeout: Request timeout in seconds
            retry_config: Configuration for retry with exponential backoff
            session: Optional requests session (for dependency injection/testing)
        """
        self.base_url = base_url.rstrip("/")
        self._token_provider = token_provider or (lambda: None)
        self.timeout = timeout
        self.retry_config = retry_config or self.DEFAULT_RETRY_CONFIG
        self._session = session or requests.Session()
        self._owns_session = session is None

    @property
    def token(self) -> Optional[str]:
        return self._token_provider()

    def _get_headers(self, require_token: bool = True) -> dict:
        """Get request headers with authentication."""
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        token = self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        elif require_token:
            raise CompanionAuthError("No authentication token")
        return headers

    def _request(
        self,
        method: str,
        endpoint: str,
        data: Optional[dict] = None,
        retry: bool = True,
        authenticated: bool = True,
    ) -> dict:
        """Make a JSON request to the backend.

        Args:
            method: HTTP method
            endpoint: Path relative to base_url
            data: JSON body
            retry: Whether to retry on transient failures
            authenticated: Whether a bearer token is required

        Returns:
            Response data as dict

        Raises:
            CompanionAuthError: No token, or 401/403 (not retried)
            CompanionClientError: For other errors
        """
        url = f"{self.base_url}/{endpoint.lstrip('/')}"
        headers = self._get_headers(require_token=authenticated)
        kwargs: dict = {"timeout": self.timeout, "headers": headers}
        if data is not None:
            kwargs["json"] = data

        def do_request() -> dict:
            try:
                response = self._session.request(method, url, **kwargs)
            except requests.exceptions.ConnectionError:
                raise _TransientError("Cannot connect to The Algorithm API")
            except requests.exceptions.Timeout:
                raise _TransientError("Request timed out")
            except requests.exceptions.RequestException as e:
                raise CompanionClientError(f"Request failed: {e}") from e

            if response.status_code in (401, 403):
                raise CompanionAuthError(
                    _error_message(response) or "Invalid or expired OAuth token",
                    status_code=response.status_code,
                )
            # Server errors (5xx) are retryable
            if response.status_code >= 500:
                raise _TransientError(f"Server error: {response.status_code}")
            if not response.ok:
                raise CompanionClientError(
                    _error_message(response)
                    or f"Request failed with status {response.status_code}",
                    status_code=response.status_code,
                )
            try:
                return response.json() if response.content else {}
            except ValueError:
                return {}

        if retry:
            try:
                return retry_with_backoff(
                    do_request,
                    config=self.retry_config,
                    retryable_exceptions=(_TransientError,),
                )
            except RetryExhausted as e:
                if e.last_error:
                    raise CompanionClientError(str(e.last_error)) from e.last_error
                raise CompanionClientError("Request failed after retries") from e
        try:
            return do_request()
        except _TransientError as e:
            raise CompanionClientError(str(e)) from e

    def close(self) -> None:
        """Close the session if we own it."""
        if self._owns_session and self._session is not None:
            self._session.close()
            self._session = None

    def __enter__(self) -> "BaseApiClient":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()


def _error_message(response: requests.Response) -> str:
    """Pull ``detail``/``error``/``message`` out of a JSON error body."""
    try:
        body = response.json()
    except ValueError:
        return ""
    if not isinstance(body, dict):
        return ""
    for key in ("detail", "error", "message"):
        value = body.get(key)
        if isinstance(value, str) and value:
            return value
    return ""
