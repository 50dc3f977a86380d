"""API module - talks to The Algorithm backend."""

from .companion_client import CompanionApiClient
from .http_client import CompanionAuthError, CompanionClientError
from .retry import RetryConfig, retry_with_backoff

__all__ = [
    "CompanionApiClient",
    "CompanionAuthError",
    "CompanionClientError",
    "RetryConfig",
    "retry_with_backoff",
]
