"""Failure values shared by the OAuth and session-cookie flows.

Flows raise ``AuthFlowError`` internally; the orchestrator catches it and
hands the wrapped ``AuthFailure`` to the caller as a plain value.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

__all__ = ["AuthErrorKind", "AuthFailure", "AuthFlowError"]


class AuthErrorKind(Enum):
    """Discriminator for authentication failures."""

    INVALID_AUTHORIZATION_URL = "invalid_authorization_url"
    SECURE_RANDOM_UNAVAILABLE = "secure_random_unavailable"
    TRANSPORT_FAILURE = "transport_failure"
    NON_SUCCESS_STATUS = "non_success_status"
    MALFORMED_TOKEN_RESPONSE = "malformed_token_response"
    MISSING_PKCE_VERIFIER = "missing_pkce_verifier"
    USER_CANCELLED = "user_cancelled"
    PROVIDER_ERROR = "provider_error"
    NO_COOKIES_FOUND = "no_cookies_found"
    MISSING_ESSENTIAL_COOKIES = "missing_essential_cookies"
    EXPIRED_COOKIES = "expired_cookies"
    TIMEOUT = "timeout"
    STATE_MISMATCH = "state_mismatch"
    BROWSER_UNAVAILABLE = "browser_unavailable"
    MISSING_AUTHORIZATION_CODE = "missing_authorization_code"
    INVALID_CALLBACK_URL = "invalid_callback_url"
    OAUTH_REQUIRED = "oauth_required"
    CREDENTIAL_STORAGE_FAILED = "credential_storage_failed"


_DEFAULT_MESSAGES = {
    AuthErrorKind.INVALID_AUTHORIZATION_URL: "Invalid OAuth URL",
    AuthErrorKind.SECURE_RANDOM_UNAVAILABLE: "Secure random source unavailable",
    AuthErrorKind.TRANSPORT_FAILURE: "Network error during token exchange",
    AuthErrorKind.NON_SUCCESS_STATUS: "Token endpoint returned an error status",
    AuthErrorKind.MALFORMED_TOKEN_RESPONSE: "Failed to parse token response",
    AuthErrorKind.MISSING_PKCE_VERIFIER: "Missing PKCE code verifier",
    AuthErrorKind.USER_CANCELLED: "Authentication cancelled",
    AuthErrorKind.PROVIDER_ERROR: "OAuth error",
    AuthErrorKind.NO_COOKIES_FOUND: "No authentication cookies found",
    AuthErrorKind.MISSING_ESSENTIAL_COOKIES: "Missing essential cookies",
    AuthErrorKind.EXPIRED_COOKIES: "Session cookies have expired",
    AuthErrorKind.TIMEOUT: "Authorization timed out",
    AuthErrorKind.STATE_MISMATCH: "State parameter mismatch",
    AuthErrorKind.BROWSER_UNAVAILABLE: "Failed to open OAuth URL",
    AuthErrorKind.MISSING_AUTHORIZATION_CODE: "No authorization code received",
    AuthErrorKind.INVALID_CALLBACK_URL: "Invalid callback URL",
    AuthErrorKind.OAUTH_REQUIRED: "OAuth authentication required first",
    AuthErrorKind.CREDENTIAL_STORAGE_FAILED: "Failed to save credentials to the keychain",
}


@dataclass(frozen=True)
class AuthFailure:
    """A single authentication failure.

    ``detail`` carries the provider's error string for PROVIDER_ERROR,
    ``status_code`` the HTTP status for NON_SUCCESS_STATUS and ``names``
    the offending cookie names for the cookie kinds.
    """

    kind: AuthErrorKind
    detail: Optional[str] = None
    status_code: Optional[int] = None
    names: tuple[str, ...] = field(default_factory=tuple)

    @property
    def message(self) -> str:
        base = _DEFAULT_MESSAGES[self.kind]
        if self.kind is AuthErrorKind.NON_SUCCESS_STATUS and self.status_code is not None:
            base = f"{base} ({self.status_code})"
        if self.names:
            base = f"{base}: {', '.join(self.names)}"
        if self.detail:
            base = f"{base}: {self.detail}"
        return base

    def __str__(self) -> str:
        return self.message


class AuthFlowError(Exception):
    """Raised inside the auth flows; carries an ``AuthFailure``."""

    def __init__(
        self,
        kind: AuthErrorKind,
        detail: Optional[str] = None,
        status_code: Optional[int] = None,
        names: tuple[str, ...] = (),
    ):
        self.failure = AuthFailure(
            kind=kind, detail=detail, status_code=status_code, names=tuple(names)
        )
        super().__init__(self.failure.message)

    @property
    def kind(self) -> AuthErrorKind:
        return self.failure.kind
