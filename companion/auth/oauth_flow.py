"""OAuth 2.0 Authorization Code + PKCE flow against The Algorithm.

States::

    IDLE -> AUTHORIZATION_REQUESTED -> AWAITING_CALLBACK -> EXCHANGING_CODE
         -> COMPLETE | FAILED

Security features:
- State parameter (CSRF protection), checked against the pending request
- PKCE (S256); the verifier is persisted before the browser is opened so a
  redirect delivered to a fresh process can still be exchanged

Every attempt gets its own ``CallbackRegistration``. Its future resolves
exactly once: on success, on failure, on cancel, on timeout, or when a newer
attempt supersedes it. Completions that arrive for a torn-down registration
are dropped.
"""

import logging
import threading
import webbrowser
from concurrent.futures import Future
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional
from urllib.parse import parse_qs, urlencode, urlparse

from ..api.companion_client import CompanionApiClient
from ..config import OAuthSettings
from ..errors import AuthErrorKind, AuthFailure, AuthFlowError
from .callback_server import LoopbackCallbackServer, is_loopback_redirect
from .keychain import TOKEN_ACCOUNT, CredentialStore
from .pkce import (
    PendingAuthorization,
    PendingAuthorizationStore,
    generate_pkce_pair,
    generate_state,
)

__all__ = [
    "OAuthFlowController",
    "OAuthResult",
    "FlowState",
    "CallbackRegistration",
    "build_authorization_url",
]

logger = logging.getLogger(__name__)


class FlowState(Enum):
    IDLE = "idle"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    AWAITING_CALLBACK = "awaiting_callback"
    EXCHANGING_CODE = "exchanging_code"
    COMPLETE = "complete"
    FAILED = "failed"


_CANCELLABLE = {FlowState.AUTHORIZATION_REQUESTED, FlowState.AWAITING_CALLBACK}
_EXPIRABLE = _CANCELLABLE | {FlowState.EXCHANGING_CODE}


@dataclass
class OAuthResult:
    """Result of one authorization attempt."""

    success: bool
    token: Optional[str] = None
    error: Optional[AuthFailure] = None


class CallbackRegistration:
    """Listener for the redirect of a single authorization attempt."""

    def __init__(self, state: str):
        self.state = state
        self.future: "Future[OAuthResult]" = Future()

    def resolve(self, result: OAuthResult) -> None:
        if not self.future.done():
            self.future.set_result(result)


def build_authorization_url(
    authorize_url: str,
    client_id: str,
    redirect_uri: str,
    scope: str,
    state: str,
    code_challenge: str,
) -> str:
    """Build the authorization request URL.

    Raises:
        AuthFlowError: INVALID_AUTHORIZATION_URL if the endpoint is unusable
    """
    parsed = urlparse(authorize_url)
    if parsed.scheme not in ("http", "https") or not parsed.netloc:
        raise AuthFlowError(AuthErrorKind.INVALID_AUTHORIZATION_URL, authorize_url)

    query = urlencode(
        {
            "client_id": client_id,
            "redirect_uri": redirect_uri,
            "response_type": "code",
            "scope": scope,
            "state": state,
            "code_challenge": code_challenge,
            "code_challenge_method": "S256",
        },
        safe=",",
    )
    separator = "&" if parsed.query else "?"
    return f"{authorize_url}{separator}{query}"


def _first(params: dict, name: str) -> Optional[str]:
    values = params.get(name)
    return values[0] if values else None


class OAuthFlowController:
    """Drives the authorization-code exchange.

    The verifier is cleared at every ``start()`` and after a successful
    exchange. Failed attempts keep it on disk, so a redirect for the same
    grant handed to a fresh process by the app-open handler can still be
    redeemed. Within this process a failed attempt is over: later redirects
    are ignored until the next ``start()``.
    """

    def __init__(
        self,
        settings: OAuthSettings,
        authorize_url: str,
        token_url: str,
        credentials: CredentialStore,
        pending_store: PendingAuthorizationStore,
        api_client: CompanionApiClient,
        browser_opener: Callable[[str], bool] = webbrowser.open,
        embedded_launcher: Optional[Callable[[str], object]] = None,
    ):
        """Initialize the controller.

        Args:
            settings: OAuth client settings
            authorize_url: Full authorization endpoint URL
            token_url: Full token endpoint URL
            credentials: Where the bearer token is stored
            pending_store: Durable scratch for the in-flight verifier
            api_client: Performs the token exchange
            browser_opener: External browser launcher; returns False on failure
            embedded_launcher: Fallback; opens the URL in an embedded surface
                and returns an object with ``dismiss()``
        """
        self.settings = settings
        self.authorize_url = authorize_url
        self.token_url = token_url
        self.credentials = credentials
        self.pending_store = pending_store
        self.api = api_client
        self._browser_opener = browser_opener
        self._embedded_launcher = embedded_launcher

        self._lock = threading.RLock()
        self._state = FlowState.IDLE
        self._registration: Optional[CallbackRegistration] = None
        self._pending: Optional[PendingAuthorization] = None
        self._server: Optional[LoopbackCallbackServer] = None
        self._surface: Optional[object] = None
        self.last_failure: Optional[AuthFailure] = None

    @property
    def state(self) -> FlowState:
        return self._state

    def _transition(self, new_state: FlowState) -> None:
        logger.debug(f"OAuth flow: {self._state.value} -> {new_state.value}")
        self._state = new_state

    # -- Starting ----------------------------------------------------------

    def start(self) -> "Future[OAuthResult]":
        """Begin a new authorization attempt.

        Returns:
            Future resolved with the OAuthResult of this attempt
        """
        with self._lock:
            previous = self._registration
            released = self._teardown()

            # Clear any old PKCE verifier from previous attempts
            self.pending_store.clear()
            self._pending = None
            self.last_failure = None
            self._transition(FlowState.AUTHORIZATION_REQUESTED)

            registration = CallbackRegistration(state="")
            self._registration = registration
            try:
                url = self._prepare(registration)
            except AuthFlowError as e:
                logger.error(f"Failed to prepare authorization request: {e}")
                url = None
                failure = e.failure
            else:
                self._transition(FlowState.AWAITING_CALLBACK)

        _release(*released)
        if previous is not None:
            previous.resolve(
                OAuthResult(success=False, error=AuthFailure(AuthErrorKind.USER_CANCELLED, "superseded"))
            )
        if url is None:
            self._fail(registration, failure)
            return registration.future

        self._dispatch(url, registration)
        return registration.future

    def _prepare(self, registration: CallbackRegistration) -> str:
        """Generate PKCE + state, persist them and build the URL (lock held)."""
        verifier, challenge = generate_pkce_pair()
        state = generate_state()
        registration.state = state

        redirect_uri = self.settings.redirect_uri
        if is_loopback_redirect(redirect_uri):
            self._server = LoopbackCallbackServer(redirect_uri, self.handle_callback)
            try:
                redirect_uri = self._server.start()
            except OSError as e:
                self._server = None
                raise AuthFlowError(AuthErrorKind.BROWSER_UNAVAILABLE, f"callback server: {e}") from e

        url = build_authorization_url(
            self.authorize_url,
            client_id=self.settings.client_id,
            redirect_uri=redirect_uri,
            scope=self.settings.scope,
            state=state,
            code_challenge=challenge,
        )

        # Persist before dispatch: the redirect may reach a fresh process.
        self._pending = PendingAuthorization.create(verifier, state, redirect_uri)
        try:
            self.pending_store.save(self._pending)
            logger.info("Saved PKCE verifier for token exchange")
        except OSError as e:
            logger.warning(f"Could not persist PKCE verifier, keeping it in memory only: {e}")
        return url

    def _dispatch(self, url: str, registration: CallbackRegistration) -> None:
        """Open the authorization URL, falling back to the embedded surface."""
        opened = False
        try:
            opened = bool(self._browser_opener(url))
        except webbrowser.Error as e:
            logger.warning(f"External browser unavailable: {e}")

        if opened:
            logger.info("Opened authorization URL in external browser")
            return

        if self._embedded_launcher is None:
            self._fail(registration, AuthFailure(AuthErrorKind.BROWSER_UNAVAILABLE))
            return

        logger.info("Falling back to embedded browser for authorization")
        try:
            surface = self._embedded_launcher(url)
        except Exception as e:
            logger.error(f"Embedded browser failed to launch: {e}")
            self._fail(registration, AuthFailure(AuthErrorKind.BROWSER_UNAVAILABLE, str(e)))
            return

        with self._lock:
            if registration is self._registration:
                self._surface = surface
                return
        # The attempt already ended while the surface was opening.
        surface.dismiss()

    # -- Callback ----------------------------------------------------------

    def handle_callback(self, url: str) -> OAuthResult:
        """Process the redirect URL and exchange the code.

        Works without a prior ``start()`` in this process (redirect delivered
        to a fresh instance): the verifier then comes from durable storage.
        """
        logger.info("OAuth callback received")
        with self._lock:
            registration = self._registration
            if registration is None and self._state is not FlowState.IDLE:
                logger.warning("Ignoring OAuth callback: no authorization in progress")
                return OAuthResult(
                    success=False,
                    error=AuthFailure(AuthErrorKind.INVALID_CALLBACK_URL, "no authorization in progress"),
                )
            try:
                code, pending = self._accept_callback(url)
            except AuthFlowError as e:
                logger.warning(f"OAuth callback rejected: {e}")
                return self._fail(registration, e.failure)
            self._transition(FlowState.EXCHANGING_CODE)

        try:
            token = self.api.exchange_code(
                self.token_url,
                code=code,
                code_verifier=pending.verifier,
                client_id=self.settings.client_id,
                redirect_uri=pending.redirect_uri,
            )
        except AuthFlowError as e:
            logger.error(f"Token exchange failed: {e}")
            return self._fail(registration, e.failure)

        return self._complete(registration, token)

    def _accept_callback(self, url: str) -> tuple[str, PendingAuthorization]:
        """Validate the redirect (lock held). Returns (code, pending request)."""
        parsed = urlparse(url)
        if not parsed.scheme:
            raise AuthFlowError(AuthErrorKind.INVALID_CALLBACK_URL, url)

        params = parse_qs(parsed.query)
        code = _first(params, "code")
        error = _first(params, "error")
        state = _first(params, "state")

        # In-memory copy first, durable copy as fallback.
        pending = self._pending
        if pending is None:
            pending = self.pending_store.load()
            if pending is not None:
                logger.info("Retrieved PKCE verifier from durable storage")

        if state is None:
            logger.warning("OAuth callback carries no state parameter")
        elif pending is not None and state != pending.state:
            logger.warning("State parameter mismatch - possible CSRF attempt")
            raise AuthFlowError(AuthErrorKind.STATE_MISMATCH)

        if code is None:
            if error is not None:
                raise AuthFlowError(AuthErrorKind.PROVIDER_ERROR, error)
            raise AuthFlowError(AuthErrorKind.MISSING_AUTHORIZATION_CODE)

        if pending is None:
            raise AuthFlowError(AuthErrorKind.MISSING_PKCE_VERIFIER)
        logger.info(f"Authorization code received ({code[:8]}...)")
        return code, pending

    # -- Termination ---------------------------------------------------------

    def cancel(self) -> bool:
        """Cancel an attempt that has not reached the token exchange.

        Returns:
            True if an attempt was cancelled
        """
        with self._lock:
            if self._state not in _CANCELLABLE:
                return False
            registration = self._registration
        logger.info("OAuth authorization cancelled")
        self._fail(registration, AuthFailure(AuthErrorKind.USER_CANCELLED))
        return True

    def expire(self) -> bool:
        """Caller-side timeout. Any completion arriving later is ignored.

        Returns:
            True if an attempt was expired
        """
        with self._lock:
            if self._state not in _EXPIRABLE:
                return False
            registration = self._registration
        logger.warning("Authorization timed out (no callback received)")
        self._fail(registration, AuthFailure(AuthErrorKind.TIMEOUT))
        return True

    def _fail(self, registration: Optional[CallbackRegistration], failure: AuthFailure) -> OAuthResult:
        result = OAuthResult(success=False, error=failure)
        with self._lock:
            if registration is not self._registration:
                logger.info(f"Discarding stale OAuth completion ({failure.kind.value})")
                return result
            self._transition(FlowState.FAILED)
            self.last_failure = failure
            released = self._teardown()
        # Dismiss before completing, never after.
        _release(*released)
        if registration is not None:
            registration.resolve(result)
        return result

    def _complete(self, registration: Optional[CallbackRegistration], token: str) -> OAuthResult:
        with self._lock:
            if registration is not self._registration:
                logger.warning("Token exchange finished after the attempt ended; discarding token")
                return OAuthResult(success=False, error=self.last_failure or AuthFailure(AuthErrorKind.TIMEOUT))

            stored = self.credentials.save(TOKEN_ACCOUNT, token)
            if stored:
                # Clear the stored verifier after successful exchange
                self.pending_store.clear()
                self._pending = None
                self._transition(FlowState.COMPLETE)
                released = self._teardown()

        if not stored:
            logger.error("Failed to store OAuth token in keychain")
            return self._fail(registration, AuthFailure(AuthErrorKind.CREDENTIAL_STORAGE_FAILED))

        _release(*released)
        result = OAuthResult(success=True, token=token)
        if registration is not None:
            registration.resolve(result)
        logger.info("OAuth authorization complete")
        return result

    def _teardown(self) -> tuple:
        """Unregister the callback and detach the server and surface (lock held).

        The loopback handler takes the lock, so the detached server is
        stopped by the caller after releasing it.

        Returns:
            (loopback server, embedded surface), either may be None
        """
        self._registration = None
        server, self._server = self._server, None
        surface, self._surface = self._surface, None
        return server, surface


def _release(server: Optional[LoopbackCallbackServer], surface: Optional[object]) -> None:
    if server is not None:
        server.stop()
    if surface is not None:
        surface.dismiss()
