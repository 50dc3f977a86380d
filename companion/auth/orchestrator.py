"""Authentication orchestration.

Sequences the two authentication steps and exposes the signals the UI
binds to:

1. OAuth with The Algorithm (bearer token)
2. X.com login in the embedded browser (session cookies)

Failures never escape as exceptions; every operation returns an
``AuthOutcome`` carrying the alert to show. Nothing is retried
automatically.
"""

import logging
import threading
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.date import DateTrigger

from ..api.companion_client import CompanionApiClient
from ..api.http_client import CompanionClientError
from ..config import Config
from ..errors import AuthErrorKind, AuthFailure, AuthFlowError
from ..protocols import HostedWebView
from .cookies import CookieExtractor, CookieStore, SessionCookie
from .keychain import TOKEN_ACCOUNT, CredentialStore
from .oauth_flow import OAuthFlowController, OAuthResult
from .pkce import PendingAuthorizationStore
from .session_browser import SessionBrowser

__all__ = ["AuthenticationOrchestrator", "AuthOutcome", "AuthStatus", "AlertMessage"]

logger = logging.getLogger(__name__)

_OAUTH_TIMEOUT_JOB = "oauth_timeout"

# Slack on top of the scheduled timeout before giving up on the future.
_RESULT_GRACE_SECONDS = 5


@dataclass(frozen=True)
class AlertMessage:
    """User-facing alert."""

    title: str
    message: str


@dataclass
class AuthOutcome:
    """Result of a user-initiated authentication action."""

    success: bool
    alert: AlertMessage
    error: Optional[AuthFailure] = None


@dataclass
class AuthStatus:
    """Snapshot of the authentication signals."""

    has_token: bool
    has_session_cookies: bool

    @property
    def is_authenticated(self) -> bool:
        return self.has_token and self.has_session_cookies

    @property
    def session_step_enabled(self) -> bool:
        return self.has_token and not self.has_session_cookies


def _failure_alert(failure: Optional[AuthFailure], fallback: str) -> AlertMessage:
    return AlertMessage(
        title="Authentication Failed",
        message=failure.message if failure else fallback,
    )


class AuthenticationOrchestrator:
    """Owns the auth services and runs the two-step sign-in."""

    def __init__(
        self,
        config: Config,
        credentials: Optional[CredentialStore] = None,
        api_client: Optional[CompanionApiClient] = None,
        oauth: Optional[OAuthFlowController] = None,
        extractor: Optional[CookieExtractor] = None,
        cookie_store: Optional[CookieStore] = None,
        web_view_factory: Optional[Callable[[], HostedWebView]] = None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        """Initialize the orchestrator.

        Args:
            config: Application configuration
            credentials: Keychain-backed store (default: config's service)
            api_client: Backend client (default: reads the token from credentials)
            oauth: OAuth controller (default: built from config)
            extractor: Cookie filter (default: config's target domains)
            cookie_store: Cookie persistence (default: in credentials)
            web_view_factory: Creates the browser for the session step
            scheduler: APScheduler instance for the OAuth timeout
        """
        self.config = config
        self.credentials = credentials or CredentialStore(config.keychain_service)
        self.api = api_client or CompanionApiClient(
            config.api_url,
            token_provider=lambda: self.credentials.read(TOKEN_ACCOUNT),
        )
        self.extractor = extractor or CookieExtractor(target_domains=config.session.target_domains)
        self.cookie_store = cookie_store or CookieStore(self.credentials, self.extractor)
        self.oauth = oauth or OAuthFlowController(
            settings=config.oauth,
            authorize_url=config.authorize_url,
            token_url=config.token_url,
            credentials=self.credentials,
            pending_store=PendingAuthorizationStore(Config.get_data_dir() / "pending_authorization.json"),
            api_client=self.api,
        )
        self._web_view_factory = web_view_factory
        self.scheduler = scheduler or BackgroundScheduler()
        self._busy = threading.Lock()
        self._on_state_change: Optional[Callable[[AuthStatus], None]] = None

    def set_state_callback(self, callback: Callable[[AuthStatus], None]) -> None:
        """Set callback invoked after every signal update."""
        self._on_state_change = callback

    # -- Signals -----------------------------------------------------------

    def has_token(self) -> bool:
        return self.credentials.has(TOKEN_ACCOUNT)

    def has_session_cookies(self) -> bool:
        return self.cookie_store.has_valid_cookies()

    def is_authenticated(self) -> bool:
        return self.has_token() and self.has_session_cookies()

    def status(self) -> AuthStatus:
        return AuthStatus(has_token=self.has_token(), has_session_cookies=self.has_session_cookies())

    def _notify(self) -> None:
        if self._on_state_change is None:
            return
        status = self.status()
        try:
            self._on_state_change(status)
        except Exception as e:
            logger.error(f"State callback failed: {e}")

    # -- Step 1: OAuth -------------------------------------------------------

    def authenticate_oauth(self, timeout: Optional[float] = None) -> AuthOutcome:
        """Run the OAuth flow and wait for it to finish.

        Args:
            timeout: Seconds to wait for the redirect (default from config)
        """
        timeout = self.config.oauth.timeout_seconds if timeout is None else timeout
        if not self._busy.acquire(blocking=False):
            return AuthOutcome(
                success=False,
                alert=AlertMessage("Please Wait", "Authentication is already in progress."),
            )
        try:
            logger.info("Authenticating with The Algorithm...")
            future = self.oauth.start()
            self._schedule_timeout(timeout)
            try:
                result = future.result(timeout=timeout + _RESULT_GRACE_SECONDS)
            except FutureTimeoutError:
                self.oauth.expire()
                result = future.result() if future.done() else OAuthResult(
                    success=False, error=AuthFailure(AuthErrorKind.TIMEOUT)
                )
            finally:
                self._cancel_timeout()
        finally:
            self._busy.release()

        self._notify()
        if result.success:
            logger.info("OAuth step complete")
            return AuthOutcome(
                success=True,
                alert=AlertMessage(
                    "Success!",
                    "OAuth authentication completed successfully. "
                    "Now authenticate with X.com to continue.",
                ),
            )
        logger.warning(f"OAuth step failed: {result.error}")
        return AuthOutcome(
            success=False,
            alert=_failure_alert(
                result.error, "Failed to authenticate with The Algorithm. Please try again."
            ),
            error=result.error,
        )

    def _schedule_timeout(self, timeout: float) -> None:
        if not self.scheduler.running:
            self.scheduler.start()
        self.scheduler.add_job(
            self.oauth.expire,
            trigger=DateTrigger(run_date=datetime.now() + timedelta(seconds=timeout)),
            id=_OAUTH_TIMEOUT_JOB,
            replace_existing=True,
        )

    def _cancel_timeout(self) -> None:
        try:
            self.scheduler.remove_job(_OAUTH_TIMEOUT_JOB)
        except JobLookupError:
            # Already fired.
            pass

    def handle_callback(self, url: str) -> AuthOutcome:
        """Complete an OAuth redirect delivered by the OS (app-open handler)."""
        result = self.oauth.handle_callback(url)
        self._notify()
        if result.success:
            return AuthOutcome(
                success=True,
                alert=AlertMessage("Success!", "OAuth authentication completed successfully."),
            )
        return AuthOutcome(
            success=False,
            alert=_failure_alert(result.error, "Failed to authenticate with The Algorithm."),
            error=result.error,
        )

    # -- Step 2: X.com session -------------------------------------------------

    def authenticate_session(self, web_view: Optional[HostedWebView] = None) -> AuthOutcome:
        """Log in to X.com in the embedded browser and keep the cookies.

        Args:
            web_view: Browser to use (default from the factory)
        """
        if not self.has_token():
            failure = AuthFailure(AuthErrorKind.OAUTH_REQUIRED)
            return AuthOutcome(success=False, alert=_failure_alert(failure, ""), error=failure)

        if web_view is None:
            if self._web_view_factory is None:
                failure = AuthFailure(AuthErrorKind.BROWSER_UNAVAILABLE)
                return AuthOutcome(success=False, alert=_failure_alert(failure, ""), error=failure)
            web_view = self._web_view_factory()

        browser = SessionBrowser(
            web_view,
            self.extractor,
            self.config.session,
            redirect_scheme=self.config.oauth.redirect_scheme,
            on_redirect_callback=self.oauth.handle_callback,
        )
        web_view.attach(browser)

        logger.info("Opening X.com authentication...")
        future = browser.begin()
        try:
            web_view.run(until=future)
        except AuthFlowError as e:
            return AuthOutcome(success=False, alert=_failure_alert(e.failure, ""), error=e.failure)

        if not future.done():
            # Loop ended without a result (window went away).
            browser.cancel()
        result = future.result()

        if not result.success:
            logger.warning(f"X.com step failed: {result.error}")
            return AuthOutcome(
                success=False,
                alert=_failure_alert(result.error, "Failed to authenticate with X.com. Please try again."),
                error=result.error,
            )

        failure = self.extractor.check_session(result.cookies)
        if failure is not None:
            logger.warning(f"Extracted cookies are not usable: {failure}")
            return AuthOutcome(success=False, alert=_failure_alert(failure, ""), error=failure)

        if not self.cookie_store.save(result.cookies):
            logger.error("Failed to store cookies in keychain")
            failure = AuthFailure(AuthErrorKind.CREDENTIAL_STORAGE_FAILED)
            self._notify()
            return AuthOutcome(success=False, alert=_failure_alert(failure, ""), error=failure)
        self._relay_cookies(result.cookies)
        self._notify()

        return AuthOutcome(
            success=True,
            alert=AlertMessage("Success!", "X.com authentication completed successfully. You're all set!"),
        )

    def _relay_cookies(self, cookies: list[SessionCookie]) -> None:
        """Send cookies to the backend. Best effort: local state is already valid."""
        try:
            self.api.store_cookies(cookies)
            logger.info("Cookies successfully sent to backend")
        except CompanionClientError as e:
            logger.warning(f"Failed to send cookies to backend: {e}")

    # -- Reset ---------------------------------------------------------------

    def clear_all(self) -> AuthOutcome:
        """Remove the token and the cookies."""
        self.credentials.delete(TOKEN_ACCOUNT)
        self.cookie_store.clear()
        logger.info("Cleared all authentication data")
        self._notify()
        return AuthOutcome(
            success=True,
            alert=AlertMessage(
                "Data Cleared",
                "All authentication data has been removed. You'll need to authenticate again.",
            ),
        )

    def logout_and_reauthenticate(self) -> AuthOutcome:
        """Clear everything and ask the user to start OAuth again."""
        self.clear_all()
        return AuthOutcome(
            success=True,
            alert=AlertMessage("Signed Out", "Please authenticate with The Algorithm again."),
        )

    def close(self) -> None:
        """Stop the scheduler and release the HTTP session."""
        self.oauth.cancel()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        self.api.close()

    def __enter__(self) -> "AuthenticationOrchestrator":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
