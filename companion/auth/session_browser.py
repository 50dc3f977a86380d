"""Embedded X.com browser session.

Loads the X.com login page in a controlled web view, watches navigation to
detect a completed login, and hands the session cookies back to the caller.

X.com emits ``x-safari-https://`` links asking the OS to open the native
app. They are rewritten to plain https and loaded in the same surface.
``RedirectLinkGuard`` bounds those rewrites so a page that keeps emitting
the same link cannot loop forever.
"""

import logging
import threading
import time
from concurrent.futures import Future
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Optional
from urllib.parse import urlparse

from ..config import SessionSettings
from ..errors import AuthErrorKind, AuthFailure
from ..protocols import NavigationDecision, WebViewProtocol
from .cookies import CookieExtractor, SessionCookie

__all__ = [
    "GuardVerdict",
    "RedirectLinkGuard",
    "RedirectInterceptor",
    "SessionBrowser",
    "SessionResult",
]

logger = logging.getLogger(__name__)


class GuardVerdict(Enum):
    REWRITE = "rewrite"
    BREAK_LOOP = "break_loop"
    SUPPRESS = "suppress"


class RedirectLinkGuard:
    """Rate limit for automatic link-scheme rewrites.

    Keeps a sliding window of ``(url, timestamp)`` records. A URL rewritten
    ``max_conversions`` times inside the window breaks the loop; URLs on the
    relay host get a higher limit, and once rewritten are suppressed for
    ``relay_suppress_duration`` seconds even outside the window.
    """

    def __init__(
        self,
        window: float = 1.0,
        max_conversions: int = 2,
        max_relay_conversions: int = 4,
        relay_suppress_duration: float = 3.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.window = window
        self.max_conversions = max_conversions
        self.max_relay_conversions = max_relay_conversions
        self.relay_suppress_duration = relay_suppress_duration
        self._clock = clock
        self._conversions: list[tuple[str, float]] = []
        self._relay_history: dict[str, float] = {}

    @classmethod
    def from_settings(cls, settings: SessionSettings, clock: Callable[[], float] = time.monotonic) -> "RedirectLinkGuard":
        return cls(
            window=settings.conversion_window,
            max_conversions=settings.max_conversions,
            max_relay_conversions=settings.max_relay_conversions,
            relay_suppress_duration=settings.relay_suppress_duration,
            clock=clock,
        )

    def reset(self) -> None:
        self._conversions.clear()
        self._relay_history.clear()

    def evaluate(self, https_url: str, is_relay: bool = False) -> GuardVerdict:
        """Decide what to do with a rewrite of ``https_url`` happening now.

        A REWRITE verdict is recorded; the other verdicts are not.
        """
        now = self._clock()
        self._conversions = [(u, t) for u, t in self._conversions if now - t < self.window]

        if is_relay:
            self._relay_history = {
                u: t for u, t in self._relay_history.items()
                if now - t < self.relay_suppress_duration
            }
            last = self._relay_history.get(https_url)
            if last is not None:
                logger.info(f"Ignoring repeated relay link (converted {now - last:.2f}s ago): {https_url}")
                return GuardVerdict.SUPPRESS

        limit = self.max_relay_conversions if is_relay else self.max_conversions
        recent = [t for u, t in self._conversions if u == https_url]
        if len(recent) >= limit:
            logger.warning(
                f"Link rewrite loop detected: {https_url} converted "
                f"{len(recent)} times in {now - recent[0]:.2f}s"
            )
            return GuardVerdict.BREAK_LOOP

        self._conversions.append((https_url, now))
        if is_relay:
            self._relay_history[https_url] = now
        return GuardVerdict.REWRITE


@dataclass
class SessionResult:
    """Outcome of one embedded browser session."""

    success: bool
    cookies: list[SessionCookie] = field(default_factory=list)
    error: Optional[AuthFailure] = None


class RedirectInterceptor:
    """Navigation delegate that forwards app redirects and allows the rest.

    Used on its own for the embedded OAuth fallback, and as the base of
    ``SessionBrowser``.
    """

    def __init__(
        self,
        redirect_scheme: str,
        on_redirect_callback: Callable[[str], object],
        on_cancel: Optional[Callable[[], object]] = None,
    ):
        self.redirect_scheme = redirect_scheme.lower()
        self._on_redirect_callback = on_redirect_callback
        self._on_cancel = on_cancel

    def decide_policy(self, url: str) -> NavigationDecision:
        scheme = urlparse(url).scheme.lower()
        if scheme and scheme == self.redirect_scheme:
            logger.info("Intercepted app redirect, forwarding to OAuth flow")
            try:
                self._on_redirect_callback(url)
            except Exception as e:
                logger.error(f"Redirect handler failed: {e}")
            return NavigationDecision.CANCEL
        return NavigationDecision.ALLOW

    def page_finished(self) -> None:
        pass

    def navigation_failed(self, url: Optional[str], error: str) -> None:
        logger.warning(f"Navigation failed for {url}: {error}")

    def cancel(self) -> None:
        if self._on_cancel is not None:
            self._on_cancel()


class SessionBrowser(RedirectInterceptor):
    """Drives a web view through the X.com login and extracts the cookies."""

    def __init__(
        self,
        web_view: WebViewProtocol,
        extractor: CookieExtractor,
        settings: SessionSettings,
        redirect_scheme: str,
        on_redirect_callback: Callable[[str], object],
        guard: Optional[RedirectLinkGuard] = None,
    ):
        """Initialize the session browser.

        Args:
            web_view: Surface to drive
            extractor: Cookie allow-list and domain filter
            settings: Login URL, link scheme, relay host and guard limits
            redirect_scheme: The app's OAuth redirect scheme
            on_redirect_callback: Receives intercepted app redirects
            guard: Link rewrite guard (built from settings if omitted)
        """
        super().__init__(redirect_scheme, on_redirect_callback)
        self.web_view = web_view
        self.extractor = extractor
        self.settings = settings
        self.guard = guard or RedirectLinkGuard.from_settings(settings)
        self._lock = threading.Lock()
        self._future: Optional["Future[SessionResult]"] = None

    def begin(self) -> "Future[SessionResult]":
        """Reset the loop guard and load the login page.

        Returns:
            Future resolved once cookies are extracted or the user cancels
        """
        with self._lock:
            self.guard.reset()
            self._future = Future()
            future = self._future
        logger.info(f"Loading X.com login page: {self.settings.login_url}")
        self.web_view.load(self.settings.login_url)
        return future

    def _load_login_page(self) -> None:
        self.web_view.load(self.settings.login_url)

    def decide_policy(self, url: str) -> NavigationDecision:
        parsed = urlparse(url)
        scheme = parsed.scheme.lower()

        if scheme != self.settings.link_scheme.lower():
            decision = super().decide_policy(url)
            if decision is NavigationDecision.ALLOW:
                logger.debug(f"Allowing navigation: {url}")
            return decision

        https_url = "https" + url[len(parsed.scheme):]
        is_relay = self.settings.relay_host in (parsed.hostname or "")
        verdict = self.guard.evaluate(https_url, is_relay=is_relay)

        if verdict is GuardVerdict.REWRITE:
            logger.info(f"Converting app link to HTTPS: {https_url}")
            self.web_view.load(https_url)
        else:
            logger.info("Reloading login page to break link rewrite loop")
            self._load_login_page()
        return NavigationDecision.CANCEL

    def page_finished(self) -> None:
        """Check whether the login completed after every page load."""
        if self._is_done():
            return

        jar = self.web_view.cookies()
        if self.extractor.has_auth_cookie(jar):
            logger.info("Found auth_token cookie, extracting session cookies")
            self._extract(jar)
            return

        current = self.web_view.current_url() or ""
        path = urlparse(current).path
        if any(marker in path for marker in self.settings.success_path_markers):
            logger.info("On home page, attempting cookie extraction")
            self._extract(jar)
        else:
            logger.debug(f"On page {current} - waiting for login")

    def navigation_failed(self, url: Optional[str], error: str) -> None:
        if url and urlparse(url).scheme.lower() == self.settings.link_scheme.lower():
            # Interrupted by our own rewrite.
            logger.debug(f"Navigation to {url} interrupted: {error}")
            return
        super().navigation_failed(url, error)

    def cancel(self) -> None:
        """User closed the browser without completing the login."""
        logger.info("X.com login cancelled by user")
        self._finish(SessionResult(success=False, error=AuthFailure(AuthErrorKind.USER_CANCELLED)))

    def _extract(self, jar: list[SessionCookie]) -> None:
        extraction = self.extractor.extract(jar)
        if extraction.success:
            result = SessionResult(success=True, cookies=extraction.cookies)
        else:
            result = SessionResult(success=False, error=extraction.error)
        self._finish(result)

    def _is_done(self) -> bool:
        with self._lock:
            return self._future is None or self._future.done()

    def _finish(self, result: SessionResult) -> None:
        with self._lock:
            future = self._future
            if future is None or future.done():
                return
        # Dismiss before completing, never after.
        self.web_view.dismiss()
        with self._lock:
            if not future.done():
                future.set_result(result)
