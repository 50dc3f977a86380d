"""Playwright-backed web view.

Chromium does not route custom-scheme navigations (``x-safari-https:``,
``thealgorithm:``) through the network layer, so an init script reports
them to Python through an exposed binding. Ordinary main-frame navigations
go through ``context.route`` and are decided by the delegate before they
leave the browser.

All Playwright calls happen on the thread running ``run()``. ``load`` and
``dismiss`` only enqueue work and may be called from any thread.
"""

import logging
import queue
import threading
from concurrent.futures import Future
from typing import Optional

from playwright.sync_api import Error as PlaywrightError
from playwright.sync_api import sync_playwright

from ..errors import AuthErrorKind, AuthFlowError
from ..protocols import NavigationDecision, NavigationDelegate
from .cookies import SessionCookie

__all__ = ["PlaywrightWebView", "open_embedded"]

logger = logging.getLogger(__name__)

_BINDING = "__companionNavigate"

_NAVIGATION_HOOK = """
(() => {
    if (window.__companionHooked) { return; }
    window.__companionHooked = true;

    const isExternal = (url) => {
        try {
            const href = (typeof url === 'string' ? url : (url && url.href) || '');
            const scheme = href.split(':', 1)[0].toLowerCase();
            return href.includes(':') && !['http', 'https', 'about', 'blob', 'data', 'javascript'].includes(scheme);
        } catch (e) {
            return false;
        }
    };
    const report = (url) => { window.%(binding)s(String(url)); };
    const wrap = (fn) => function (url) {
        if (isExternal(url)) { report(url); return; }
        return fn.apply(this, arguments);
    };

    const proto = window.Location && window.Location.prototype;
    if (proto) {
        if (proto.assign) { proto.assign = wrap(proto.assign); }
        if (proto.replace) { proto.replace = wrap(proto.replace); }
        const href = Object.getOwnPropertyDescriptor(proto, 'href');
        if (href && href.set) {
            Object.defineProperty(proto, 'href', {
                configurable: href.configurable,
                enumerable: href.enumerable,
                get: href.get,
                set: function (value) {
                    if (isExternal(value)) { report(value); return; }
                    return href.set.call(this, value);
                },
            });
        }
    }
    if (window.open) { window.open = wrap(window.open); }

    document.addEventListener('click', (event) => {
        const anchor = event.target && event.target.closest && event.target.closest('a[href]');
        if (anchor && isExternal(anchor.href)) {
            event.preventDefault();
            report(anchor.href);
        }
    }, true);
})();
""" % {"binding": _BINDING}


class PlaywrightWebView:
    """Headed Chromium surface driven by a ``NavigationDelegate``."""

    def __init__(self, user_agent: str, headless: bool = False, poll_interval: float = 0.1):
        self.user_agent = user_agent
        self.headless = headless
        self.poll_interval = poll_interval
        self._delegate: Optional[NavigationDelegate] = None
        self._loads: "queue.Queue[str]" = queue.Queue()
        self._events: "queue.Queue[tuple[str, Optional[str], Optional[str]]]" = queue.Queue()
        self._dismissed = threading.Event()
        self._page = None
        self._context = None

    def attach(self, delegate: NavigationDelegate) -> None:
        self._delegate = delegate

    # WebView protocol

    def load(self, url: str) -> None:
        self._loads.put(url)

    def current_url(self) -> Optional[str]:
        return self._page.url if self._page is not None else None

    def cookies(self) -> list[SessionCookie]:
        if self._context is None:
            return []
        return [SessionCookie.from_playwright(c) for c in self._context.cookies()]

    def dismiss(self) -> None:
        self._dismissed.set()

    @property
    def dismissed(self) -> bool:
        return self._dismissed.is_set()

    # Event loop

    def run(self, until: Optional[Future] = None) -> None:
        """Open the browser and pump events until done.

        Raises:
            AuthFlowError: BROWSER_UNAVAILABLE if Chromium cannot be started
        """
        if self._delegate is None:
            raise RuntimeError("No navigation delegate attached")

        try:
            with sync_playwright() as p:
                browser = p.chromium.launch(headless=self.headless)
                try:
                    self._run_page(browser, until)
                finally:
                    self._page = None
                    self._context = None
                    try:
                        browser.close()
                    except PlaywrightError as e:
                        logger.debug(f"Browser already gone: {e}")
        except PlaywrightError as e:
            logger.error(f"Browser error: {e}")
            raise AuthFlowError(AuthErrorKind.BROWSER_UNAVAILABLE, str(e)) from e

    def _run_page(self, browser, until: Optional[Future]) -> None:
        context = browser.new_context(user_agent=self.user_agent)
        self._context = context
        context.add_init_script(_NAVIGATION_HOOK)
        context.expose_binding(_BINDING, self._on_script_navigation)
        context.route("**/*", self._on_route)

        page = context.new_page()
        self._page = page
        page.on("load", lambda _page: self._events.put(("load", None, None)))
        page.on("close", lambda _page: self._events.put(("close", None, None)))
        page.on("response", self._on_response)
        page.on("requestfailed", self._on_request_failed)

        while not self._dismissed.is_set() and not (until is not None and until.done()):
            self._drain(page)
            if self._dismissed.is_set():
                break
            try:
                page.wait_for_timeout(self.poll_interval * 1000)
            except PlaywrightError as e:
                if not page.is_closed():
                    raise
                # Closed while waiting; the queued close event never drains.
                logger.info(f"Browser window closed ({e})")
                self._delegate.cancel()
                self._dismissed.set()

    def _drain(self, page) -> None:
        while True:
            try:
                url = self._loads.get_nowait()
            except queue.Empty:
                break
            logger.debug(f"Loading {url}")
            try:
                page.goto(url)
            except PlaywrightError as e:
                # Aborted by our own route handler or interrupted by a rewrite.
                self._delegate.navigation_failed(url, str(e))

        while not self._dismissed.is_set():
            try:
                kind, url, error = self._events.get_nowait()
            except queue.Empty:
                break
            if kind == "load":
                self._delegate.page_finished()
            elif kind == "navigate":
                self._delegate.decide_policy(url)
            elif kind == "failed":
                self._delegate.navigation_failed(url, error or "")
            elif kind == "close":
                logger.info("Browser window closed")
                self._delegate.cancel()
                self._dismissed.set()

    # Playwright callbacks (run thread)

    def _on_script_navigation(self, source, url: str) -> None:
        logger.debug(f"Script navigation to {url}")
        self._events.put(("navigate", url, None))

    def _on_route(self, route, request) -> None:
        page = self._page
        if (
            page is not None
            and request.is_navigation_request()
            and request.frame == page.main_frame
            and self._delegate.decide_policy(request.url) is NavigationDecision.CANCEL
        ):
            route.abort()
            return
        route.continue_()

    def _on_response(self, response) -> None:
        # Server redirects to a custom scheme never reach the route handler.
        if not (300 <= response.status < 400 and response.request.is_navigation_request()):
            return
        location = response.headers.get("location", "")
        if ":" in location and not location.lower().startswith(("http:", "https:")):
            self._events.put(("navigate", location, None))

    def _on_request_failed(self, request) -> None:
        if request.is_navigation_request():
            self._events.put(("failed", request.url, request.failure))


def open_embedded(url: str, delegate: NavigationDelegate, user_agent: str, headless: bool = False) -> PlaywrightWebView:
    """Show ``url`` in a browser running on a daemon thread.

    Returns:
        The view; call ``dismiss()`` to close it
    """
    view = PlaywrightWebView(user_agent=user_agent, headless=headless)
    view.attach(delegate)
    view.load(url)

    def _run() -> None:
        try:
            view.run()
        except AuthFlowError as e:
            logger.error(f"Embedded browser stopped: {e}")
            delegate.cancel()

    threading.Thread(target=_run, daemon=True).start()
    return view
