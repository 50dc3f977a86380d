"""Algorithm Companion - command line entry point."""

import argparse
import logging
import sys
import webbrowser
from typing import Callable, Optional

from . import __version__
from .api import CompanionApiClient
from .auth import (
    AuthenticationOrchestrator,
    CookieExtractor,
    CredentialStore,
    OAuthFlowController,
    PendingAuthorizationStore,
)
from .auth.callback_server import is_loopback_redirect
from .auth.keychain import TOKEN_ACCOUNT
from .auth.orchestrator import AlertMessage, AuthOutcome
from .auth.playwright_view import PlaywrightWebView, open_embedded
from .auth.session_browser import RedirectInterceptor
from .config import Config, setup_logging

logger = logging.getLogger(__name__)


def system_browser_opener(redirect_uri: str) -> Callable[[str], bool]:
    """Pick the external browser launcher for ``redirect_uri``.

    Only a loopback redirect finds its way back from the system browser.
    For a custom scheme nothing on this machine routes the redirect to the
    waiting process, so the launcher declines and the OAuth controller falls
    back to the embedded surface, which intercepts the scheme itself.
    """
    if is_loopback_redirect(redirect_uri):
        return webbrowser.open
    return _decline_system_browser


def _decline_system_browser(url: str) -> bool:
    logger.debug("Custom-scheme redirect; not using the system browser")
    return False


class CompanionApp:
    """Wires the auth services together from the loaded configuration."""

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config.load()
        setup_logging(self.config.debug_mode)

        logger.info(f"Algorithm Companion {__version__} starting...")
        logger.info(f"Using API URL: {self.config.api_url}")

        self.credentials = CredentialStore(self.config.keychain_service)
        self.api = CompanionApiClient(
            self.config.api_url,
            token_provider=lambda: self.credentials.read(TOKEN_ACCOUNT),
        )
        self.oauth = OAuthFlowController(
            settings=self.config.oauth,
            authorize_url=self.config.authorize_url,
            token_url=self.config.token_url,
            credentials=self.credentials,
            pending_store=PendingAuthorizationStore(
                Config.get_data_dir() / "pending_authorization.json"
            ),
            api_client=self.api,
            browser_opener=system_browser_opener(self.config.oauth.redirect_uri),
            embedded_launcher=self._open_embedded_oauth,
        )
        self.orchestrator = AuthenticationOrchestrator(
            self.config,
            credentials=self.credentials,
            api_client=self.api,
            oauth=self.oauth,
            extractor=CookieExtractor(target_domains=self.config.session.target_domains),
            web_view_factory=self._new_web_view,
        )
        self._shutdown_done = False

    def _new_web_view(self) -> PlaywrightWebView:
        return PlaywrightWebView(
            user_agent=self.config.session.user_agent,
            headless=self.config.session.headless,
        )

    def _open_embedded_oauth(self, url: str) -> PlaywrightWebView:
        interceptor = RedirectInterceptor(
            self.config.oauth.redirect_scheme,
            on_redirect_callback=self.oauth.handle_callback,
            on_cancel=self.oauth.cancel,
        )
        return open_embedded(
            url,
            interceptor,
            user_agent=self.config.session.user_agent,
            headless=self.config.session.headless,
        )

    # -- Commands ------------------------------------------------------------

    def status(self, args: argparse.Namespace) -> int:
        status = self.orchestrator.status()
        print(f"OAuth token:      {'yes' if status.has_token else 'no'}")
        print(f"X.com session:    {'yes' if status.has_session_cookies else 'no'}")
        print(f"Authenticated:    {'yes' if status.is_authenticated else 'no'}")
        if status.session_step_enabled:
            print("Next step: run 'algorithm-companion session' to connect X.com")
        elif not status.has_token:
            print("Next step: run 'algorithm-companion login'")

        cookies = self.orchestrator.cookie_store.load()
        if args.verbose and cookies:
            print()
            print(self.orchestrator.extractor.summary(cookies))
        return 0

    def login(self, args: argparse.Namespace) -> int:
        return _report(self.orchestrator.authenticate_oauth(timeout=args.timeout))

    def session(self, args: argparse.Namespace) -> int:
        return _report(self.orchestrator.authenticate_session())

    def callback(self, args: argparse.Namespace) -> int:
        return _report(self.orchestrator.handle_callback(args.url))

    def logout(self, args: argparse.Namespace) -> int:
        if args.reauthenticate:
            return _report(self.orchestrator.logout_and_reauthenticate())
        return _report(self.orchestrator.clear_all())

    def health(self, args: argparse.Namespace) -> int:
        healthy, data = self.api.check_health()
        if healthy:
            message = "API is operational and responding normally."
            version = data.get("version")
            if isinstance(version, str):
                message += f"\n\nVersion: {version}"
            _show(AlertMessage("API Health: Good", message))
            return 0
        _show(
            AlertMessage(
                "API Health: Issues",
                "The API is not responding. Please check your network connection and try again later.",
            )
        )
        return 1

    # -- Lifecycle -----------------------------------------------------------

    def _shutdown(self) -> None:
        """Release resources. Safe to call multiple times."""
        if self._shutdown_done:
            return
        self._shutdown_done = True
        self.orchestrator.close()

    def __enter__(self) -> "CompanionApp":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self._shutdown()


def _show(alert: AlertMessage) -> None:
    print(alert.title)
    print(alert.message)


def _report(outcome: AuthOutcome) -> int:
    _show(outcome.alert)
    return 0 if outcome.success else 1


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="algorithm-companion",
        description="Connect The Algorithm to your X.com account.",
    )
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", required=True)

    status = subparsers.add_parser("status", help="Show the authentication state.")
    status.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Also print the stored cookie validation summary.",
    )
    status.set_defaults(handler="status")

    login = subparsers.add_parser("login", help="Authenticate with The Algorithm (OAuth).")
    login.add_argument(
        "--timeout",
        type=float,
        default=None,
        help="Seconds to wait for the browser redirect (default: from config).",
    )
    login.set_defaults(handler="login")

    session = subparsers.add_parser("session", help="Log in to X.com in the embedded browser.")
    session.set_defaults(handler="session")

    callback = subparsers.add_parser(
        "callback",
        help="Complete an OAuth redirect (registered as the thealgorithm:// handler).",
    )
    callback.add_argument("url", help="The full redirect URL.")
    callback.set_defaults(handler="callback")

    logout = subparsers.add_parser("logout", help="Remove the stored token and cookies.")
    logout.add_argument(
        "--reauthenticate",
        action="store_true",
        help="Prompt to start the OAuth step again afterwards.",
    )
    logout.set_defaults(handler="logout")

    health = subparsers.add_parser("health", help="Check that the backend is reachable.")
    health.set_defaults(handler="health")
    return parser


def main(argv: Optional[list[str]] = None) -> None:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args(sys.argv[1:] if argv is None else argv)

    with CompanionApp() as app:
        exit_code = getattr(app, args.handler)(args)
    sys.exit(exit_code)


if __name__ == "__main__":
    main()
