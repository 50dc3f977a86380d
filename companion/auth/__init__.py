"""Auth module - OAuth sign-in, X.com session capture and secure storage."""

from .cookies import CookieExtractor, CookieStore, SessionCookie
from .keychain import CredentialStore
from .oauth_flow import FlowState, OAuthFlowController, OAuthResult
from .orchestrator import AlertMessage, AuthenticationOrchestrator, AuthOutcome, AuthStatus
from .pkce import PendingAuthorizationStore, generate_pkce_pair
from .session_browser import RedirectLinkGuard, SessionBrowser

__all__ = [
    "AlertMessage",
    "AuthOutcome",
    "AuthStatus",
    "AuthenticationOrchestrator",
    "CookieExtractor",
    "CookieStore",
    "CredentialStore",
    "FlowState",
    "OAuthFlowController",
    "OAuthResult",
    "PendingAuthorizationStore",
    "RedirectLinkGuard",
    "SessionBrowser",
    "SessionCookie",
    "generate_pkce_pair",
]
