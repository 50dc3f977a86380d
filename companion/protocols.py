"""Protocol types for the auth flow collaborators.

Defines the interfaces the session browser and orchestrator require, so a
real browser can be swapped for a fake in tests.
"""

from concurrent.futures import Future
from enum import Enum
from typing import TYPE_CHECKING, Optional, Protocol, runtime_checkable

if TYPE_CHECKING:
    from .auth.cookies import SessionCookie

__all__ = ["NavigationDecision", "WebViewProtocol", "NavigationDelegate", "HostedWebView"]


class NavigationDecision(Enum):
    """Answer to a pending navigation."""

    ALLOW = "allow"
    CANCEL = "cancel"


@runtime_checkable
class WebViewProtocol(Protocol):
    """A controllable browser surface."""

    def load(self, url: str) -> None: ...

    def current_url(self) -> Optional[str]: ...

    def cookies(self) -> list["SessionCookie"]: ...

    def dismiss(self) -> None: ...


@runtime_checkable
class NavigationDelegate(Protocol):
    """Receives browser events from a web view."""

    def decide_policy(self, url: str) -> NavigationDecision: ...

    def page_finished(self) -> None: ...

    def navigation_failed(self, url: Optional[str], error: str) -> None: ...

    def cancel(self) -> None: ...


@runtime_checkable
class HostedWebView(WebViewProtocol, Protocol):
    """A web view that owns its event loop.

    ``run`` blocks the calling thread, delivering events to the attached
    delegate, until ``until`` resolves or the view is dismissed.
    """

    def attach(self, delegate: NavigationDelegate) -> None: ...

    def run(self, until: Optional[Future] = None) -> None: ...
