"""Shared fixtures."""

from datetime import datetime, timedelta, timezone
from typing import Optional

import keyring
import pytest
from keyring.backend import KeyringBackend
from keyring.errors import PasswordDeleteError, PasswordSetError

from companion.auth.cookies import SessionCookie
from companion.auth.keychain import CredentialStore
from companion.auth.pkce import PendingAuthorizationStore


class MemoryKeyring(KeyringBackend):
    """Keyring backend that keeps everything in a dict."""

    priority = 1

    def __init__(self):
        super().__init__()
        self.entries: dict[tuple[str, str], str] = {}
        self.read_only: set[str] = set()

    def get_password(self, service: str, username: str) -> Optional[str]:
        return self.entries.get((service, username))

    def set_password(self, service: str, username: str, password: str) -> None:
        if username in self.read_only:
            raise PasswordSetError(f"Keychain locked for {username}")
        self.entries[(service, username)] = password

    def delete_password(self, service: str, username: str) -> None:
        try:
            del self.entries[(service, username)]
        except KeyError:
            raise PasswordDeleteError("Password not found")


@pytest.fixture(autouse=True)
def memory_keyring():
    """Never touch the real OS keychain."""
    previous = keyring.get_keyring()
    backend = MemoryKeyring()
    keyring.set_keyring(backend)
    yield backend
    keyring.set_keyring(previous)


@pytest.fixture
def credentials(memory_keyring):
    return CredentialStore("TestService")


@pytest.fixture
def pending_store(tmp_path):
    return PendingAuthorizationStore(tmp_path / "pending_authorization.json")


def make_cookie(
    name: str,
    value: str = "value",
    domain: str = ".x.com",
    expires_in: Optional[float] = 3600,
) -> SessionCookie:
    """Cookie expiring ``expires_in`` seconds from now (None = session cookie)."""
    expires_at = None
    if expires_in is not None:
        expires_at = datetime.now(timezone.utc) + timedelta(seconds=expires_in)
    return SessionCookie(name=name, value=value, domain=domain, expires_at=expires_at)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeWebView:
    """Records loads and serves a scripted cookie jar."""

    def __init__(self):
        self.loaded: list[str] = []
        self.jar: list[SessionCookie] = []
        self.url: Optional[str] = None
        self.events: list[str] = []
        self.delegate = None
        self.script = None

    # WebView protocol

    def load(self, url: str) -> None:
        self.loaded.append(url)
        self.url = url

    def current_url(self) -> Optional[str]:
        return self.url

    def cookies(self) -> list[SessionCookie]:
        return list(self.jar)

    def dismiss(self) -> None:
        self.events.append("dismissed")

    # Hosted view

    def attach(self, delegate) -> None:
        self.delegate = delegate

    def run(self, until=None) -> None:
        if self.script is not None:
            self.script(self)
