"""X.com session cookies: extraction, validation and secure persistence."""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterable, Optional

from ..errors import AuthErrorKind, AuthFailure
from .keychain import COOKIES_ACCOUNT, CredentialStore

__all__ = [
    "SessionCookie",
    "CookieExtractor",
    "CookieValidationResult",
    "ExtractionResult",
    "CookieStore",
    "ESSENTIAL_COOKIES",
    "OPTIONAL_COOKIES",
]

logger = logging.getLogger(__name__)

TARGET_DOMAINS = ("x.com", "twitter.com")
ESSENTIAL_COOKIES = ("auth_token", "ct0")
OPTIONAL_COOKIES = ("auth_multi", "twid", "kdt", "remember_checked_on")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionCookie:
    """One browser cookie. ``expires_at`` is None for session cookies."""

    name: str
    value: str
    domain: str
    path: str = "/"
    expires_at: Optional[datetime] = None
    http_only: bool = False
    secure: bool = False
    same_site: Optional[str] = None

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        # Session cookies don't expire
        if self.expires_at is None:
            return False
        return self.expires_at <= (now or _utcnow())

    def matches_domain(self, domains: Iterable[str] = TARGET_DOMAINS) -> bool:
        domain = self.domain.lower()
        return any(d in domain for d in domains)

    def to_dict(self) -> dict:
        """Storage format; ``expires`` is epoch seconds, 0 for session cookies."""
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": self.expires_at.timestamp() if self.expires_at else 0,
            "httpOnly": self.http_only,
            "secure": self.secure,
            "sameSite": self.same_site or "",
        }

    def to_relay_dict(self) -> dict:
        """Backend payload format (integer epoch seconds)."""
        return {
            "name": self.name,
            "value": self.value,
            "domain": self.domain,
            "path": self.path,
            "expires": int(self.expires_at.timestamp()) if self.expires_at else 0,
            "httpOnly": self.http_only,
            "secure": self.secure,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionCookie":
        expires = data.get("expires") or 0
        return cls(
            name=data["name"],
            value=data["value"],
            domain=data["domain"],
            path=data.get("path", "/"),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc) if expires > 0 else None,
            http_only=bool(data.get("httpOnly", False)),
            secure=bool(data.get("secure", False)),
            same_site=data.get("sameSite") or None,
        )

    @classmethod
    def from_playwright(cls, data: dict) -> "SessionCookie":
        """Build from a Playwright ``BrowserContext.cookies()`` entry (-1 = session)."""
        expires = data.get("expires", -1)
        return cls(
            name=data["name"],
            value=data["value"],
            domain=data["domain"],
            path=data.get("path", "/"),
            expires_at=datetime.fromtimestamp(expires, tz=timezone.utc) if expires and expires > 0 else None,
            http_only=bool(data.get("httpOnly", False)),
            secure=bool(data.get("secure", False)),
            same_site=data.get("sameSite"),
        )

    def __repr__(self) -> str:
        expires = self.expires_at.isoformat() if self.expires_at else "Session"
        return f"SessionCookie({self.name}={self.value[:20]}..., domain={self.domain}, expires={expires})"


@dataclass
class ExtractionResult:
    """Filtered cookie set, or the reason there is none."""

    cookies: list[SessionCookie] = field(default_factory=list)
    error: Optional[AuthFailure] = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass
class CookieValidationResult:
    """Diagnostic breakdown of a cookie set."""

    is_valid: bool
    essential_cookies: list[str]
    missing_essential_cookies: list[str]
    optional_cookies: list[str]
    expired_cookies: list[str]
    total_count: int


class CookieExtractor:
    """Picks the session-relevant X.com cookies out of a browser jar."""

    def __init__(
        self,
        target_domains: Iterable[str] = TARGET_DOMAINS,
        essential: Iterable[str] = ESSENTIAL_COOKIES,
        optional: Iterable[str] = OPTIONAL_COOKIES,
    ):
        self.target_domains = tuple(d.lower() for d in target_domains)
        self.essential = tuple(essential)
        self.optional = tuple(optional)

    @property
    def allowed_names(self) -> tuple[str, ...]:
        return self.essential + self.optional

    def has_auth_cookie(self, jar: Iterable[SessionCookie]) -> bool:
        """True if the primary auth cookie for a target domain is in the jar."""
        primary = self.essential[0]
        return any(c.name == primary and c.matches_domain(self.target_domains) for c in jar)

    def extract(self, jar: Iterable[SessionCookie]) -> ExtractionResult:
        """Filter a cookie jar down to allow-listed cookies on target domains."""
        allowed = set(self.allowed_names)
        cookies = [
            c for c in jar
            if c.matches_domain(self.target_domains) and c.name in allowed
        ]
        if not cookies:
            logger.warning("No authentication cookies found in browser jar")
            return ExtractionResult(error=AuthFailure(AuthErrorKind.NO_COOKIES_FOUND))

        logger.info(f"Extracted {len(cookies)} session cookies")
        return ExtractionResult(cookies=cookies)

    def validate(
        self, cookies: list[SessionCookie], now: Optional[datetime] = None
    ) -> CookieValidationResult:
        """Advisory validation of a cookie set."""
        now = now or _utcnow()
        names = {c.name for c in cookies}
        tracked = set(self.allowed_names)

        missing = [n for n in self.essential if n not in names]
        expired = [c for c in cookies if c.is_expired(now)]
        tracked_expired = [c for c in expired if c.name in tracked]
        valid_domain = any(c.matches_domain(self.target_domains) for c in cookies)

        return CookieValidationResult(
            is_valid=not missing and valid_domain and not tracked_expired,
            essential_cookies=[n for n in self.essential if n in names],
            missing_essential_cookies=missing,
            optional_cookies=[n for n in self.optional if n in names],
            expired_cookies=[c.name for c in expired],
            total_count=len(cookies),
        )

    def check_session(
        self, cookies: list[SessionCookie], now: Optional[datetime] = None
    ) -> Optional[AuthFailure]:
        """Binary gate: essential cookies present and nothing expired.

        Returns:
            None if usable, otherwise the failure describing why not
        """
        now = now or _utcnow()
        names = {c.name for c in cookies}
        missing = tuple(n for n in self.essential if n not in names)
        if missing:
            return AuthFailure(AuthErrorKind.MISSING_ESSENTIAL_COOKIES, names=missing)

        expired = tuple(c.name for c in cookies if c.is_expired(now))
        if expired:
            return AuthFailure(AuthErrorKind.EXPIRED_COOKIES, names=expired)
        return None

    def summary(self, cookies: list[SessionCookie]) -> str:
        """Human-readable validation summary."""
        validation = self.validate(cookies)
        lines = [
            f"Total: {validation.total_count}",
            f"Essential: {', '.join(validation.essential_cookies) or '-'}",
        ]
        if validation.missing_essential_cookies:
            lines.append(f"Missing: {', '.join(validation.missing_essential_cookies)}")
        if validation.optional_cookies:
            lines.append(f"Optional: {', '.join(validation.optional_cookies)}")
        if validation.expired_cookies:
            lines.append(f"Expired: {', '.join(validation.expired_cookies)}")
        lines.append(f"Status: {'Valid' if validation.is_valid else 'Invalid'}")
        return "\n".join(lines)


class CookieStore:
    """Persists the session cookie set as JSON in the credential store."""

    def __init__(
        self,
        credentials: CredentialStore,
        extractor: Optional[CookieExtractor] = None,
        account: str = COOKIES_ACCOUNT,
    ):
        self.credentials = credentials
        self.extractor = extractor or CookieExtractor()
        self.account = account

    def save(self, cookies: list[SessionCookie]) -> bool:
        data = json.dumps([c.to_dict() for c in cookies])
        if not self.credentials.save(self.account, data):
            return False
        logger.info(f"Stored {len(cookies)} cookies securely")
        for cookie in cookies:
            logger.debug(f"  {cookie!r}")
        return True

    def load(self) -> Optional[list[SessionCookie]]:
        data = self.credentials.read(self.account)
        if not data:
            return None
        try:
            entries = json.loads(data)
        except json.JSONDecodeError as e:
            logger.error(f"Failed to deserialize cookies: {e}")
            return None

        cookies = []
        for entry in entries:
            try:
                cookies.append(SessionCookie.from_dict(entry))
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping malformed stored cookie: {e}")
        return cookies

    def clear(self) -> bool:
        cleared = self.credentials.delete(self.account)
        if cleared:
            logger.info("Cleared stored cookies")
        return cleared

    def has_valid_cookies(self) -> bool:
        cookies = self.load()
        if cookies is None:
            return False
        return self.extractor.check_session(cookies) is None
