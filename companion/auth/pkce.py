"""PKCE (Proof Key for Code Exchange) utilities.

RFC 7636: https://www.rfc-editor.org/rfc/rfc7636

PKCE protects public clients (like this companion app) from authorization
code interception by binding the code to a per-attempt secret, the
"code_verifier".

Flow:
1. Client generates code_verifier (secret) and code_challenge (derived)
2. Client persists the verifier, then sends the challenge with the
   authorization request
3. Server stores code_challenge with the authorization code
4. Client sends code_verifier with the token exchange request
5. Server verifies SHA256(code_verifier) == code_challenge

The verifier has to outlive the process: the browser may hand the redirect
back to a fresh instance of the app, so it is kept in a small scratch file
(``PendingAuthorizationStore``) until the exchange succeeds.
"""

import base64
import hashlib
import json
import logging
import os
import secrets
import tempfile
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from ..errors import AuthErrorKind, AuthFlowError

__all__ = [
    "generate_code_verifier",
    "generate_pkce_pair",
    "compute_code_challenge",
    "generate_state",
    "PendingAuthorization",
    "PendingAuthorizationStore",
]

logger = logging.getLogger(__name__)

VERIFIER_BYTES = 32


def _b64url(raw: bytes) -> str:
    # Base64URL encoding: replace +/ with -_, remove padding
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def generate_code_verifier() -> str:
    """Generate a PKCE code_verifier.

    32 bytes from the OS CSPRNG, base64url-encoded without padding
    (43 characters from the unreserved URI set).

    Raises:
        AuthFlowError: SECURE_RANDOM_UNAVAILABLE if the OS has no usable
            random source. The attempt must be aborted, not retried.
    """
    try:
        raw = secrets.token_bytes(VERIFIER_BYTES)
    except (NotImplementedError, OSError) as e:
        logger.error(f"Failed to generate random bytes for code verifier: {e}")
        raise AuthFlowError(AuthErrorKind.SECURE_RANDOM_UNAVAILABLE, str(e)) from e
    return _b64url(raw)


def compute_code_challenge(code_verifier: str) -> str:
    """Compute code_challenge from code_verifier using S256 method.

    code_challenge = BASE64URL(SHA256(ASCII(code_verifier)))

    Args:
        code_verifier: The PKCE code verifier string

    Returns:
        Base64URL-encoded SHA256 hash without padding

    Raises:
        ValueError: If the verifier is not ASCII

    Example:
        >>> compute_code_challenge("dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk")
        'E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM'
    """
    try:
        data = code_verifier.encode("ascii")
    except UnicodeEncodeError as e:
        raise ValueError("code_verifier must be ASCII") from e
    return _b64url(hashlib.sha256(data).digest())


def generate_pkce_pair() -> tuple[str, str]:
    """Generate PKCE code_verifier and code_challenge.

    Returns:
        Tuple of (code_verifier, code_challenge)
    """
    code_verifier = generate_code_verifier()
    return code_verifier, compute_code_challenge(code_verifier)


def generate_state() -> str:
    """Generate a random CSRF token for the ``state`` parameter."""
    try:
        return secrets.token_urlsafe(32)
    except (NotImplementedError, OSError) as e:
        raise AuthFlowError(AuthErrorKind.SECURE_RANDOM_UNAVAILABLE, str(e)) from e


@dataclass
class PendingAuthorization:
    """An authorization request that is waiting for its redirect."""

    verifier: str
    state: str
    redirect_uri: str
    created_at: str  # ISO 8601, UTC

    @classmethod
    def create(cls, verifier: str, state: str, redirect_uri: str) -> "PendingAuthorization":
        return cls(
            verifier=verifier,
            state=state,
            redirect_uri=redirect_uri,
            created_at=datetime.now(timezone.utc).isoformat(),
        )

    def to_json(self) -> str:
        return json.dumps(asdict(self))

    @classmethod
    def from_json(cls, data: str) -> "PendingAuthorization":
        parsed = json.loads(data)
        return cls(
            verifier=parsed["verifier"],
            state=parsed["state"],
            redirect_uri=parsed["redirect_uri"],
            created_at=parsed["created_at"],
        )


class PendingAuthorizationStore:
    """Durable scratch entry for the in-flight PKCE verifier."""

    def __init__(self, path: Path):
        """Initialize the store.

        Args:
            path: JSON file holding at most one pending authorization
        """
        self.path = path

    def save(self, pending: PendingAuthorization) -> None:
        """Persist the pending authorization, replacing any previous one.

        The file is written to a temp file and moved into place, so readers
        never see a partial write.
        """
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.path.parent), prefix=".pending-")
        try:
            with os.fdopen(fd, "w") as f:
                f.write(pending.to_json())
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        logger.debug(f"Saved pending PKCE verifier ({pending.verifier[:8]}...)")

    def load(self) -> Optional[PendingAuthorization]:
        """Load the pending authorization, or None if absent or unreadable."""
        try:
            data = self.path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            logger.error(f"Failed to read pending authorization: {e}")
            return None

        try:
            return PendingAuthorization.from_json(data)
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            logger.error(f"Invalid pending authorization format: {e}")
            return None

    def clear(self) -> None:
        """Discard the pending authorization (no-op if absent)."""
        try:
            self.path.unlink()
            logger.debug("Cleared pending PKCE verifier")
        except FileNotFoundError:
            pass
