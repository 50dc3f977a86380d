"""The Algorithm API client - token exchange and cookie relay."""

import logging
import time
from typing import Optional

import requests

from ..errors import AuthErrorKind, AuthFlowError
from .http_client import BaseApiClient, CompanionClientError

__all__ = ["CompanionApiClient"]

logger = logging.getLogger(__name__)


class CompanionApiClient(BaseApiClient):
    """Client for The Algorithm backend.

    The backend does the real work (monitoring, drafting, posting); the
    companion only authenticates and hands over the X.com session.
    """

    def exchange_code(
        self,
        token_url: str,
        code: str,
        code_verifier: str,
        client_id: str,
        redirect_uri: str,
    ) -> str:
        """Exchange an authorization code for an access token.

        Form-encoded POST, never retried: authorization codes are single use.

        Returns:
            The access token

        Raises:
            AuthFlowError: TRANSPORT_FAILURE, NON_SUCCESS_STATUS or
                MALFORMED_TOKEN_RESPONSE
        """
        payload = {
            "grant_type": "authorization_code",
            "client_id": client_id,
            "code": code,
            "redirect_uri": redirect_uri,
            "code_verifier": code_verifier,
        }
        headers = {
            "Accept": "application/json",
            "User-Agent": self.USER_AGENT,
        }
        logger.info(f"Exchanging authorization code for token ({code[:8]}...)")
        try:
            response = self._session.post(
                token_url, data=payload, headers=headers, timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            logger.error(f"Network error during token exchange: {e}")
            raise AuthFlowError(AuthErrorKind.TRANSPORT_FAILURE, str(e)) from e

        logger.debug(f"Token exchange response status: {response.status_code}")
        if not 200 <= response.status_code < 300:
            raise AuthFlowError(
                AuthErrorKind.NON_SUCCESS_STATUS, status_code=response.status_code
            )

        try:
            body = response.json()
        except ValueError as e:
            raise AuthFlowError(AuthErrorKind.MALFORMED_TOKEN_RESPONSE) from e

        token = body.get("access_token") if isinstance(body, dict) else None
        if not isinstance(token, str) or not token:
            raise AuthFlowError(AuthErrorKind.MALFORMED_TOKEN_RESPONSE)

        logger.info("Successfully obtained access token")
        return token

    def store_cookies(self, cookies: list, timestamp: Optional[int] = None) -> dict:
        """Relay the X.com session cookies to the backend.

        Args:
            cookies: SessionCookie list
            timestamp: Epoch seconds for the payload (defaults to now)

        Raises:
            CompanionAuthError: No token or token rejected
            CompanionClientError: Any other failure
        """
        payload = {
            "cookies": [c.to_relay_dict() for c in cookies],
            "timestamp": int(time.time()) if timestamp is None else timestamp,
        }
        return self._request("POST", "/api/store-cookies", data=payload)

    def check_health(self) -> tuple[bool, dict]:
        """Check if the backend is up.

        Returns:
            (healthy, health payload)
        """
        try:
            data = self._request("GET", "/api/health", retry=False, authenticated=False)
            return True, data
        except CompanionClientError as e:
            logger.warning(f"Health check failed: {e}")
            return False, {}
