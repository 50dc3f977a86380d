"""Secure credential storage using system keychain."""

import logging
import threading
from typing import Optional

import keyring
from keyring.errors import KeyringError, PasswordDeleteError

__all__ = ["CredentialStore", "TOKEN_ACCOUNT", "COOKIES_ACCOUNT"]

logger = logging.getLogger(__name__)

SERVICE_NAME = "TheAlgorithm"
TOKEN_ACCOUNT = "oauth_token"
COOKIES_ACCOUNT = "twitter_cookies"


class CredentialStore:
    """Key/value secrets in the OS keychain, scoped to one service name.

    Each key is a keychain account under ``service_name``. Writes are whole
    value replacements and are serialized, so the last writer wins.
    """

    def __init__(self, service_name: str = SERVICE_NAME):
        """Initialize credential store.

        Args:
            service_name: Service name for keychain entries
        """
        self.service_name = service_name
        self._write_lock = threading.Lock()

    def save(self, key: str, value: str) -> bool:
        """Store a value, replacing any existing one.

        Returns:
            True if stored successfully
        """
        with self._write_lock:
            try:
                keyring.set_password(self.service_name, key, value)
                logger.info(f"Stored '{key}' in keychain")
                return True
            except KeyringError as e:
                logger.error(f"Failed to store '{key}': {e}")
                return False

    def read(self, key: str) -> Optional[str]:
        """Read a value.

        Returns:
            The stored value, or None if missing or unreadable
        """
        try:
            return keyring.get_password(self.service_name, key)
        except KeyringError as e:
            logger.error(f"Failed to read '{key}': {e}")
            return None

    def delete(self, key: str) -> bool:
        """Delete a value.

        Returns:
            True if deleted (or didn't exist)
        """
        with self._write_lock:
            try:
                keyring.delete_password(self.service_name, key)
                logger.info(f"Deleted '{key}' from keychain")
                return True
            except PasswordDeleteError:
                # Entry didn't exist
                return True
            except KeyringError as e:
                logger.error(f"Failed to delete '{key}': {e}")
                return False

    def has(self, key: str) -> bool:
        """Check if a value is stored."""
        return self.read(key) is not None
