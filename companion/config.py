"""Configuration management for Algorithm Companion."""

import json
import logging
import os
from dataclasses import dataclass, field, asdict
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from platformdirs import user_config_dir, user_data_dir, user_log_dir

__all__ = [
    "Config",
    "OAuthSettings",
    "SessionSettings",
    "setup_logging",
    "DEFAULT_API_URL",
]

logger = logging.getLogger(__name__)

APP_NAME = "Algorithm Companion"
APP_AUTHOR = "TheAlgorithm"

# Backend
DEFAULT_API_URL = "https://thealgorithm.live"
API_URL_ENV = "COMPANION_API_URL"

# OAuth defaults
DEFAULT_CLIENT_ID = "ios_app_081b7e3ab09f49b2"
DEFAULT_REDIRECT_URI = "thealgorithm://oauth/callback"
DEFAULT_SCOPE = "read,write"  # Backend expects comma-separated scopes
DEFAULT_OAUTH_TIMEOUT = 60  # seconds

# X.com session defaults
DEFAULT_LOGIN_URL = "https://x.com/login"
DEFAULT_USER_AGENT = (
    "Mozilla/5.0 (Macintosh; Intel Mac OS X 14_4) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/17.4 Safari/605.1.15"
)


@dataclass
class OAuthSettings:
    """OAuth client configuration."""

    client_id: str = DEFAULT_CLIENT_ID
    authorize_path: str = "/oauth/authorize"
    token_path: str = "/oauth/token"
    redirect_uri: str = DEFAULT_REDIRECT_URI
    scope: str = DEFAULT_SCOPE
    timeout_seconds: float = DEFAULT_OAUTH_TIMEOUT

    @property
    def redirect_scheme(self) -> str:
        return urlparse(self.redirect_uri).scheme


@dataclass
class SessionSettings:
    """Embedded X.com browser configuration."""

    login_url: str = DEFAULT_LOGIN_URL
    user_agent: str = DEFAULT_USER_AGENT
    link_scheme: str = "x-safari-https"
    target_domains: list[str] = field(default_factory=lambda: ["x.com", "twitter.com"])
    success_path_markers: list[str] = field(default_factory=lambda: ["home", "timeline"])
    relay_host: str = "redirect.x.com"
    conversion_window: float = 1.0  # seconds
    max_conversions: int = 2
    max_relay_conversions: int = 4
    relay_suppress_duration: float = 3.0  # seconds
    headless: bool = False


@dataclass
class Config:
    """Main configuration object."""

    api_url: str = DEFAULT_API_URL
    oauth: OAuthSettings = field(default_factory=OAuthSettings)
    session: SessionSettings = field(default_factory=SessionSettings)
    keychain_service: str = "TheAlgorithm"
    debug_mode: bool = False

    @property
    def authorize_url(self) -> str:
        return f"{self.api_url.rstrip('/')}{self.oauth.authorize_path}"

    @property
    def token_url(self) -> str:
        return f"{self.api_url.rstrip('/')}{self.oauth.token_path}"

    @classmethod
    def get_config_dir(cls) -> Path:
        """Get the configuration directory path."""
        return Path(user_config_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_data_dir(cls) -> Path:
        """Get the data directory path (pending PKCE verifier, etc.)."""
        return Path(user_data_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_log_dir(cls) -> Path:
        """Get the log directory path."""
        return Path(user_log_dir(APP_NAME, APP_AUTHOR))

    @classmethod
    def get_config_file(cls) -> Path:
        """Get the config file path."""
        return cls.get_config_dir() / "config.json"

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load config from file, or return defaults."""
        config_file = path or cls.get_config_file()
        config = cls()
        if config_file.exists():
            try:
                with open(config_file, "r") as f:
                    data = json.load(f)
                config = cls._from_dict(data)
            except Exception as e:
                logger.warning(f"Failed to load config: {e}, using defaults")

        env_api_url = os.getenv(API_URL_ENV)
        if env_api_url:
            config.api_url = env_api_url.rstrip("/")
        return config

    @classmethod
    def _from_dict(cls, data: dict) -> "Config":
        """Create Config from dictionary."""
        oauth_data = data.pop("oauth", {})
        session_data = data.pop("session", {})

        return cls(
            oauth=OAuthSettings(
                **{k: v for k, v in oauth_data.items() if k in OAuthSettings.__dataclass_fields__}
            ),
            session=SessionSettings(
                **{k: v for k, v in session_data.items() if k in SessionSettings.__dataclass_fields__}
            ),
            **{k: v for k, v in data.items() if k in cls.__dataclass_fields__},
        )

    def save(self, path: Optional[Path] = None) -> None:
        """Save config to file."""
        config_file = path or self.get_config_file()
        config_file.parent.mkdir(parents=True, exist_ok=True)

        data = asdict(self)
        with open(config_file, "w") as f:
            json.dump(data, f, indent=2)
        logger.info(f"Config saved to {config_file}")


def setup_logging(debug: bool = False) -> None:
    """Configure logging."""
    log_dir = Config.get_log_dir()
    log_dir.mkdir(parents=True, exist_ok=True)
    log_file = log_dir / "algorithm-companion.log"

    level = logging.DEBUG if debug else logging.INFO
    format_str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

    logging.basicConfig(
        level=level,
        format=format_str,
        handlers=[
            logging.FileHandler(log_file),
            logging.StreamHandler(),
        ],
    )

    # Reduce noise from libraries
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("requests").setLevel(logging.WARNING)
    logging.getLogger("apscheduler").setLevel(logging.WARNING)
