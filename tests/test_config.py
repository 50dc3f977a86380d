"""Tests for configuration loading and the command line parser."""

import json
from unittest.mock import patch

import pytest

from companion.config import API_URL_ENV, DEFAULT_API_URL, Config
from companion.main import build_parser, system_browser_opener


class TestConfig:
    """Tests for Config."""

    def test_defaults(self):
        """Test built-in defaults."""
        config = Config()

        assert config.api_url == DEFAULT_API_URL
        assert config.authorize_url == f"{DEFAULT_API_URL}/oauth/authorize"
        assert config.token_url == f"{DEFAULT_API_URL}/oauth/token"
        assert config.oauth.redirect_scheme == "thealgorithm"
        assert config.oauth.scope == "read,write"
        assert config.oauth.timeout_seconds == 60
        assert config.session.login_url == "https://x.com/login"
        assert config.session.max_conversions == 2
        assert config.session.max_relay_conversions == 4

    def test_load_missing_file(self, tmp_path, monkeypatch):
        """Test defaults when there is no config file."""
        monkeypatch.delenv(API_URL_ENV, raising=False)

        config = Config.load(tmp_path / "config.json")

        assert config == Config()

    def test_save_and_load(self, tmp_path, monkeypatch):
        """Test settings survive a round trip."""
        monkeypatch.delenv(API_URL_ENV, raising=False)
        path = tmp_path / "nested" / "config.json"
        config = Config(api_url="https://staging.test", debug_mode=True)
        config.oauth.client_id = "other-client"
        config.session.headless = True

        config.save(path)
        loaded = Config.load(path)

        assert loaded == config

    def test_unknown_keys_ignored(self, tmp_path, monkeypatch):
        """Test stale keys from older versions do not break loading."""
        monkeypatch.delenv(API_URL_ENV, raising=False)
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"api_url": "https://a.test", "legacy": 1, "oauth": {"scope": "read", "old": 2}}))

        config = Config.load(path)

        assert config.api_url == "https://a.test"
        assert config.oauth.scope == "read"

    def test_corrupt_file_uses_defaults(self, tmp_path, monkeypatch):
        """Test an unreadable file falls back to defaults."""
        monkeypatch.delenv(API_URL_ENV, raising=False)
        path = tmp_path / "config.json"
        path.write_text("{broken")

        assert Config.load(path) == Config()

    def test_env_override(self, tmp_path, monkeypatch):
        """Test the backend URL can be overridden from the environment."""
        monkeypatch.setenv(API_URL_ENV, "https://local.test/")

        config = Config.load(tmp_path / "config.json")

        assert config.api_url == "https://local.test"
        assert config.token_url == "https://local.test/oauth/token"


class TestParser:
    """Tests for the command line parser."""

    def setup_method(self):
        """Set up test fixtures."""
        self.parser = build_parser()

    def test_callback_takes_url(self):
        """Test the app-open handler command."""
        args = self.parser.parse_args(["callback", "thealgorithm://oauth/callback?code=abc"])

        assert args.handler == "callback"
        assert args.url == "thealgorithm://oauth/callback?code=abc"

    def test_login_timeout(self):
        """Test the OAuth wait can be shortened."""
        args = self.parser.parse_args(["login", "--timeout", "30"])

        assert args.handler == "login"
        assert args.timeout == 30.0

    def test_command_required(self):
        """Test running without a command is an error."""
        with pytest.raises(SystemExit):
            self.parser.parse_args([])


class TestSystemBrowserOpener:
    """Tests for choosing how the CLI opens the authorization page."""

    def test_custom_scheme_declines(self):
        """Test custom-scheme redirects leave the page to the embedded browser."""
        with patch("companion.main.webbrowser.open") as mock_open:
            opener = system_browser_opener("thealgorithm://oauth/callback")

            assert opener("https://thealgorithm.live/oauth/authorize?x=1") is False

        mock_open.assert_not_called()

    def test_loopback_uses_system_browser(self):
        """Test loopback redirects can come back from the system browser."""
        with patch("companion.main.webbrowser.open", return_value=True) as mock_open:
            opener = system_browser_opener("http://127.0.0.1:0/callback")

            assert opener("https://thealgorithm.live/oauth/authorize?x=1") is True

        mock_open.assert_called_once_with("https://thealgorithm.live/oauth/authorize?x=1")
