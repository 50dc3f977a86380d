"""Tests for the OAuth authorization-code + PKCE flow."""

import urllib.request
from unittest.mock import Mock
from urllib.parse import parse_qs, urlparse

import pytest
import requests
import responses

from companion.api.companion_client import CompanionApiClient
from companion.auth.keychain import TOKEN_ACCOUNT
from companion.auth.oauth_flow import FlowState, OAuthFlowController, build_authorization_url
from companion.auth.pkce import PendingAuthorizationStore, compute_code_challenge
from companion.config import OAuthSettings
from companion.errors import AuthErrorKind, AuthFlowError

API = "https://api.test"
AUTHORIZE_URL = f"{API}/oauth/authorize"
TOKEN_URL = f"{API}/oauth/token"
REDIRECT_URI = "thealgorithm://oauth/callback"


def make_controller(credentials, pending_store, opener=None, embedded=None, redirect_uri=REDIRECT_URI, authorize_url=AUTHORIZE_URL):
    settings = OAuthSettings(client_id="test-client", redirect_uri=redirect_uri)
    return OAuthFlowController(
        settings=settings,
        authorize_url=authorize_url,
        token_url=TOKEN_URL,
        credentials=credentials,
        pending_store=pending_store,
        api_client=CompanionApiClient(API),
        browser_opener=opener or Mock(return_value=True),
        embedded_launcher=embedded,
    )


def opened_params(opener) -> dict:
    url = opener.call_args[0][0]
    return {k: v[0] for k, v in parse_qs(urlparse(url).query).items()}


def callback_url(state, code="ABC123", base=REDIRECT_URI):
    return f"{base}?code={code}&state={state}"


class TestBuildAuthorizationUrl:
    """Tests for authorization URL construction."""

    def test_contains_all_parameters(self):
        """Test every required parameter is present."""
        url = build_authorization_url(AUTHORIZE_URL, "cid", REDIRECT_URI, "read,write", "st", "ch")

        assert url.startswith(f"{AUTHORIZE_URL}?")
        params = parse_qs(urlparse(url).query)
        assert params == {
            "client_id": ["cid"],
            "redirect_uri": [REDIRECT_URI],
            "response_type": ["code"],
            "scope": ["read,write"],
            "state": ["st"],
            "code_challenge": ["ch"],
            "code_challenge_method": ["S256"],
        }

    def test_scope_comma_not_escaped(self):
        """Test comma-separated scopes stay readable."""
        url = build_authorization_url(AUTHORIZE_URL, "cid", REDIRECT_URI, "read,write", "st", "ch")
        assert "scope=read,write" in url

    def test_invalid_endpoint(self):
        """Test an endpoint without scheme or host is refused."""
        with pytest.raises(AuthFlowError) as exc_info:
            build_authorization_url("not a url", "cid", REDIRECT_URI, "read", "st", "ch")

        assert exc_info.value.kind is AuthErrorKind.INVALID_AUTHORIZATION_URL


class TestStart:
    """Tests for starting an authorization attempt."""

    def test_opens_browser_with_pkce(self, credentials, pending_store):
        """Test the browser gets the challenge for the persisted verifier."""
        opener = Mock(return_value=True)
        controller = make_controller(credentials, pending_store, opener=opener)

        future = controller.start()

        params = opened_params(opener)
        pending = pending_store.load()
        assert params["client_id"] == "test-client"
        assert params["redirect_uri"] == REDIRECT_URI
        assert params["response_type"] == "code"
        assert params["code_challenge_method"] == "S256"
        assert params["code_challenge"] == compute_code_challenge(pending.verifier)
        assert params["state"] == pending.state
        assert controller.state is FlowState.AWAITING_CALLBACK
        assert not future.done()

    def test_verifier_persisted_before_dispatch(self, credentials, pending_store):
        """Test the verifier is on disk by the time the browser opens."""
        seen = []
        opener = Mock(side_effect=lambda url: seen.append(pending_store.load()) or True)
        controller = make_controller(credentials, pending_store, opener=opener)

        controller.start()

        assert seen[0] is not None

    def test_invalid_authorization_url(self, credentials, pending_store):
        """Test a bad endpoint fails without opening anything."""
        opener = Mock(return_value=True)
        controller = make_controller(credentials, pending_store, opener=opener, authorize_url="/oauth/authorize")

        result = controller.start().result(timeout=1)

        assert result.error.kind is AuthErrorKind.INVALID_AUTHORIZATION_URL
        opener.assert_not_called()
        assert controller.state is FlowState.FAILED

    def test_browser_unavailable(self, credentials, pending_store):
        """Test failure when no browser can be opened."""
        controller = make_controller(credentials, pending_store, opener=Mock(return_value=False))

        result = controller.start().result(timeout=1)

        assert result.error.kind is AuthErrorKind.BROWSER_UNAVAILABLE

    def test_embedded_fallback(self, credentials, pending_store):
        """Test the embedded surface is used when the browser fails."""
        surface = Mock()
        embedded = Mock(return_value=surface)
        controller = make_controller(credentials, pending_store, opener=Mock(return_value=False), embedded=embedded)

        future = controller.start()

        embedded.assert_called_once()
        assert embedded.call_args[0][0].startswith(AUTHORIZE_URL)
        assert not future.done()

    def test_restart_supersedes_previous_attempt(self, credentials, pending_store):
        """Test a new start resolves the old future and replaces the verifier."""
        controller = make_controller(credentials, pending_store)

        first = controller.start()
        first_state = pending_store.load().state
        second = controller.start()

        assert first.result(timeout=1).error.kind is AuthErrorKind.USER_CANCELLED
        assert not second.done()
        assert pending_store.load().state != first_state


class TestHandleCallback:
    """Tests for redirect handling and the token exchange."""

    @responses.activate
    def test_successful_exchange(self, credentials, pending_store):
        """Test code ABC123 is exchanged with the verifier and the token stored."""
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok-123", "token_type": "Bearer"})
        controller = make_controller(credentials, pending_store)
        future = controller.start()
        pending = pending_store.load()

        result = controller.handle_callback(callback_url(pending.state))

        assert result.success is True
        assert result.token == "tok-123"
        assert future.result(timeout=1) is not None and future.result().success
        assert credentials.read(TOKEN_ACCOUNT) == "tok-123"
        assert pending_store.load() is None
        assert controller.state is FlowState.COMPLETE

        body = parse_qs(responses.calls[0].request.body)
        assert body["grant_type"] == ["authorization_code"]
        assert body["code"] == ["ABC123"]
        assert body["code_verifier"] == [pending.verifier]
        assert body["client_id"] == ["test-client"]
        assert body["redirect_uri"] == [REDIRECT_URI]

    @responses.activate
    def test_provider_error_makes_no_request(self, credentials, pending_store):
        """Test error=access_denied fails without touching the network."""
        controller = make_controller(credentials, pending_store)
        future = controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(f"{REDIRECT_URI}?error=access_denied&state={state}")

        assert result.error.kind is AuthErrorKind.PROVIDER_ERROR
        assert result.error.detail == "access_denied"
        assert len(responses.calls) == 0
        assert future.result(timeout=1).error.kind is AuthErrorKind.PROVIDER_ERROR

    @responses.activate
    def test_state_mismatch(self, credentials, pending_store):
        """Test a foreign state is rejected before the exchange."""
        controller = make_controller(credentials, pending_store)
        controller.start()

        result = controller.handle_callback(callback_url("forged-state"))

        assert result.error.kind is AuthErrorKind.STATE_MISMATCH
        assert len(responses.calls) == 0
        assert credentials.read(TOKEN_ACCOUNT) is None

    @responses.activate
    def test_missing_state_is_accepted(self, credentials, pending_store):
        """Test a redirect without state still completes."""
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok"})
        controller = make_controller(credentials, pending_store)
        controller.start()

        result = controller.handle_callback(f"{REDIRECT_URI}?code=ABC123")

        assert result.success is True

    def test_missing_code(self, credentials, pending_store):
        """Test a redirect with neither code nor error."""
        controller = make_controller(credentials, pending_store)
        controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(f"{REDIRECT_URI}?state={state}")

        assert result.error.kind is AuthErrorKind.MISSING_AUTHORIZATION_CODE

    def test_invalid_callback_url(self, credentials, pending_store):
        """Test a redirect that is not a URL."""
        controller = make_controller(credentials, pending_store)
        controller.start()

        result = controller.handle_callback("no scheme here")

        assert result.error.kind is AuthErrorKind.INVALID_CALLBACK_URL

    @responses.activate
    def test_fresh_process_uses_durable_verifier(self, credentials, tmp_path):
        """Test a redirect delivered to a new instance completes the exchange."""
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok-fresh"})
        path = tmp_path / "pending.json"
        first = make_controller(credentials, PendingAuthorizationStore(path))
        first.start()
        pending = PendingAuthorizationStore(path).load()

        second = make_controller(credentials, PendingAuthorizationStore(path))
        result = second.handle_callback(callback_url(pending.state))

        assert result.success is True
        assert parse_qs(responses.calls[0].request.body)["code_verifier"] == [pending.verifier]
        assert credentials.read(TOKEN_ACCOUNT) == "tok-fresh"

    @responses.activate
    def test_fresh_process_without_verifier(self, credentials, pending_store):
        """Test a redirect with no stored verifier fails without a request."""
        controller = make_controller(credentials, pending_store)

        result = controller.handle_callback(callback_url("whatever"))

        assert result.error.kind is AuthErrorKind.MISSING_PKCE_VERIFIER
        assert len(responses.calls) == 0

    @responses.activate
    def test_non_success_status_keeps_verifier(self, credentials, pending_store):
        """Test a rejected exchange reports the status and keeps the verifier."""
        responses.add(responses.POST, TOKEN_URL, json={"error": "invalid_grant"}, status=400)
        controller = make_controller(credentials, pending_store)
        controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(callback_url(state))

        assert result.error.kind is AuthErrorKind.NON_SUCCESS_STATUS
        assert result.error.status_code == 400
        assert pending_store.load() is not None
        assert credentials.read(TOKEN_ACCOUNT) is None

    @responses.activate
    def test_retry_after_failed_exchange(self, credentials, tmp_path):
        """Test a retried redirect is ignored in-process but redeemed by a fresh one."""
        responses.add(responses.POST, TOKEN_URL, status=502)
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok-retry"})
        path = tmp_path / "pending.json"
        controller = make_controller(credentials, PendingAuthorizationStore(path))
        controller.start()
        redirect = callback_url(PendingAuthorizationStore(path).load().state)
        assert controller.handle_callback(redirect).error.kind is AuthErrorKind.NON_SUCCESS_STATUS

        same_process = controller.handle_callback(redirect)

        assert same_process.error.kind is AuthErrorKind.INVALID_CALLBACK_URL
        assert len(responses.calls) == 1

        fresh = make_controller(credentials, PendingAuthorizationStore(path))
        assert fresh.handle_callback(redirect).success is True
        assert credentials.read(TOKEN_ACCOUNT) == "tok-retry"

    @responses.activate
    def test_token_storage_failure(self, credentials, pending_store, memory_keyring):
        """Test the attempt fails when the keychain refuses the token."""
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok-123"})
        memory_keyring.read_only.add(TOKEN_ACCOUNT)
        controller = make_controller(credentials, pending_store)
        future = controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(callback_url(state))

        assert result.success is False
        assert result.error.kind is AuthErrorKind.CREDENTIAL_STORAGE_FAILED
        assert future.result(timeout=1).error.kind is AuthErrorKind.CREDENTIAL_STORAGE_FAILED
        assert controller.state is FlowState.FAILED
        assert credentials.read(TOKEN_ACCOUNT) is None

    @responses.activate
    def test_malformed_token_response(self, credentials, pending_store):
        """Test a 200 without access_token."""
        responses.add(responses.POST, TOKEN_URL, json={"token_type": "Bearer"})
        controller = make_controller(credentials, pending_store)
        controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(callback_url(state))

        assert result.error.kind is AuthErrorKind.MALFORMED_TOKEN_RESPONSE

    @responses.activate
    def test_transport_failure(self, credentials, pending_store):
        """Test a network error during the exchange."""
        responses.add(responses.POST, TOKEN_URL, body=requests.exceptions.ConnectionError("down"))
        controller = make_controller(credentials, pending_store)
        controller.start()
        state = pending_store.load().state

        result = controller.handle_callback(callback_url(state))

        assert result.error.kind is AuthErrorKind.TRANSPORT_FAILURE


class TestCancelAndExpire:
    """Tests for cancellation and caller-side timeout."""

    def test_cancel_resolves_once(self, credentials, pending_store):
        """Test cancel resolves the future with USER_CANCELLED."""
        controller = make_controller(credentials, pending_store)
        future = controller.start()

        assert controller.cancel() is True
        assert controller.cancel() is False

        assert future.result(timeout=1).error.kind is AuthErrorKind.USER_CANCELLED
        assert controller.state is FlowState.FAILED

    def test_cancel_when_idle(self, credentials, pending_store):
        """Test cancel with nothing in flight."""
        controller = make_controller(credentials, pending_store)
        assert controller.cancel() is False

    def test_cancel_dismisses_surface_first(self, credentials, pending_store):
        """Test the embedded surface is gone before completion fires."""
        order = []
        surface = Mock()
        surface.dismiss.side_effect = lambda: order.append("dismissed")
        controller = make_controller(
            credentials, pending_store, opener=Mock(return_value=False), embedded=Mock(return_value=surface)
        )
        future = controller.start()
        future.add_done_callback(lambda f: order.append("resolved"))

        controller.cancel()

        assert order == ["dismissed", "resolved"]

    @responses.activate
    def test_late_callback_after_expire_is_ignored(self, credentials, pending_store):
        """Test a redirect after the timeout neither exchanges nor stores."""
        controller = make_controller(credentials, pending_store)
        future = controller.start()
        state = pending_store.load().state

        assert controller.expire() is True
        result = controller.handle_callback(callback_url(state))

        assert future.result(timeout=1).error.kind is AuthErrorKind.TIMEOUT
        assert result.success is False
        assert len(responses.calls) == 0
        assert credentials.read(TOKEN_ACCOUNT) is None

    def test_completion_during_exchange_is_discarded_after_expire(self, credentials, pending_store):
        """Test a token arriving after the timeout is not stored."""
        controller = make_controller(credentials, pending_store)
        future = controller.start()
        state = pending_store.load().state

        def slow_exchange(*args, **kwargs):
            controller.expire()
            return "late-token"

        controller.api.exchange_code = Mock(side_effect=slow_exchange)
        result = controller.handle_callback(callback_url(state))

        assert result.success is False
        assert future.result(timeout=1).error.kind is AuthErrorKind.TIMEOUT
        assert credentials.read(TOKEN_ACCOUNT) is None


class TestLoopbackRedirect:
    """Tests for the http://127.0.0.1 redirect variant."""

    @responses.activate
    def test_loopback_round_trip(self, credentials, pending_store):
        """Test the browser hitting the local server completes the flow."""
        responses.add(responses.POST, TOKEN_URL, json={"access_token": "tok-loop"})
        opener = Mock(return_value=True)
        controller = make_controller(
            credentials, pending_store, opener=opener, redirect_uri="http://127.0.0.1:0/callback"
        )
        future = controller.start()

        params = opened_params(opener)
        assert params["redirect_uri"] != "http://127.0.0.1:0/callback"
        with urllib.request.urlopen(callback_url(params["state"], base=params["redirect_uri"]), timeout=5):
            pass

        result = future.result(timeout=5)
        assert result.success is True
        assert credentials.read(TOKEN_ACCOUNT) == "tok-loop"
        assert parse_qs(responses.calls[0].request.body)["redirect_uri"] == [params["redirect_uri"]]
