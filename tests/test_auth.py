"""Tests for the OAuth 2.0 PKCE flow and token refresh."""

import base64
import hashlib
import threading
from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest

from bookmarks_sync.auth import generate_code_challenge, generate_code_verifier
from bookmarks_sync.db import AuthSession
from bookmarks_sync.errors import AuthenticationError, AuthExpiredError, RemoteApiError
from tests.fakes import AUTHORIZE_URL, REMOTE_USER_ID, USER_ID, connect_user


class TestPkce:
    def test_verifier_length_and_charset(self):
        verifier = generate_code_verifier()
        assert 43 <= len(verifier) <= 128
        assert set(verifier) <= set("ABCDEFGHIJKLMNOPQRSTUVWXYZabcdefghijklmnopqrstuvwxyz0123456789-_")

    def test_verifiers_are_fresh(self):
        assert generate_code_verifier() != generate_code_verifier()

    def test_challenge_is_s256(self):
        verifier = "dBjftJeZ4CVP-mB92K27uhbUJU1p1r_wW1gFWFOEjXk"
        # RFC 7636 appendix B
        assert generate_code_challenge(verifier) == "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM"

    def test_challenge_has_no_padding(self):
        challenge = generate_code_challenge(generate_code_verifier())
        assert "=" not in challenge
        assert len(challenge) == len(base64.urlsafe_b64encode(hashlib.sha256(b"").digest()).rstrip(b"="))


class TestAuthorization:
    def test_start_builds_authorize_url(self, services):
        request = services.authenticator.start_authorization(USER_ID)

        parts = urlsplit(request.url)
        assert f"{parts.scheme}://{parts.netloc}{parts.path}" == AUTHORIZE_URL
        params = {k: v[0] for k, v in parse_qs(parts.query).items()}
        assert params["response_type"] == "code"
        assert params["client_id"] == "client-abc"
        assert params["redirect_uri"] == "http://127.0.0.1:8000/callback"
        assert params["scope"] == "tweet.read users.read bookmark.read offline.access"
        assert params["state"] == request.state
        assert params["code_challenge_method"] == "S256"

        with services.session_factory() as db:
            pending = db.get(AuthSession, request.session_handle)
        assert params["code_challenge"] == generate_code_challenge(pending.code_verifier)

    def test_each_attempt_gets_fresh_verifier_and_state(self, services):
        first = services.authenticator.start_authorization(USER_ID)
        second = services.authenticator.start_authorization(USER_ID)

        assert first.state != second.state
        with services.session_factory() as db:
            v1 = db.get(AuthSession, first.session_handle).code_verifier
            v2 = db.get(AuthSession, second.session_handle).code_verifier
        assert v1 != v2

    def test_start_drops_existing_credential(self, services, fake_x, connected_user):
        services.authenticator.start_authorization(connected_user)
        assert services.token_store.get(connected_user) is None

    def test_complete_stores_credential(self, services, fake_x):
        request = services.authenticator.start_authorization(USER_ID)

        username = services.authenticator.complete_authorization(
            "good-code", request.state, request.session_handle
        )

        assert username == "syncer"
        credential = services.token_store.get(USER_ID)
        assert credential.remote_user_id == REMOTE_USER_ID
        assert credential.access_token == fake_x.access_token
        assert credential.refresh_token == fake_x.refresh_token
        exchange = fake_x.token_requests[-1]
        assert exchange["grant_type"] == "authorization_code"
        with services.session_factory() as db:
            assert db.get(AuthSession, request.session_handle) is None
        assert len(exchange["code_verifier"]) >= 43

    def test_state_mismatch(self, services, fake_x):
        request = services.authenticator.start_authorization(USER_ID)

        with pytest.raises(AuthenticationError) as exc_info:
            services.authenticator.complete_authorization("good-code", "forged", request.session_handle)

        assert exc_info.value.code == "state_mismatch"
        assert services.token_store.get(USER_ID) is None
        assert fake_x.token_requests == []

    def test_session_is_single_use(self, services):
        request = services.authenticator.start_authorization(USER_ID)
        services.authenticator.complete_authorization("good-code", request.state, request.session_handle)

        with pytest.raises(AuthenticationError) as exc_info:
            services.authenticator.complete_authorization("good-code", request.state, request.session_handle)
        assert exc_info.value.code == "unknown_session"

    def test_mismatch_consumes_session(self, services):
        request = services.authenticator.start_authorization(USER_ID)
        with pytest.raises(AuthenticationError):
            services.authenticator.complete_authorization("good-code", "forged", request.session_handle)

        with pytest.raises(AuthenticationError) as exc_info:
            services.authenticator.complete_authorization("good-code", request.state, request.session_handle)
        assert exc_info.value.code == "unknown_session"

    def test_expired_session(self, services):
        services.authenticator.session_ttl = timedelta(seconds=-1)
        request = services.authenticator.start_authorization(USER_ID)

        with pytest.raises(AuthenticationError) as exc_info:
            services.authenticator.complete_authorization("good-code", request.state, request.session_handle)
        assert exc_info.value.code == "unknown_session"

    def test_code_rejected(self, services):
        request = services.authenticator.start_authorization(USER_ID)

        with pytest.raises(AuthenticationError) as exc_info:
            services.authenticator.complete_authorization("bad-code", request.state, request.session_handle)
        assert exc_info.value.code == "code_exchange_failed"
        assert exc_info.value.status_code == 400

    def test_public_client_sends_no_basic_auth(self, services, fake_x):
        request = services.authenticator.start_authorization(USER_ID)
        services.authenticator.complete_authorization("good-code", request.state, request.session_handle)

        assert fake_x.token_auth_headers == [None]
        assert fake_x.token_requests[-1]["client_id"] == "client-abc"

    def test_client_secret_uses_basic_auth(self, services, fake_x):
        services.authenticator.app.client_secret = "shh"
        request = services.authenticator.start_authorization(USER_ID)
        services.authenticator.complete_authorization("good-code", request.state, request.session_handle)

        expected = base64.b64encode(b"client-abc:shh").decode()
        assert fake_x.token_auth_headers == [f"Basic {expected}"]

    def test_disconnect(self, services, connected_user):
        services.authenticator.disconnect(connected_user)

        status = services.authenticator.status(connected_user)
        assert status.connected is False
        assert status.username is None


class TestEnsureFreshToken:
    def test_returns_current_token(self, services, fake_x, connected_user):
        assert services.authenticator.ensure_fresh_token(connected_user) == "access-1"
        assert fake_x.refresh_calls == 0

    def test_not_connected(self, services):
        with pytest.raises(AuthExpiredError) as exc_info:
            services.authenticator.ensure_fresh_token("nobody")
        assert exc_info.value.code == "auth_expired"
        assert exc_info.value.action_required == "reconnect"

    def test_refreshes_when_expiring(self, services, fake_x):
        connect_user(services, fake_x, expires_in=timedelta(minutes=1))

        token = services.authenticator.ensure_fresh_token(USER_ID)

        assert token == "access-2"
        assert fake_x.refresh_calls == 1
        credential = services.token_store.get(USER_ID)
        assert credential.refresh_token == "refresh-2"
        assert fake_x.token_requests[-1]["refresh_token"] == "refresh-1"

    def test_refresh_rejected_marks_invalid(self, services, fake_x):
        connect_user(services, fake_x, expires_in=timedelta(minutes=1))
        fake_x.reject_refresh = True

        with pytest.raises(AuthExpiredError) as exc_info:
            services.authenticator.ensure_fresh_token(USER_ID)

        assert exc_info.value.reason == "refresh_failed"
        assert services.token_store.get(USER_ID).is_valid is False
        with pytest.raises(AuthExpiredError):
            services.authenticator.ensure_fresh_token(USER_ID)
        assert fake_x.refresh_calls == 1

    def test_garbled_token_response_keeps_credential(self, services, fake_x):
        connect_user(services, fake_x, expires_in=timedelta(minutes=1))
        fake_x.token_overrides.append(httpx.Response(200, text="<html>gateway timeout</html>"))

        with pytest.raises(RemoteApiError):
            services.authenticator.ensure_fresh_token(USER_ID)

        credential = services.token_store.get(USER_ID)
        assert credential.is_valid
        assert credential.refresh_token == "refresh-1"

    def test_concurrent_refresh_is_single_flight(self, services, fake_x):
        connect_user(services, fake_x, expires_in=timedelta(minutes=1))
        fake_x.refresh_delay = 0.2
        barrier = threading.Barrier(4)
        tokens, errors = [], []

        def worker():
            barrier.wait()
            try:
                tokens.append(services.authenticator.ensure_fresh_token(USER_ID))
            except Exception as e:  # surfaced by the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert errors == []
        assert fake_x.refresh_calls == 1
        assert tokens == ["access-2"] * 4
        assert services.token_store.get(USER_ID).is_valid
