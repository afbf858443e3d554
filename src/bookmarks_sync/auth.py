"""OAuth 2.0 authorization code flow with PKCE against X.

Lifecycle of a user's connection:

    Unauthenticated -> AuthPending(verifier, state) -> Authenticated -> Expired | Revoked

``start_authorization`` persists a fresh verifier and state under a random,
short-lived session handle. ``complete_authorization`` checks the state for
that handle before exchanging the code, so a forged callback cannot bind
someone else's X account.

Token refresh is single-flighted per user: X rotates refresh tokens and
invalidates the old one on first use, so two concurrent refreshes with the
same token would leave one caller holding a dead credential.
"""

import base64
import hashlib
import hmac
import logging
import secrets
import threading
from datetime import datetime, timedelta
from urllib.parse import urlencode

import httpx
from sqlalchemy import delete
from sqlalchemy.orm import Session, sessionmaker

from .client import XClient, json_body
from .config import XAppConfig
from .db import AuthSession, Credential, as_utc, transaction, utcnow
from .errors import AuthenticationError, AuthExpiredError, RemoteApiError
from .models import AuthorizationRequest, ConnectionStatus
from .tokens import DEFAULT_REFRESH_SKEW, TokenGrant, TokenStore, is_expiring_soon

logger = logging.getLogger(__name__)

REQUIRED_SCOPES = [
    "tweet.read",
    "users.read",
    "bookmark.read",
    "offline.access",
]


def generate_code_verifier() -> str:
    """A fresh high-entropy verifier (86 chars, within RFC 7636's 43-128)."""
    return secrets.token_urlsafe(64)


def generate_code_challenge(verifier: str) -> str:
    digest = hashlib.sha256(verifier.encode("ascii")).digest()
    return base64.urlsafe_b64encode(digest).rstrip(b"=").decode("ascii")


class OAuthAuthenticator:
    def __init__(
        self,
        app: XAppConfig,
        token_store: TokenStore,
        session_factory: sessionmaker[Session],
        http: httpx.Client,
        x_client: XClient,
        refresh_skew: timedelta = DEFAULT_REFRESH_SKEW,
        session_ttl: timedelta = timedelta(minutes=10),
    ):
        self.app = app
        self.token_store = token_store
        self._session_factory = session_factory
        self._http = http
        self._x_client = x_client
        self.refresh_skew = refresh_skew
        self.session_ttl = session_ttl
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    @property
    def token_url(self) -> str:
        return f"{self.app.api_base}/2/oauth2/token"

    # -- authorization --------------------------------------------------

    def start_authorization(self, user_id: str) -> AuthorizationRequest:
        """Begin a new PKCE flow; any existing credential is dropped first."""
        if self.token_store.delete(user_id):
            logger.info("Cleared previous credential for user %s before re-authorizing", user_id)

        verifier = generate_code_verifier()
        state = secrets.token_urlsafe(32)
        handle = secrets.token_urlsafe(32)
        now = utcnow()

        with transaction(self._session_factory) as db:
            db.execute(delete(AuthSession).where(AuthSession.expires_at < now))
            db.add(
                AuthSession(
                    handle=handle,
                    user_id=user_id,
                    state=state,
                    code_verifier=verifier,
                    created_at=now,
                    expires_at=now + self.session_ttl,
                )
            )

        query = urlencode(
            {
                "response_type": "code",
                "client_id": self.app.client_id,
                "redirect_uri": self.app.redirect_uri,
                "scope": " ".join(REQUIRED_SCOPES),
                "state": state,
                "code_challenge": generate_code_challenge(verifier),
                "code_challenge_method": "S256",
            }
        )
        return AuthorizationRequest(
            url=f"{self.app.authorize_url}?{query}",
            session_handle=handle,
            state=state,
        )

    def complete_authorization(self, code: str, state: str, session_handle: str) -> str:
        """Exchange the callback code for tokens. Returns the X username."""
        with transaction(self._session_factory) as db:
            pending = db.get(AuthSession, session_handle) if session_handle else None
            if pending is not None:
                # Single use, whatever the outcome
                db.delete(pending)

        if pending is None or as_utc(pending.expires_at) < utcnow():
            raise AuthenticationError("unknown_session", "Authorization session expired or unknown")

        if not hmac.compare_digest(pending.state.encode(), (state or "").encode()):
            logger.warning("State mismatch on authorization callback for user %s", pending.user_id)
            raise AuthenticationError("state_mismatch")

        grant = self._token_request(
            {
                "grant_type": "authorization_code",
                "code": code,
                "redirect_uri": self.app.redirect_uri,
                "code_verifier": pending.code_verifier,
                "client_id": self.app.client_id,
            },
            on_rejected=lambda status: AuthenticationError(
                "code_exchange_failed", f"X rejected the authorization code ({status})"
            ),
        )

        me = self._x_client.get_me(grant.access_token)
        self.token_store.save(pending.user_id, me.id, me.username, grant)
        logger.info("User %s connected X account @%s", pending.user_id, me.username)
        return me.username

    def disconnect(self, user_id: str) -> None:
        self.token_store.delete(user_id)
        with transaction(self._session_factory) as db:
            db.execute(delete(AuthSession).where(AuthSession.user_id == user_id))
        logger.info("Disconnected X account for user %s", user_id)

    def status(self, user_id: str) -> ConnectionStatus:
        credential = self.token_store.get(user_id)
        if credential is None:
            return ConnectionStatus(connected=False)
        return ConnectionStatus(
            connected=credential.is_valid,
            username=credential.remote_username,
            last_sync=as_utc(credential.last_sync_at),
        )

    # -- refresh --------------------------------------------------------

    def ensure_fresh_token(self, user_id: str) -> str:
        """Return a usable access token, refreshing it if it is about to expire.

        Raises:
            AuthExpiredError: not connected, or the refresh token was rejected.
            RemoteApiError: the token endpoint failed for another reason.
        """
        credential = self._valid_credential(user_id)
        if not is_expiring_soon(credential, self.refresh_skew):
            return credential.access_token

        with self._user_lock(user_id):
            # Another run may have refreshed while we waited for the lock
            credential = self._valid_credential(user_id)
            if not is_expiring_soon(credential, self.refresh_skew):
                return credential.access_token

            if not credential.refresh_token:
                self.token_store.mark_invalid(user_id)
                raise AuthExpiredError("refresh_failed", "No refresh token stored; reconnect to continue.")

            logger.info("Refreshing X access token for user %s", user_id)

            def _revoked(status: int) -> AuthExpiredError:
                self.token_store.mark_invalid(user_id)
                return AuthExpiredError("refresh_failed")

            grant = self._token_request(
                {
                    "grant_type": "refresh_token",
                    "refresh_token": credential.refresh_token,
                    "client_id": self.app.client_id,
                },
                on_rejected=_revoked,
            )
            self.token_store.update_tokens(user_id, grant)
            return grant.access_token

    def _valid_credential(self, user_id: str) -> Credential:
        credential = self.token_store.get(user_id)
        if credential is None:
            raise AuthExpiredError("not_connected", "X account is not connected.")
        if not credential.is_valid:
            raise AuthExpiredError("revoked")
        return credential

    def _user_lock(self, user_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(user_id)
            if lock is None:
                lock = self._locks[user_id] = threading.Lock()
            return lock

    def _token_request(self, form: dict, on_rejected) -> TokenGrant:
        """POST to the token endpoint.

        ``on_rejected(status)`` builds the exception for a 400/401, which is how
        X answers an invalid code, verifier or refresh token.
        """
        auth = None
        if self.app.client_secret:
            # Confidential clients authenticate with HTTP Basic
            auth = (self.app.client_id, self.app.client_secret)

        requested_at = utcnow()
        try:
            response = self._http.post(self.token_url, data=form, auth=auth)
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Token request failed: {e}") from e

        if response.status_code in (400, 401):
            logger.warning("Token endpoint rejected %s grant (%d)", form["grant_type"], response.status_code)
            raise on_rejected(response.status_code)
        if response.status_code >= 400:
            raise RemoteApiError(
                f"Token endpoint returned {response.status_code}", status=response.status_code
            )

        return parse_token_response(json_body(response), requested_at)


def parse_token_response(data: dict, requested_at: datetime) -> TokenGrant:
    try:
        access_token = data["access_token"]
    except (KeyError, TypeError) as e:
        raise RemoteApiError("Token response carries no access_token") from e
    expires_in = int(data.get("expires_in", 7200))
    return TokenGrant(
        access_token=access_token,
        refresh_token=data.get("refresh_token"),
        expires_at=requested_at + timedelta(seconds=expires_in),
    )
