"""Persistence of OAuth credentials, one row per (user, platform).

``save`` replaces the row inside a single transaction, so a concurrent reader
sees either the old or the new token pair, never a mix.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta

from sqlalchemy import delete, select, update
from sqlalchemy.orm import Session, sessionmaker

from .db import Credential, as_utc, transaction, utcnow
from .models import PLATFORM

logger = logging.getLogger(__name__)

DEFAULT_REFRESH_SKEW = timedelta(minutes=5)


@dataclass
class TokenGrant:
    """Token endpoint response mapped to the fields we persist."""

    access_token: str
    refresh_token: str | None
    expires_at: datetime


def is_expiring_soon(
    credential: Credential,
    skew: timedelta = DEFAULT_REFRESH_SKEW,
    now: datetime | None = None,
) -> bool:
    """True when the access token expires within ``skew``."""
    now = now or utcnow()
    return as_utc(credential.expires_at) - now < skew


class TokenStore:
    def __init__(self, session_factory: sessionmaker[Session], platform: str = PLATFORM):
        self._session_factory = session_factory
        self.platform = platform

    def get(self, user_id: str) -> Credential | None:
        with self._session_factory() as db:
            return db.scalars(
                select(Credential).where(
                    Credential.user_id == user_id,
                    Credential.platform == self.platform,
                )
            ).first()

    def save(
        self,
        user_id: str,
        remote_user_id: str,
        remote_username: str,
        grant: TokenGrant,
    ) -> Credential:
        """Create or overwrite the user's credential."""
        with transaction(self._session_factory) as db:
            credential = db.scalars(
                select(Credential).where(
                    Credential.user_id == user_id,
                    Credential.platform == self.platform,
                )
            ).first()
            if credential is None:
                credential = Credential(user_id=user_id, platform=self.platform)
                db.add(credential)
            credential.remote_user_id = remote_user_id
            credential.remote_username = remote_username
            credential.access_token = grant.access_token
            credential.refresh_token = grant.refresh_token
            credential.expires_at = grant.expires_at
            credential.is_valid = True
        logger.info("Stored credential for user %s (@%s)", user_id, remote_username)
        return credential

    def update_tokens(self, user_id: str, grant: TokenGrant) -> Credential | None:
        """Swap in a refreshed token pair, keeping the remote identity."""
        with transaction(self._session_factory) as db:
            credential = db.scalars(
                select(Credential).where(
                    Credential.user_id == user_id,
                    Credential.platform == self.platform,
                )
            ).first()
            if credential is None:
                return None
            credential.access_token = grant.access_token
            # Some token endpoints omit the refresh token when it is not rotated
            if grant.refresh_token:
                credential.refresh_token = grant.refresh_token
            credential.expires_at = grant.expires_at
            credential.is_valid = True
        return credential

    def delete(self, user_id: str) -> bool:
        with transaction(self._session_factory) as db:
            result = db.execute(
                delete(Credential).where(
                    Credential.user_id == user_id,
                    Credential.platform == self.platform,
                )
            )
        return result.rowcount > 0

    def mark_invalid(self, user_id: str) -> None:
        with transaction(self._session_factory) as db:
            db.execute(
                update(Credential)
                .where(Credential.user_id == user_id, Credential.platform == self.platform)
                .values(is_valid=False, updated_at=utcnow())
            )
        logger.warning("Credential for user %s marked invalid; reconnect required", user_id)

    def record_sync(self, user_id: str, at: datetime | None = None) -> None:
        with transaction(self._session_factory) as db:
            db.execute(
                update(Credential)
                .where(Credential.user_id == user_id, Credential.platform == self.platform)
                .values(last_sync_at=at or utcnow())
            )

    def connected_user_ids(self) -> list[str]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(Credential.user_id).where(
                        Credential.platform == self.platform,
                        Credential.is_valid.is_(True),
                    )
                )
            )
