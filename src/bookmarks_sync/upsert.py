"""Idempotent create-or-update of remote bookmarks into the local store.

Identity rules, checked in order:
1. (user, external_source, external_id): the item was synced before.
2. (user, normalized_url): the same page was saved another way (extension,
   web form, import). The platform identity is attached to that record.
3. Neither: a new bookmark is created.

The platform is authoritative for engagement metrics. Title and description
follow the remote text only while the user has not edited them.
"""

import logging
from collections.abc import Iterable

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import Bookmark, transaction, utcnow
from .models import PLATFORM, RemoteBookmark, UpsertOutcome, UpsertResult
from .urls import normalize_url

logger = logging.getLogger(__name__)

TITLE_MAX_LENGTH = 100


def derive_title(text: str) -> str:
    """First part of the post, up to 100 chars."""
    text = " ".join((text or "").split())
    if len(text) > TITLE_MAX_LENGTH:
        return text[: TITLE_MAX_LENGTH - 3] + "..."
    return text or "Untitled post"


class UpsertEngine:
    def __init__(self, session_factory: sessionmaker[Session], platform: str = PLATFORM):
        self._session_factory = session_factory
        self.platform = platform

    def upsert(
        self,
        user_id: str,
        item: RemoteBookmark,
        media_paths: Iterable[str] | None = None,
        processed: set[str] | None = None,
    ) -> UpsertResult:
        """Create or update the local bookmark for one remote item.

        ``processed`` holds external ids already handled in the current run;
        a repeat is reported as skipped and the id is added on success.
        """
        if processed is not None and item.external_id in processed:
            logger.debug("Post %s already handled in this run", item.external_id)
            return UpsertResult(UpsertOutcome.skipped)

        media_paths = list(media_paths or [])
        try:
            result = self._upsert_once(user_id, item, media_paths)
        except IntegrityError:
            # A concurrent run inserted the same row between our lookup and insert
            logger.debug("Unique constraint hit for post %s, retrying lookup", item.external_id)
            result = self._upsert_once(user_id, item, media_paths)

        if processed is not None:
            processed.add(item.external_id)
        return result

    def _upsert_once(
        self, user_id: str, item: RemoteBookmark, media_paths: list[str]
    ) -> UpsertResult:
        normalized = normalize_url(item.url)

        with transaction(self._session_factory) as db:
            bookmark = db.scalars(
                select(Bookmark).where(
                    Bookmark.user_id == user_id,
                    Bookmark.external_source == self.platform,
                    Bookmark.external_id == item.external_id,
                )
            ).first()
            if bookmark is not None:
                self._refresh(bookmark, item, media_paths)
                return UpsertResult(UpsertOutcome.updated, bookmark.id)

            bookmark = db.scalars(
                select(Bookmark).where(
                    Bookmark.user_id == user_id,
                    Bookmark.normalized_url == normalized,
                )
            ).first()
            if bookmark is not None:
                self._merge(bookmark, item, media_paths)
                return UpsertResult(UpsertOutcome.updated, bookmark.id)

            bookmark = self._create(user_id, item, normalized, media_paths)
            db.add(bookmark)
            db.flush()
            logger.debug("Created bookmark %s for post %s", bookmark.id, item.external_id)
            return UpsertResult(UpsertOutcome.created, bookmark.id)

    def _create(
        self, user_id: str, item: RemoteBookmark, normalized: str, media_paths: list[str]
    ) -> Bookmark:
        return Bookmark(
            user_id=user_id,
            url=item.url,
            normalized_url=normalized,
            title=derive_title(item.text),
            description=item.text,
            source=self.platform,
            external_source=self.platform,
            external_id=item.external_id,
            remote_text=item.text,
            author_username=item.author.username,
            author_name=item.author.display_name,
            remote_created_at=item.created_at,
            like_count=item.metrics.like_count,
            repost_count=item.metrics.repost_count,
            reply_count=item.metrics.reply_count,
            quote_count=item.metrics.quote_count,
            media_urls=list(item.media_urls),
            local_media_paths=media_paths,
            date_saved=utcnow(),
        )

    def _refresh(self, bookmark: Bookmark, item: RemoteBookmark, media_paths: list[str]) -> None:
        """Update a bookmark previously synced from this platform."""
        previous_text = bookmark.remote_text
        if previous_text is not None and item.text != previous_text:
            if bookmark.title == derive_title(previous_text):
                bookmark.title = derive_title(item.text)
            if bookmark.description == previous_text:
                bookmark.description = item.text
        bookmark.remote_text = item.text
        self._apply_remote_fields(bookmark, item, media_paths)

    def _merge(self, bookmark: Bookmark, item: RemoteBookmark, media_paths: list[str]) -> None:
        """Attach platform identity to a bookmark saved through another source.

        The user's title and description are kept as they are.
        """
        if bookmark.external_id and bookmark.external_id != item.external_id:
            logger.warning(
                "Bookmark %s already linked to post %s; not relinking to %s",
                bookmark.id,
                bookmark.external_id,
                item.external_id,
            )
        else:
            bookmark.external_source = self.platform
            bookmark.external_id = item.external_id
            logger.info(
                "Linked %s bookmark %s to post %s", bookmark.source, bookmark.id, item.external_id
            )
        bookmark.remote_text = item.text
        bookmark.remote_created_at = item.created_at
        self._apply_remote_fields(bookmark, item, media_paths)

    @staticmethod
    def _apply_remote_fields(bookmark: Bookmark, item: RemoteBookmark, media_paths: list[str]) -> None:
        bookmark.like_count = item.metrics.like_count
        bookmark.repost_count = item.metrics.repost_count
        bookmark.reply_count = item.metrics.reply_count
        bookmark.quote_count = item.metrics.quote_count
        bookmark.author_username = item.author.username
        bookmark.author_name = item.author.display_name
        if item.media_urls:
            bookmark.media_urls = list(dict.fromkeys([*(bookmark.media_urls or []), *item.media_urls]))
        if media_paths:
            # Reassign, JSON columns do not track in-place mutation
            bookmark.local_media_paths = list(
                dict.fromkeys([*(bookmark.local_media_paths or []), *media_paths])
            )
