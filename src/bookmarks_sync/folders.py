"""Binding of remote X bookmark folders to local collections."""

import logging

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .db import Collection, CollectionBookmark, FolderMapping, transaction, utcnow
from .errors import CollectionNotFoundError, InvalidRequestError

logger = logging.getLogger(__name__)


class FolderMapper:
    def __init__(self, session_factory: sessionmaker[Session]):
        self._session_factory = session_factory

    def map_folder(
        self,
        user_id: str,
        remote_folder_id: str,
        remote_folder_name: str,
        collection_id: int | None = None,
        create_new: bool = False,
    ) -> FolderMapping:
        """Point a remote folder at a collection, creating the collection if asked.

        Mapping an already-mapped folder overwrites the previous target.
        """
        if not create_new and collection_id is None:
            raise InvalidRequestError("Either collectionId or createNew is required")

        with transaction(self._session_factory) as db:
            if create_new:
                collection = Collection(
                    user_id=user_id,
                    name=remote_folder_name,
                    description="Imported from X folder",
                    is_public=False,
                )
                db.add(collection)
                db.flush()
            else:
                collection = db.get(Collection, collection_id)
                if collection is None or collection.user_id != user_id:
                    raise CollectionNotFoundError(collection_id)

            mapping = db.scalars(
                select(FolderMapping).where(
                    FolderMapping.user_id == user_id,
                    FolderMapping.remote_folder_id == remote_folder_id,
                )
            ).first()
            if mapping is None:
                mapping = FolderMapping(user_id=user_id, remote_folder_id=remote_folder_id)
                db.add(mapping)
            elif mapping.collection_id != collection.id:
                logger.info(
                    "Remapping folder %s from collection %s to %s",
                    remote_folder_id,
                    mapping.collection_id,
                    collection.id,
                )
            mapping.remote_folder_name = remote_folder_name
            mapping.collection_id = collection.id
            db.flush()

        return mapping

    def get_mapping(self, user_id: str, remote_folder_id: str) -> FolderMapping | None:
        with self._session_factory() as db:
            return db.scalars(
                select(FolderMapping).where(
                    FolderMapping.user_id == user_id,
                    FolderMapping.remote_folder_id == remote_folder_id,
                )
            ).first()

    def list_mappings(self, user_id: str) -> list[FolderMapping]:
        with self._session_factory() as db:
            return list(
                db.scalars(
                    select(FolderMapping)
                    .where(FolderMapping.user_id == user_id)
                    .order_by(FolderMapping.remote_folder_name)
                )
            )

    def ensure_membership(self, collection_id: int, bookmark_ids: list[int]) -> int:
        """Link bookmarks to a collection. Returns how many links were new.

        Existing links are left alone, so calling this twice is a no-op.
        """
        wanted = list(dict.fromkeys(bookmark_ids))
        if not wanted:
            return 0
        try:
            return self._insert_missing(collection_id, wanted)
        except IntegrityError:
            # A concurrent run linked some of the same bookmarks first
            logger.debug("Membership race on collection %s, retrying", collection_id)
            return self._insert_missing(collection_id, wanted)

    def _insert_missing(self, collection_id: int, wanted: list[int]) -> int:
        with transaction(self._session_factory) as db:
            existing = set(
                db.scalars(
                    select(CollectionBookmark.bookmark_id).where(
                        CollectionBookmark.collection_id == collection_id,
                        CollectionBookmark.bookmark_id.in_(wanted),
                    )
                )
            )
            missing = [b for b in wanted if b not in existing]
            for bookmark_id in missing:
                db.add(CollectionBookmark(collection_id=collection_id, bookmark_id=bookmark_id))

        return len(missing)

    def record_sync(self, user_id: str, remote_folder_id: str) -> None:
        with transaction(self._session_factory) as db:
            db.execute(
                update(FolderMapping)
                .where(
                    FolderMapping.user_id == user_id,
                    FolderMapping.remote_folder_id == remote_folder_id,
                )
                .values(last_sync_at=utcnow())
            )
