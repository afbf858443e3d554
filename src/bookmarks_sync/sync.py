"""Drive one synchronization run for a user.

A run pages through the user's bookmarks (or one mapped folder) in order,
caches attached media, upserts every item and links folder items to their
collection. Each item is committed on its own, so whatever was stored before
a rate limit or an expired token stays stored and a later run picks up from
the same point without duplicates.
"""

import logging
import time
from collections.abc import Callable

from .auth import OAuthAuthenticator
from .client import MAX_PAGE_SIZE, XClient
from .db import FolderMapping
from .errors import (
    AuthExpiredError,
    FolderNotFoundError,
    RateLimitedError,
    RemoteApiError,
    SyncError,
    TokenExpiredError,
)
from .folders import FolderMapper
from .media import MediaCache
from .models import BookmarksPage, FolderView, SyncResult, SyncRun
from .tokens import TokenStore
from .upsert import UpsertEngine

logger = logging.getLogger(__name__)

DEFAULT_MAX_PAGES = 10


class SyncOrchestrator:
    def __init__(
        self,
        authenticator: OAuthAuthenticator,
        token_store: TokenStore,
        x_client: XClient,
        media_cache: MediaCache,
        upsert_engine: UpsertEngine,
        folder_mapper: FolderMapper,
        max_pages: int = DEFAULT_MAX_PAGES,
        page_size: int = MAX_PAGE_SIZE,
        rate_limit_max_wait: float = 0.0,
        enrich: Callable[[int], None] | None = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.authenticator = authenticator
        self.token_store = token_store
        self.x_client = x_client
        self.media_cache = media_cache
        self.upsert_engine = upsert_engine
        self.folder_mapper = folder_mapper
        self.max_pages = max_pages
        self.page_size = page_size
        self.rate_limit_max_wait = rate_limit_max_wait
        self.enrich = enrich
        self._sleep = sleep

    def run_sync(self, user_id: str, folder_id: str | None = None) -> SyncResult:
        """Sync the user's bookmarks, or a single mapped folder.

        Raises:
            FolderNotFoundError: ``folder_id`` is not mapped for this user.
            AuthExpiredError: no usable credential, or X rejected the token on the
                first page. Later rejections end the run with ``auth_expired``.
        """
        mapping: FolderMapping | None = None
        if folder_id is not None:
            mapping = self.folder_mapper.get_mapping(user_id, folder_id)
            if mapping is None:
                raise FolderNotFoundError(folder_id)

        access_token = self.authenticator.ensure_fresh_token(user_id)
        remote_user_id = self.token_store.get(user_id).remote_user_id

        label = f"folder {folder_id}" if folder_id else "all bookmarks"
        logger.info("Starting sync of %s for user %s", label, user_id)

        run = SyncRun()
        flags: dict = {}
        cursor: str | None = None

        while run.pages < self.max_pages:
            try:
                if run.pages:
                    # Long runs can outlive the access token
                    access_token = self.authenticator.ensure_fresh_token(user_id)
                page = self._fetch_page(access_token, remote_user_id, cursor, folder_id)
            except RateLimitedError as e:
                logger.warning("Rate limited after %d pages, stopping run", run.pages)
                flags = {"rate_limited": True, "retry_after": e.retry_after}
                break
            except TokenExpiredError:
                self.token_store.mark_invalid(user_id)
                if not run.pages:
                    raise
                logger.warning("X rejected the access token after %d pages", run.pages)
                flags = {"auth_expired": True}
                break
            except AuthExpiredError as e:
                logger.warning("Token refresh failed mid-run: %s", e)
                flags = {"auth_expired": True}
                break
            except RemoteApiError as e:
                if not run.pages:
                    raise
                logger.error("Stopping after %d pages: %s", run.pages, e)
                run.errors += 1
                break

            run.pages += 1
            self._ingest_page(user_id, page, run, mapping)

            cursor = page.next_cursor
            if not cursor:
                break
        else:
            logger.info("Reached the %d page limit for this run", self.max_pages)

        self._run_enrichment(run.created_ids)

        self.token_store.record_sync(user_id)
        if mapping is not None:
            self.folder_mapper.record_sync(user_id, mapping.remote_folder_id)

        result = SyncResult.from_run(run, **flags)
        logger.info(
            "Sync done for user %s: %d added, %d updated, %d skipped, %d errors over %d pages",
            user_id,
            result.added,
            result.updated,
            result.skipped,
            result.errors,
            result.pages,
        )
        return result

    def _fetch_page(
        self,
        access_token: str,
        remote_user_id: str,
        cursor: str | None,
        folder_id: str | None,
    ) -> BookmarksPage:
        """Fetch one page, waiting out a short rate limit once."""
        try:
            return self.x_client.fetch_bookmarks_page(
                access_token, remote_user_id, cursor=cursor, folder_id=folder_id, page_size=self.page_size
            )
        except RateLimitedError as e:
            if e.retry_after is None or e.retry_after > self.rate_limit_max_wait:
                raise
            logger.info("Rate limited, waiting %.1fs before retrying the page", e.retry_after)
            self._sleep(e.retry_after)

        return self.x_client.fetch_bookmarks_page(
            access_token, remote_user_id, cursor=cursor, folder_id=folder_id, page_size=self.page_size
        )

    def _ingest_page(
        self,
        user_id: str,
        page: BookmarksPage,
        run: SyncRun,
        mapping: FolderMapping | None,
    ) -> None:
        for rejected in page.rejected:
            logger.warning("%s", rejected)
        run.errors += len(page.rejected)

        assets = self.media_cache.fetch_many([url for item in page.items for url in item.media_urls])

        bookmark_ids: list[int] = []
        for item in page.items:
            media_paths = [assets[url].public_path for url in item.media_urls if assets.get(url)]
            try:
                result = self.upsert_engine.upsert(
                    user_id, item, media_paths, processed=run.processed_external_ids
                )
            except Exception:
                logger.exception("Failed to store post %s", item.external_id)
                run.errors += 1
                continue
            run.tally(result)
            if result.bookmark_id is not None:
                bookmark_ids.append(result.bookmark_id)

        if mapping is not None and bookmark_ids:
            linked = self.folder_mapper.ensure_membership(mapping.collection_id, bookmark_ids)
            logger.debug("Linked %d new bookmarks to collection %s", linked, mapping.collection_id)

    def _run_enrichment(self, bookmark_ids: list[int]) -> None:
        if self.enrich is None:
            return
        for bookmark_id in bookmark_ids:
            try:
                self.enrich(bookmark_id)
            except Exception:
                logger.exception("Enrichment failed for bookmark %s", bookmark_id)

    def list_folders(self, user_id: str) -> list[FolderView]:
        """Remote folders with their local collection, if mapped."""
        access_token = self.authenticator.ensure_fresh_token(user_id)
        remote_user_id = self.token_store.get(user_id).remote_user_id
        try:
            folders = self.x_client.fetch_folders(access_token, remote_user_id)
        except TokenExpiredError:
            self.token_store.mark_invalid(user_id)
            raise

        mapped = {m.remote_folder_id: m.collection_id for m in self.folder_mapper.list_mappings(user_id)}
        return [FolderView(id=f.id, name=f.name, collection_id=mapped.get(f.id)) for f in folders]

    def sync_all_users(self) -> dict[str, SyncResult | None]:
        """Run a full sync for every user with a valid credential.

        One user's failure does not stop the others; it is logged and
        reported as ``None``.
        """
        results: dict[str, SyncResult | None] = {}
        for user_id in self.token_store.connected_user_ids():
            try:
                results[user_id] = self.run_sync(user_id)
            except SyncError as e:
                logger.error("Sync failed for user %s: %s", user_id, e)
                results[user_id] = None
        return results
