"""Construction of the service graph from configuration.

Every collaborator receives its dependencies explicitly; nothing here is a
module-level singleton, so tests can build as many isolated graphs as they
need by passing their own engine and HTTP client.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass
from datetime import timedelta

import httpx
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from .auth import OAuthAuthenticator
from .client import XClient
from .config import AppConfig
from .db import create_db_engine, create_session_factory, init_db
from .errors import ConfigurationError
from .folders import FolderMapper
from .media import MediaCache
from .sync import SyncOrchestrator
from .tokens import TokenStore
from .upsert import UpsertEngine

logger = logging.getLogger(__name__)

USER_AGENT = "x-bookmarks-sync/0.1"


@dataclass
class Services:
    config: AppConfig
    engine: Engine
    session_factory: sessionmaker[Session]
    http: httpx.Client
    token_store: TokenStore
    x_client: XClient
    authenticator: OAuthAuthenticator
    media_cache: MediaCache
    folder_mapper: FolderMapper
    upsert_engine: UpsertEngine
    orchestrator: SyncOrchestrator

    def close(self) -> None:
        self.http.close()
        self.engine.dispose()


def create_http_client() -> httpx.Client:
    return httpx.Client(
        headers={"User-Agent": USER_AGENT},
        timeout=httpx.Timeout(30.0, connect=10.0),
        follow_redirects=True,
    )


def validate_config(config: AppConfig) -> None:
    if not config.x.client_id:
        raise ConfigurationError("x.client_id is not configured. Run 'x-bookmarks setup'.")
    if not config.storage.media_base_url.startswith("/"):
        raise ConfigurationError(
            f"storage.media_base_url must start with '/', got {config.storage.media_base_url!r}"
        )


def build_services(
    config: AppConfig,
    http: httpx.Client | None = None,
    engine: Engine | None = None,
    enrich: Callable[[int], None] | None = None,
) -> Services:
    """Wire every component for ``config``; creates the tables if missing.

    Raises:
        ConfigurationError: ``config`` cannot drive a sync (no client id, or a
            media URL prefix the API cannot mount).
    """
    validate_config(config)
    engine = engine or create_db_engine(config.storage.database_url)
    init_db(engine)
    session_factory = create_session_factory(engine)
    http = http or create_http_client()

    token_store = TokenStore(session_factory)
    x_client = XClient(http, api_base=config.x.api_base)
    authenticator = OAuthAuthenticator(
        config.x,
        token_store,
        session_factory,
        http,
        x_client,
        refresh_skew=timedelta(seconds=config.sync.token_refresh_skew),
        session_ttl=timedelta(seconds=config.sync.auth_session_ttl),
    )
    media_cache = MediaCache(
        http,
        config.storage.media_dir,
        public_base=config.storage.media_base_url,
        max_bytes=config.sync.media_max_bytes,
        max_workers=config.sync.download_workers,
    )
    folder_mapper = FolderMapper(session_factory)
    upsert_engine = UpsertEngine(session_factory)
    orchestrator = SyncOrchestrator(
        authenticator,
        token_store,
        x_client,
        media_cache,
        upsert_engine,
        folder_mapper,
        max_pages=config.sync.max_pages,
        page_size=config.sync.page_size,
        rate_limit_max_wait=config.sync.rate_limit_max_wait,
        enrich=enrich,
    )
    logger.debug("Services built for %s", engine.url.render_as_string(hide_password=True))

    return Services(
        config=config,
        engine=engine,
        session_factory=session_factory,
        http=http,
        token_store=token_store,
        x_client=x_client,
        authenticator=authenticator,
        media_cache=media_cache,
        folder_mapper=folder_mapper,
        upsert_engine=upsert_engine,
        orchestrator=orchestrator,
    )
