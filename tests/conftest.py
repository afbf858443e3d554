"""Shared test fixtures."""

import httpx
import pytest

from bookmarks_sync.config import AppConfig, StorageConfig, SyncConfig, XAppConfig
from bookmarks_sync.services import build_services
from tests.fakes import API_BASE, AUTHORIZE_URL, FakeXServer, connect_user


@pytest.fixture
def fake_x() -> FakeXServer:
    return FakeXServer()


@pytest.fixture
def http_client(fake_x):
    client = httpx.Client(transport=httpx.MockTransport(fake_x.handler))
    yield client
    client.close()


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    return AppConfig(
        x=XAppConfig(
            client_id="client-abc",
            redirect_uri="http://127.0.0.1:8000/callback",
            api_base=API_BASE,
            authorize_url=AUTHORIZE_URL,
        ),
        storage=StorageConfig(
            database_url=f"sqlite:///{tmp_path / 'bookmarks.db'}",
            media_dir=tmp_path / "media",
            media_base_url="/media",
        ),
        sync=SyncConfig(max_pages=10, page_size=100, download_workers=4),
    )


@pytest.fixture
def services(app_config, http_client):
    services = build_services(app_config, http=http_client)
    yield services
    services.engine.dispose()


@pytest.fixture
def connected_user(services, fake_x) -> str:
    return connect_user(services, fake_x)
