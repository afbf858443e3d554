"""Tests for the HTTP API."""

from datetime import timedelta
from urllib.parse import parse_qs, urlsplit

import httpx
import pytest
from fastapi.testclient import TestClient

from bookmarks_sync.api import create_app
from bookmarks_sync.media import url_hash
from tests.fakes import USER_ID, connect_user, media_url, make_post

HEADERS = {"X-User-Id": USER_ID}


@pytest.fixture
def api(services):
    with TestClient(create_app(services=services)) as client:
        yield client


class TestIdentity:
    def test_missing_user_header(self, api):
        response = api.get("/api/x/status")

        assert response.status_code == 401
        assert response.json()["error"] == "unauthenticated"


class TestAuthRoutes:
    def test_start_sets_cookie(self, api):
        response = api.get("/api/x/auth/start", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["authorizationUrl"].startswith("https://x.test/i/oauth2/authorize?")
        assert response.cookies["x_auth_session"] == body["sessionHandle"]

    def test_callback_with_cookie(self, api, fake_x):
        start = api.get("/api/x/auth/start", headers=HEADERS).json()
        state = parse_qs(urlsplit(start["authorizationUrl"]).query)["state"][0]

        response = api.post("/api/x/auth/callback", json={"code": "good-code", "state": state})

        assert response.status_code == 200
        assert response.json() == {"success": True, "username": "syncer"}
        status = api.get("/api/x/status", headers=HEADERS).json()
        assert status["connected"] is True
        assert status["username"] == "syncer"

    def test_callback_with_handle_in_body(self, api):
        start = api.get("/api/x/auth/start", headers=HEADERS).json()
        api.cookies.clear()
        state = parse_qs(urlsplit(start["authorizationUrl"]).query)["state"][0]

        response = api.post(
            "/api/x/auth/callback",
            json={"code": "good-code", "state": state, "sessionHandle": start["sessionHandle"]},
        )

        assert response.status_code == 200

    def test_callback_state_mismatch(self, api):
        api.get("/api/x/auth/start", headers=HEADERS)

        response = api.post("/api/x/auth/callback", json={"code": "good-code", "state": "forged"})

        assert response.status_code == 400
        assert response.json()["error"] == "state_mismatch"

    def test_callback_without_session(self, api):
        response = api.post("/api/x/auth/callback", json={"code": "good-code", "state": "s"})

        assert response.status_code == 400
        assert response.json()["error"] == "unknown_session"

    def test_callback_malformed_body(self, api):
        response = api.post("/api/x/auth/callback", json={"code": "good-code"})

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_disconnect(self, api, services, fake_x, connected_user):
        response = api.post("/api/x/disconnect", headers=HEADERS)

        assert response.json() == {"success": True}
        assert api.get("/api/x/status", headers=HEADERS).json() == {
            "connected": False,
            "username": None,
            "lastSync": None,
        }


class TestSyncRoutes:
    def test_sync(self, api, fake_x, connected_user):
        fake_x.add_posts(2)

        response = api.post("/api/x/sync", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert (body["added"], body["updated"], body["errors"]) == (2, 0, 0)
        assert api.get("/api/x/status", headers=HEADERS).json()["lastSync"] is not None

    def test_sync_not_connected(self, api):
        response = api.post("/api/x/sync", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["error"] == "auth_expired"
        assert response.json()["action_required"] == "reconnect"

    def test_sync_refresh_rejected(self, api, services, fake_x):
        connect_user(services, fake_x, expires_in=timedelta(seconds=10))
        fake_x.reject_refresh = True

        response = api.post("/api/x/sync", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["action_required"] == "reconnect"

    def test_sync_token_rejected_by_x(self, api, fake_x, connected_user):
        fake_x.add_posts(2)
        fake_x.token_version += 1

        response = api.post("/api/x/sync", headers=HEADERS)

        assert response.status_code == 401
        assert response.json()["error"] == "auth_expired"
        assert response.json()["action_required"] == "reconnect"
        assert api.get("/api/x/status", headers=HEADERS).json()["connected"] is False

    def test_sync_revoked_mid_run(self, api, services, fake_x, connected_user):
        services.orchestrator.page_size = 1
        fake_x.add_posts(2)
        fake_x.page_overrides[1] = [httpx.Response(401)]

        response = api.post("/api/x/sync", headers=HEADERS)

        assert response.status_code == 200
        body = response.json()
        assert body["added"] == 1
        assert body["action_required"] == "reconnect"

    def test_sync_unknown_folder(self, api, connected_user):
        response = api.post("/api/x/sync/folder/nope", headers=HEADERS)

        assert response.status_code == 404
        assert response.json()["error"] == "folder_not_found"

    def test_sync_folder(self, api, fake_x, connected_user):
        fake_x.add_folder("f1", "Reading", fake_x.add_posts(2))
        mapped = api.post(
            "/api/x/folders/map",
            headers=HEADERS,
            json={"folderId": "f1", "folderName": "Reading", "createNew": True},
        ).json()

        response = api.post("/api/x/sync/folder/f1", headers=HEADERS)

        assert mapped["success"] is True
        assert isinstance(mapped["collectionId"], int)
        assert response.status_code == 200
        assert response.json()["added"] == 2


class TestFolderRoutes:
    def test_list_folders(self, api, fake_x, connected_user):
        fake_x.add_folder("f1", "Reading", [])
        fake_x.add_folder("f2", "Recipes", [])
        mapped = api.post(
            "/api/x/folders/map",
            headers=HEADERS,
            json={"folderId": "f1", "folderName": "Reading", "createNew": True},
        ).json()

        response = api.get("/api/x/folders", headers=HEADERS)

        assert response.json() == [
            {"id": "f1", "name": "Reading", "collectionId": mapped["collectionId"], "mapped": True},
            {"id": "f2", "name": "Recipes", "collectionId": None, "mapped": False},
        ]

    def test_map_requires_target(self, api, connected_user):
        response = api.post(
            "/api/x/folders/map",
            headers=HEADERS,
            json={"folderId": "f1", "folderName": "Reading"},
        )

        assert response.status_code == 400
        assert response.json()["error"] == "invalid_request"

    def test_map_unknown_collection(self, api, connected_user):
        response = api.post(
            "/api/x/folders/map",
            headers=HEADERS,
            json={"folderId": "f1", "folderName": "Reading", "collectionId": 12345},
        )

        assert response.status_code == 404
        assert response.json()["error"] == "collection_not_found"


class TestMediaMount:
    def test_cached_media_served(self, api, fake_x, connected_user):
        url = fake_x.add_media("3_pic")
        fake_x.posts.append(make_post(1, media_keys=["3_pic"]))
        api.post("/api/x/sync", headers=HEADERS)

        response = api.get(f"/media/{url_hash(media_url('3_pic'))}.jpg")

        assert response.status_code == 200
        assert response.content == b"image-bytes:" + url.encode()
