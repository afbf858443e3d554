"""In-process fake of the X API and helpers shared by the tests."""

import threading
import time
from collections import Counter
from datetime import timedelta
from urllib.parse import parse_qs

import httpx

from bookmarks_sync.db import utcnow
from bookmarks_sync.tokens import TokenGrant

API_BASE = "https://api.x.test"
AUTHORIZE_URL = "https://x.test/i/oauth2/authorize"
MEDIA_BASE = "https://pbs.twimg.com/media"

USER_ID = "user-1"
REMOTE_USER_ID = "42"


def make_post(
    n: int,
    likes: int = 0,
    text: str | None = None,
    author_id: str = "100",
    media_keys: list[str] | None = None,
    created_at: str = "2025-02-10T18:30:00.000Z",
) -> dict:
    post = {
        "id": str(1000 + n),
        "text": text if text is not None else f"Post number {n}",
        "created_at": created_at,
        "author_id": author_id,
        "public_metrics": {
            "like_count": likes,
            "retweet_count": 1,
            "reply_count": 2,
            "quote_count": 0,
        },
    }
    if media_keys:
        post["attachments"] = {"media_keys": media_keys}
    return post


def media_url(key: str) -> str:
    return f"{MEDIA_BASE}/{key}.jpg"


class FakeXServer:
    """Stand-in for the X API, served through httpx.MockTransport.

    Bookmarks are paginated with the offset as ``next_token``. Responses can
    be injected per page index through ``page_overrides``; each is served
    once, before the real page.
    """

    def __init__(self):
        self.posts: list[dict] = []
        self.folders: dict[str, dict] = {}
        self.users = {
            "100": {"id": "100", "username": "alice", "name": "Alice"},
            "200": {"id": "200", "username": "bob", "name": "Bob"},
        }
        self.media: dict[str, dict] = {}
        self.me = {"id": REMOTE_USER_ID, "username": "syncer", "name": "Sync Er"}

        self.auth_code = "good-code"
        self.token_version = 1
        self.refresh_delay = 0.0
        self.reject_refresh = False
        self.token_requests: list[dict] = []
        self.token_auth_headers: list[str | None] = []
        self.refresh_calls = 0
        self.token_overrides: list[httpx.Response] = []

        self.page_overrides: dict[int, list[httpx.Response]] = {}
        self.broken_media: set[str] = set()
        self.media_downloads: Counter = Counter()
        self.bookmark_requests = 0
        self._lock = threading.Lock()

    @property
    def access_token(self) -> str:
        return f"access-{self.token_version}"

    @property
    def refresh_token(self) -> str:
        return f"refresh-{self.token_version}"

    def add_posts(self, count: int, start: int = 0, **kwargs) -> list[dict]:
        posts = [make_post(start + i, **kwargs) for i in range(count)]
        self.posts.extend(posts)
        return posts

    def add_media(self, key: str) -> str:
        self.media[key] = {"media_key": key, "type": "photo", "url": media_url(key)}
        return media_url(key)

    def add_folder(self, folder_id: str, name: str, posts: list[dict]) -> None:
        self.folders[folder_id] = {"name": name, "posts": posts}

    def handler(self, request: httpx.Request) -> httpx.Response:
        if request.url.host == "pbs.twimg.com":
            return self._media(request)

        path = request.url.path
        if path == "/2/oauth2/token" and request.method == "POST":
            return self._token(request)

        if request.headers.get("Authorization") != f"Bearer {self.access_token}":
            return httpx.Response(401, json={"title": "Unauthorized"})

        if path == "/2/users/me":
            return httpx.Response(200, json={"data": self.me})

        prefix = f"/2/users/{REMOTE_USER_ID}/bookmarks"
        if path == prefix:
            return self._bookmarks(request, self.posts)
        if path == f"{prefix}/folders":
            return httpx.Response(
                200,
                json={"data": [{"id": fid, "name": f["name"]} for fid, f in self.folders.items()]},
            )
        if path.startswith(f"{prefix}/folders/"):
            folder = self.folders.get(path.rsplit("/", 1)[1])
            if folder is None:
                return httpx.Response(404, json={"title": "Not Found"})
            return self._bookmarks(request, folder["posts"])

        return httpx.Response(404, json={"title": "Not Found"})

    def _token(self, request: httpx.Request) -> httpx.Response:
        form = {k: v[0] for k, v in parse_qs(request.content.decode()).items()}
        with self._lock:
            self.token_requests.append(form)
            self.token_auth_headers.append(request.headers.get("Authorization"))
            if self.token_overrides:
                return self.token_overrides.pop(0)

        if form.get("grant_type") == "authorization_code":
            if form.get("code") != self.auth_code or not form.get("code_verifier"):
                return httpx.Response(400, json={"error": "invalid_request"})
            return self._grant()

        if form.get("grant_type") == "refresh_token":
            with self._lock:
                self.refresh_calls += 1
            time.sleep(self.refresh_delay)
            with self._lock:
                if self.reject_refresh or form.get("refresh_token") != self.refresh_token:
                    return httpx.Response(400, json={"error": "invalid_grant"})
                # Rotated on every use, like the real endpoint
                self.token_version += 1
            return self._grant()

        return httpx.Response(400, json={"error": "unsupported_grant_type"})

    def _grant(self) -> httpx.Response:
        return httpx.Response(
            200,
            json={
                "token_type": "bearer",
                "access_token": self.access_token,
                "refresh_token": self.refresh_token,
                "expires_in": 7200,
                "scope": "tweet.read users.read bookmark.read offline.access",
            },
        )

    def _bookmarks(self, request: httpx.Request, posts: list[dict]) -> httpx.Response:
        limit = int(request.url.params.get("max_results", "100"))
        offset = int(request.url.params.get("pagination_token", "0"))
        with self._lock:
            self.bookmark_requests += 1
            queued = self.page_overrides.get(offset // limit)
            if queued:
                return queued.pop(0)

        chunk = posts[offset : offset + limit]
        meta = {"result_count": len(chunk)}
        if offset + limit < len(posts):
            meta["next_token"] = str(offset + limit)
        return httpx.Response(
            200,
            json={
                "data": chunk,
                "includes": {
                    "users": list(self.users.values()),
                    "media": list(self.media.values()),
                },
                "meta": meta,
            },
        )

    def _media(self, request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        with self._lock:
            self.media_downloads[url] += 1
        if url in self.broken_media:
            return httpx.Response(404)
        return httpx.Response(200, content=b"image-bytes:" + url.encode())


def connect_user(
    services,
    fake_x: FakeXServer,
    user_id: str = USER_ID,
    expires_in: timedelta = timedelta(hours=1),
) -> str:
    """Store a credential as if the user had completed authorization."""
    services.token_store.save(
        user_id,
        REMOTE_USER_ID,
        fake_x.me["username"],
        TokenGrant(
            access_token=fake_x.access_token,
            refresh_token=fake_x.refresh_token,
            expires_at=utcnow() + expires_in,
        ),
    )
    return user_id
