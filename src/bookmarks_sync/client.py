"""X API v2 client for bookmarks and bookmark folders.

Authentication is a user-context OAuth 2.0 bearer token obtained through
the PKCE flow in ``auth.py``. The client holds no credentials of its own:
every call takes the access token, so one instance serves every user.

Throttling (HTTP 429) is surfaced as RateLimitedError with the number of
seconds to wait, so the caller decides whether to pause or stop.
"""

import logging
import time

import httpx

from .errors import FolderNotFoundError, RateLimitedError, RemoteApiError, TokenExpiredError
from .models import BookmarksPage, RemoteAuthor, RemoteFolder
from .parser import parse_bookmarks_response, parse_folders_response, parse_user

logger = logging.getLogger(__name__)

X_API_BASE = "https://api.x.com"

BOOKMARK_FIELDS = {
    "expansions": "author_id,attachments.media_keys",
    "tweet.fields": "created_at,public_metrics,entities,attachments",
    "user.fields": "name,username,profile_image_url",
    "media.fields": "url,preview_image_url,type",
}

# X caps bookmark pages at 100 results
MAX_PAGE_SIZE = 100


class XClient:
    """Thin typed mapping over the X bookmarks endpoints."""

    def __init__(self, http: httpx.Client, api_base: str = X_API_BASE):
        self._http = http
        self.api_base = api_base.rstrip("/")

    def get_me(self, access_token: str) -> RemoteAuthor:
        response = self._get("/2/users/me", access_token)
        try:
            return parse_user(json_body(response))
        except ValueError as e:
            raise RemoteApiError(str(e), status=response.status_code) from e

    def fetch_bookmarks_page(
        self,
        access_token: str,
        remote_user_id: str,
        cursor: str | None = None,
        folder_id: str | None = None,
        page_size: int = MAX_PAGE_SIZE,
    ) -> BookmarksPage:
        """Fetch a single page of bookmarks, optionally restricted to one folder."""
        path = f"/2/users/{remote_user_id}/bookmarks"
        if folder_id:
            path = f"{path}/folders/{folder_id}"

        params = dict(BOOKMARK_FIELDS)
        params["max_results"] = str(max(1, min(page_size, MAX_PAGE_SIZE)))
        if cursor:
            params["pagination_token"] = cursor

        response = self._get(path, access_token, params=params, folder_id=folder_id)
        page = parse_bookmarks_response(json_body(response))
        logger.info(
            "Fetched %d bookmarks (%d rejected)%s",
            len(page.items),
            len(page.rejected),
            f" from folder {folder_id}" if folder_id else "",
        )
        return page

    def fetch_folders(self, access_token: str, remote_user_id: str) -> list[RemoteFolder]:
        response = self._get(f"/2/users/{remote_user_id}/bookmarks/folders", access_token)
        return parse_folders_response(json_body(response))

    def _get(
        self,
        path: str,
        access_token: str,
        params: dict | None = None,
        folder_id: str | None = None,
    ) -> httpx.Response:
        try:
            response = self._http.get(
                f"{self.api_base}{path}",
                params=params,
                headers={"Authorization": f"Bearer {access_token}"},
            )
        except httpx.HTTPError as e:
            raise RemoteApiError(f"Request to X failed: {e}") from e

        if response.status_code == 429:
            raise RateLimitedError(retry_after_seconds(response))

        if response.status_code == 401:
            raise TokenExpiredError("X rejected the access token (401).")

        if response.status_code == 404 and folder_id:
            raise FolderNotFoundError(folder_id)

        if response.status_code >= 400:
            raise RemoteApiError(
                f"X API returned {response.status_code} for {path}",
                status=response.status_code,
            )

        return response


def retry_after_seconds(response: httpx.Response) -> float | None:
    """Seconds to wait, from ``retry-after`` or the epoch in ``x-rate-limit-reset``."""
    retry_after = response.headers.get("retry-after")
    if retry_after:
        try:
            return max(0.0, float(retry_after))
        except ValueError:
            pass

    reset_time = response.headers.get("x-rate-limit-reset")
    if reset_time:
        try:
            return max(0.0, float(reset_time) - time.time())
        except ValueError:
            pass
    return None


def json_body(response: httpx.Response) -> dict:
    """Decode a JSON object body; anything else is a remote failure."""
    try:
        data = response.json()
    except ValueError as e:
        raise RemoteApiError("X returned a non-JSON body", status=response.status_code) from e
    if not isinstance(data, dict):
        raise RemoteApiError("X returned an unexpected JSON body", status=response.status_code)
    return data
