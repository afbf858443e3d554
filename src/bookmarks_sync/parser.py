"""Parse X API v2 bookmark responses into RemoteBookmark objects.

A bookmarks response is split across three places:
    data[]            the posts (id, text, created_at, author_id, ...)
    includes.users[]  authors, joined on author_id
    includes.media[]  attachments, joined on attachments.media_keys

A post that cannot be mapped is reported as an IngestionError next to the
parsed items instead of failing the whole page.
"""

import logging
from datetime import datetime

from .errors import IngestionError
from .models import BookmarksPage, EngagementMetrics, RemoteAuthor, RemoteBookmark, RemoteFolder

logger = logging.getLogger(__name__)


def parse_bookmarks_response(data: dict) -> BookmarksPage:
    """Map one bookmarks response into a page of items and rejects."""
    includes = data.get("includes") or {}
    users = {u["id"]: u for u in includes.get("users", []) if "id" in u}
    media = {m["media_key"]: m for m in includes.get("media", []) if "media_key" in m}

    page = BookmarksPage(next_cursor=(data.get("meta") or {}).get("next_token"))
    for post in data.get("data") or []:
        try:
            page.items.append(_parse_post(post, users, media))
        except (KeyError, TypeError, ValueError) as e:
            external_id = str(post.get("id", "")) if isinstance(post, dict) else ""
            error = IngestionError(external_id, str(e) or type(e).__name__)
            logger.warning("Skipping malformed post %s: %s", external_id or "?", e)
            page.rejected.append(error)
    return page


def parse_folders_response(data: dict) -> list[RemoteFolder]:
    return [
        RemoteFolder(id=str(f["id"]), name=f.get("name") or str(f["id"]))
        for f in data.get("data") or []
        if "id" in f
    ]


def parse_user(data: dict) -> RemoteAuthor:
    user = data.get("data") or {}
    if not user.get("id") or not user.get("username"):
        raise ValueError("users/me response carries no user")
    return RemoteAuthor(
        id=str(user["id"]),
        username=user["username"],
        display_name=user.get("name", user["username"]),
    )


def parse_created_at(value: str) -> datetime:
    """Parse an X v2 timestamp such as ``2024-01-01T00:00:00.000Z``."""
    if not value:
        raise ValueError("missing created_at")
    created_at = datetime.fromisoformat(value)
    if created_at.tzinfo is None:
        raise ValueError(f"created_at without timezone: {value!r}")
    return created_at


def _parse_post(post: dict, users: dict[str, dict], media: dict[str, dict]) -> RemoteBookmark:
    external_id = str(post["id"])
    text = post["text"]
    created_at = parse_created_at(post.get("created_at", ""))

    author = _resolve_author(post.get("author_id"), users)

    entities = post.get("entities") or {}
    url_entities = entities.get("urls") or []
    text = _expand_urls_in_text(text, url_entities)

    media_urls = []
    for key in (post.get("attachments") or {}).get("media_keys", []):
        item = media.get(key)
        if not item:
            continue
        # Videos and GIFs only expose a still preview
        media_url = item.get("url") or item.get("preview_image_url")
        if media_url:
            media_urls.append(media_url)

    handle = author.username if author.username != "unknown" else "i"
    url = post.get("url") or f"https://x.com/{handle}/status/{external_id}"

    metrics = post.get("public_metrics") or {}
    return RemoteBookmark(
        external_id=external_id,
        author=author,
        text=text,
        created_at=created_at,
        url=url,
        metrics=EngagementMetrics(
            like_count=int(metrics.get("like_count", 0)),
            repost_count=int(metrics.get("retweet_count", metrics.get("repost_count", 0))),
            reply_count=int(metrics.get("reply_count", 0)),
            quote_count=int(metrics.get("quote_count", 0)),
        ),
        media_urls=media_urls,
    )


def _resolve_author(author_id: str | None, users: dict[str, dict]) -> RemoteAuthor:
    user = users.get(author_id or "")
    if user and user.get("username"):
        return RemoteAuthor(
            id=str(user["id"]),
            username=user["username"],
            display_name=user.get("name", "Unknown"),
        )
    logger.debug("author %s not in includes.users", author_id)
    return RemoteAuthor(id=author_id or "", username="unknown", display_name="Unknown")


def _expand_urls_in_text(text: str, url_entities: list[dict]) -> str:
    """Replace t.co shortened URLs with their expanded form; drop media links."""
    # Sort by start index descending so replacements don't shift positions
    sorted_entities = sorted(
        url_entities,
        key=lambda u: u.get("start", 0),
        reverse=True,
    )
    for entity in sorted_entities:
        short_url = entity.get("url", "")
        if not short_url:
            continue
        if entity.get("media_key"):
            text = text.replace(short_url, "")
        else:
            text = text.replace(short_url, entity.get("expanded_url", short_url))
    return text.strip()
