"""Content-addressed cache for media attached to synced bookmarks.

Files live flat in ``media_dir`` as ``{sha256(url)}{ext}``. The URL, not the
payload, is hashed: X always serves one asset under one URL, so the hash is
an identity key and a cache hit needs no network call.

Downloads are written to a temporary file next to the target and renamed
into place, so a reader never sees a partial file. A failed download returns
None; the bookmark is kept without that asset.
"""

import hashlib
import logging
import os
import tempfile
import threading
from collections.abc import Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import parse_qs, urlsplit

import httpx

from .errors import MediaDownloadError
from .models import MediaAsset

logger = logging.getLogger(__name__)

DEFAULT_MAX_BYTES = 20 * 1024 * 1024
FALLBACK_EXTENSION = ".bin"


def url_hash(url: str) -> str:
    return hashlib.sha256(url.encode("utf-8")).hexdigest()


def guess_extension(url: str) -> str:
    """Guess a file extension from the URL path or known media hosts."""
    try:
        parts = urlsplit(url)
    except ValueError:
        return FALLBACK_EXTENSION

    ext = os.path.splitext(parts.path)[1].lower()
    if 1 < len(ext) <= 5:
        return ext

    host = (parts.hostname or "").lower()
    if host.endswith("twimg.com"):
        # pbs.twimg.com/media/<id>?format=png&name=small
        fmt = parse_qs(parts.query).get("format", [""])[0].lower()
        if fmt.isalnum() and 0 < len(fmt) <= 4:
            return f".{fmt}"
        return ".jpg"

    return FALLBACK_EXTENSION


@dataclass
class _KeyLock:
    lock: threading.Lock = field(default_factory=threading.Lock)
    holders: int = 0


class MediaCache:
    def __init__(
        self,
        http: httpx.Client,
        media_dir: Path,
        public_base: str = "/media",
        max_bytes: int = DEFAULT_MAX_BYTES,
        max_workers: int = 5,
    ):
        self._http = http
        self.media_dir = Path(media_dir)
        self.public_base = public_base.rstrip("/")
        self.max_bytes = max_bytes
        self.max_workers = max(1, max_workers)
        self._key_locks: dict[str, _KeyLock] = {}
        self._guard = threading.Lock()

    def asset_for(self, url: str) -> MediaAsset:
        content_hash = url_hash(url)
        filename = f"{content_hash}{guess_extension(url)}"
        return MediaAsset(
            content_hash=content_hash,
            source_url=url,
            local_path=str(self.media_dir / filename),
            public_path=f"{self.public_base}/{filename}",
        )

    def fetch_and_cache(self, url: str, auth_header: str | None = None) -> MediaAsset | None:
        """Return the cached asset for ``url``, downloading it on first reference."""
        try:
            return self._fetch(url, auth_header)
        except MediaDownloadError as e:
            logger.warning("%s", e)
            return None

    def fetch_many(
        self, urls: list[str], auth_header: str | None = None
    ) -> dict[str, MediaAsset | None]:
        """Cache every distinct URL with bounded concurrency."""
        distinct = list(dict.fromkeys(u for u in urls if u))
        if not distinct:
            return {}
        workers = min(self.max_workers, len(distinct))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="media") as pool:
            results = pool.map(lambda u: self.fetch_and_cache(u, auth_header), distinct)
            return dict(zip(distinct, results))

    def _fetch(self, url: str, auth_header: str | None) -> MediaAsset:
        if not url.startswith(("http://", "https://")):
            raise MediaDownloadError(url, "not an http(s) URL")

        asset = self.asset_for(url)
        target = Path(asset.local_path)

        # Same URL requested by two items of one page: download once
        with self._locked(asset.content_hash):
            if target.exists():
                logger.debug("Media cache hit for %s", url)
                return asset
            self._download(url, target, auth_header)
        logger.info("Cached media %s -> %s", url, target.name)
        return asset

    @contextmanager
    def _locked(self, key: str) -> Iterator[None]:
        """Hold the lock for ``key``; the entry is dropped when its last holder leaves."""
        with self._guard:
            entry = self._key_locks.get(key)
            if entry is None:
                entry = self._key_locks[key] = _KeyLock()
            entry.holders += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._guard:
                entry.holders -= 1
                if not entry.holders:
                    del self._key_locks[key]

    def _download(self, url: str, target: Path, auth_header: str | None) -> None:
        headers = {"Authorization": auth_header} if auth_header else {}
        try:
            self.media_dir.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=self.media_dir, prefix=".partial-")
        except OSError as e:
            raise MediaDownloadError(url, f"cannot write to {self.media_dir}: {e}") from e

        try:
            with os.fdopen(fd, "wb") as out:
                with self._http.stream("GET", url, headers=headers) as response:
                    if response.status_code >= 400:
                        raise MediaDownloadError(url, f"HTTP {response.status_code}")
                    written = 0
                    for chunk in response.iter_bytes():
                        written += len(chunk)
                        if written > self.max_bytes:
                            raise MediaDownloadError(url, f"larger than {self.max_bytes} bytes")
                        out.write(chunk)
            os.replace(tmp_name, target)
        # httpx raises InvalidURL or a bare ValueError for URLs it cannot parse
        except (httpx.HTTPError, httpx.InvalidURL, ValueError, OSError) as e:
            raise MediaDownloadError(url, str(e) or type(e).__name__) from e
        finally:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
