"""URL normalization used as the cross-source dedup key.

Normalization rules:
- Missing scheme is treated as https; http and https collapse to one key
- Host is lowercased, a leading ``www.`` is stripped
- Default ports (80, 443) are dropped
- Known aliases of the platform host map to ``x.com``
- Trailing slash on the path is stripped, fragment is dropped
- Query string is kept verbatim: ``/a?x=1`` and ``/a`` are different resources

``normalize_url`` never raises. Input that urllib cannot make sense of falls
back to the trimmed, lowercased raw string.
"""

import logging
from urllib.parse import urlsplit

logger = logging.getLogger(__name__)

HOST_ALIASES = {
    "twitter.com": "x.com",
    "mobile.twitter.com": "x.com",
    "mobile.x.com": "x.com",
}

DEFAULT_PORTS = {80, 443}


def normalize_url(raw_url: str) -> str:
    """Reduce a URL to its comparison key."""
    if not raw_url:
        return ""

    url = raw_url.strip()
    if "://" not in url:
        url = "https://" + url

    try:
        parts = urlsplit(url)
        hostname = parts.hostname or ""
        port = parts.port  # raises ValueError on a non-numeric or out-of-range port
    except ValueError as e:
        logger.debug("Falling back to raw key for %r: %s", raw_url, e)
        return raw_url.strip().lower()

    if not hostname:
        return raw_url.strip().lower()

    if hostname.startswith("www."):
        hostname = hostname[4:]
    hostname = HOST_ALIASES.get(hostname, hostname)

    netloc = hostname
    if ":" in hostname:
        netloc = f"[{hostname}]"  # IPv6 literal
    if port and port not in DEFAULT_PORTS:
        netloc = f"{netloc}:{port}"

    path = parts.path.rstrip("/")
    key = f"https://{netloc}{path}"
    if parts.query:
        key = f"{key}?{parts.query}"
    return key
