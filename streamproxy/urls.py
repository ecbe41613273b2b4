"""Target URL classification.

Decides whether a ``/proxy`` target is a browsable page (redirected, never
fetched), a time-limited provider link (provider-aware fetch), or a plain
media URL (generic fetch).
"""

import re
from datetime import datetime, timezone
from urllib.parse import parse_qs, urlsplit

_PAGE_PATTERNS = (
    re.compile(r"youtube\.com/watch"),
    re.compile(r"youtu\.be/"),
    re.compile(r"youtube\.com/(shorts|playlist|channel|c/)"),
)

# Hosts whose links need browser-like headers and may carry an expiry.
_PROVIDER_HOSTS = ("googlevideo.com", "youtube.com", "youtu.be")

# Only CDN links carry the signed ``expire`` parameter.
_EXPIRING_HOST = "googlevideo.com"
_EXPIRY_PARAM = "expire"


def _hostname(url: str) -> str:
    try:
        return (urlsplit(url).hostname or "").lower()
    except ValueError:
        return ""


def _host_matches(host: str, domain: str) -> bool:
    return host == domain or host.endswith("." + domain)


def is_page_url(url: str) -> bool:
    """True for watch pages, short links, playlists and channels."""
    return any(p.search(url) for p in _PAGE_PATTERNS)


def is_provider_url(url: str) -> bool:
    host = _hostname(url)
    return any(_host_matches(host, d) for d in _PROVIDER_HOSTS)


def link_expiry(url: str) -> datetime | None:
    """Return the expiry encoded in a provider CDN link, if any."""
    parts = urlsplit(url)
    if not _host_matches((parts.hostname or "").lower(), _EXPIRING_HOST):
        return None
    values = parse_qs(parts.query).get(_EXPIRY_PARAM)
    if not values:
        return None
    try:
        return datetime.fromtimestamp(int(values[0]), tz=timezone.utc)
    except (ValueError, OverflowError, OSError):
        return None

