"""
Page ids, referrer hosts and stay-event ids.

These keys end up in document ids, so they have to be stable across
deploys: existing buckets are found again only if the same path maps to
the same id.
"""

import re
from urllib.parse import unquote, urlsplit

from sitemetrics.config import settings

STAY_EVENT_PREFIX = "home_stay_seconds_"
DIRECT = "direct"

_SEARCH_HOSTS = (re.compile(r"google\."), re.compile(r"bing\.com"), re.compile(r"yahoo\."))


def safe_decode(value: str) -> str:
    """Percent-decode, falling back to the raw value on malformed escapes."""
    try:
        return unquote(value, errors="strict")
    except UnicodeDecodeError:
        return value


def normalize_page_id(path: str | None) -> str:
    """
    ``/about?x=1#top`` → ``about``; ``/`` → ``home``;
    ``/products/123`` → ``products``; ``/a/b`` → ``a_b``.
    """
    raw = re.sub(r"^/+", "", path or "").split("?")[0].split("#")[0]
    decoded = safe_decode(raw)
    if not decoded:
        return "home"
    if decoded.startswith("products/"):
        return "products"
    return decoded.replace("/", "_")


def is_excluded(page_id: str) -> bool:
    return page_id in settings.excluded_pages


def stay_event_id(page_id: str) -> str:
    return f"{STAY_EVENT_PREFIX}{page_id}"


def referrer_host(referrer: str | None) -> str:
    """Hostname of the referrer without ``www.``, or ``direct``."""
    if not referrer or referrer == DIRECT:
        return DIRECT
    try:
        host = urlsplit(referrer).hostname
    except ValueError:
        return DIRECT
    if not host:
        return DIRECT
    return re.sub(r"^www\.", "", host)


def classify_referrer(host: str) -> str:
    """Bucket a referrer host into ``direct``, ``search`` or ``sns``."""
    if host == DIRECT:
        return "direct"
    if any(p.search(host) for p in _SEARCH_HOSTS):
        return "search"
    return "sns"
