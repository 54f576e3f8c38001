from __future__ import annotations

import re
from urllib.parse import urlsplit, urlunsplit

_VIDEO_ID_RE = re.compile(r"/video/(\d+)")


def canonicalize_url(url: str) -> str:
    value = (url or "").strip()
    if not value:
        return ""

    try:
        parts = urlsplit(value)
    except Exception:
        return value.rstrip("/")

    if not parts.scheme or not parts.netloc:
        return value.rstrip("/")

    scheme = parts.scheme.lower()
    netloc = parts.netloc.lower()
    if netloc.startswith("www."):
        netloc = netloc[4:]

    path = (parts.path or "").rstrip("/")
    if not path:
        path = "/"

    return urlunsplit((scheme, netloc, path, "", ""))


def derive_item_id(url: str | None, author: str | None, seen_at: int | None) -> str | None:
    """
    Stable id for a viewed item.

    Prefers the numeric segment after /video/ in the URL; short links and
    other shapes fall back to "<author>-<seen_at>". Returns None when neither
    is available.
    """
    canonical = canonicalize_url(url or "")
    match = _VIDEO_ID_RE.search(canonical)
    if match:
        return match.group(1)

    who = (author or "").strip()
    if who and seen_at is not None:
        return f"{who}-{int(seen_at)}"
    return None
