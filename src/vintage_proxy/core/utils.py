from __future__ import annotations

import hashlib
import os
from pathlib import Path
from urllib.parse import urljoin, urlparse, urlunparse

HTTP_SCHEMES = {"http", "https"}
CACHE_KEY_LENGTH = 16


def normalize_target(param: str | None, raw_path: str | None = None) -> str | None:
    """Turn the ``url`` query param, or failing that the request path, into a fetchable URL.

    ``/example.com/a`` and ``?url=example.com/a`` both become ``http://example.com/a``.
    Clients that drop the leading ``h`` (``ttp://``, ``ttps://``) are corrected.
    """

    target = (param or "").strip()
    if not target:
        target = (raw_path or "").strip().lstrip("/")
    if not target:
        return None
    if target.startswith(("ttp://", "ttps://")):
        target = "h" + target
    if not target.lower().startswith(("http://", "https://")):
        target = "http://" + target
    return target


def resolve_url(href: str, base: str) -> str:
    """Resolve ``href`` against ``base``, dropping the fragment.

    Raises ValueError for hrefs urllib cannot parse (e.g. bad IPv6 hosts).
    """

    absolute = urljoin(base, href.strip())
    parsed = urlparse(absolute)
    return urlunparse(parsed._replace(fragment=""))


def url_scheme(url: str) -> str:
    return (urlparse(url).scheme or "").lower()


def is_http_url(url: str) -> bool:
    parsed = urlparse(url)
    return (parsed.scheme or "").lower() in HTTP_SCHEMES and bool(parsed.netloc)


def downgrade_scheme(url: str) -> str:
    parsed = urlparse(url)
    if (parsed.scheme or "").lower() == "https":
        return urlunparse(parsed._replace(scheme="http"))
    return url


def site_origin(url: str) -> str:
    parsed = urlparse(url)
    return f"{parsed.scheme}://{parsed.netloc}"


def cache_key(source_url: str) -> str:
    """Stable cache identifier for an asset URL (hash of the URL string, not the bytes)."""

    return hashlib.md5(source_url.encode("utf-8")).hexdigest()[:CACHE_KEY_LENGTH]


def atomic_rename(src: Path, dst: Path) -> None:
    dst.parent.mkdir(parents=True, exist_ok=True)
    os.replace(src, dst)
