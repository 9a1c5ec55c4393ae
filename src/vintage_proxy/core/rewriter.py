from __future__ import annotations

import logging
from urllib.parse import quote

from bs4 import Tag

from vintage_proxy.core.models import DocumentTree, ServableAsset
from vintage_proxy.core.utils import downgrade_scheme, is_http_url, resolve_url, url_scheme

logger = logging.getLogger(__name__)


DENIED_SCHEMES = frozenset({"javascript", "vbscript", "data", "mailto", "tel", "sms", "ftp", "sftp", "file"})
STRIPPED_TAGS = ("script", "style", "noscript", "iframe", "object", "embed")
RESPONSIVE_IMAGE_ATTRS = ("srcset", "sizes", "data-src", "data-srcset", "loading", "decoding")


def proxy_href(request_origin: str, target_url: str) -> str:
    return f"{request_origin.rstrip('/')}/?url={quote(target_url, safe='')}"


def image_proxy_href(request_origin: str, source_url: str) -> str:
    return f"{request_origin.rstrip('/')}/image-proxy?url={quote(source_url, safe='')}"


def original_href(request_origin: str, target_url: str) -> str:
    return f"{request_origin.rstrip('/')}/original?url={quote(target_url, safe='')}"


def rewrite_links(tree: DocumentTree, request_origin: str, target_base_url: str) -> int:
    """Route every anchor back through this relay.

    Relative hrefs are resolved against ``target_base_url``; https targets are
    downgraded to http. Hrefs with a denied or non-web scheme, or that cannot be
    parsed, are removed. In-page ``#fragment`` links are left untouched. Returns
    the number of rewritten links.
    """

    rewritten = 0
    for anchor in tree.soup.find_all("a", href=True):
        href = anchor["href"].strip()
        if href.startswith("#"):
            continue
        try:
            if url_scheme(href) in DENIED_SCHEMES:
                del anchor["href"]
                continue
            absolute = resolve_url(href, target_base_url)
        except ValueError:
            logger.debug("Dropping malformed href %r", href)
            del anchor["href"]
            continue
        if not is_http_url(absolute):
            del anchor["href"]
            continue
        anchor["href"] = proxy_href(request_origin, downgrade_scheme(absolute))
        rewritten += 1
    return rewritten


def simplify_markup(tree: DocumentTree) -> None:
    soup = tree.soup
    for tag in soup(list(STRIPPED_TAGS)):
        tag.decompose()
    for link in soup.find_all("link"):
        rel = link.get("rel") or []
        if isinstance(rel, str):
            rel = rel.split()
        if "stylesheet" in [r.lower() for r in rel]:
            link.decompose()
    for tag in soup.find_all(style=True):
        del tag["style"]


def apply_asset(img: Tag, asset: ServableAsset, request_origin: str) -> None:
    img["src"] = f"{request_origin.rstrip('/')}{asset.servable_path}"
    for attr in RESPONSIVE_IMAGE_ATTRS:
        if attr in img.attrs:
            del img[attr]
    if asset.passthrough:
        for attr in ("width", "height"):
            if attr in img.attrs:
                del img[attr]
        return
    if asset.width and asset.height:
        img["width"] = str(asset.width)
        img["height"] = str(asset.height)


def apply_fallback(img: Tag, source_url: str, request_origin: str, fallback: str) -> None:
    """Handle an image whose asset was skipped: ``drop``, ``keep`` or ``proxy``."""

    if fallback == "drop":
        img.decompose()
        return
    for attr in RESPONSIVE_IMAGE_ATTRS:
        if attr in img.attrs:
            del img[attr]
    if fallback == "proxy":
        img["src"] = image_proxy_href(request_origin, source_url)
    else:
        img["src"] = source_url
