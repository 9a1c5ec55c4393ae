from __future__ import annotations

import logging
import re
from typing import Iterable
from urllib.parse import parse_qs, urlparse

from bs4 import BeautifulSoup, Tag
from readability import Document

from vintage_proxy.core.models import AssetReference, AssetRole, DocumentTree, ExtractedArticle
from vintage_proxy.core.utils import is_http_url, resolve_url, site_origin

logger = logging.getLogger(__name__)


NOISE_MARKERS = ("tracking", "beacon", "analytics", "avatar", "profile", "icon", "pixel", "spacer")
# Too short to match as substrings ("uploads", "download").
NOISE_TOKENS = frozenset({"ad", "ads", "track"})
SIZE_PARAMS = ("w", "width", "h", "height", "size")
MIN_SUPPLEMENTAL_DIMENSION = 50
MAX_SUPPLEMENTAL_IMAGES = 3

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")
# Ad-serving host labels such as "googleads", but not "downloads".
_AD_HOST_LABEL = re.compile(r"^[a-z0-9]*(?<!lo)ads$")


class ExtractionFailed(RuntimeError):
    def __init__(self, url: str, detail: str = "no primary content found") -> None:
        super().__init__(f"Failed to parse content from {url}: {detail}")
        self.url = url


def _rel_values(tag: Tag) -> list[str]:
    rel = tag.get("rel") or []
    if isinstance(rel, str):
        rel = rel.split()
    return [r.lower() for r in rel]


def _logo_candidates(soup: BeautifulSoup) -> Iterable[tuple[str, str]]:
    """Yield ``(href, hint)`` for declared site logos, best first."""

    links = [t for t in soup.find_all("link") if t.get("href")]
    for link in links:
        if "apple-touch-icon" in _rel_values(link):
            yield link["href"], 'link[rel="apple-touch-icon"]'
    for link in links:
        if "icon" in _rel_values(link):
            yield link["href"], 'link[rel="icon"]'
    for meta in soup.find_all("meta", attrs={"property": "og:logo"}):
        if meta.get("content"):
            yield meta["content"], 'meta[property="og:logo"]'
    for meta in soup.find_all("meta", attrs={"itemprop": "logo"}):
        if meta.get("content"):
            yield meta["content"], 'meta[itemprop="logo"]'


def image_source(img: Tag) -> str | None:
    src = (img.get("src") or "").strip()
    if not src or src.startswith("data:"):
        src = (img.get("data-src") or "").strip()
    if not src or src.startswith("data:"):
        return None
    return src


class DocumentExtractor:
    def parse(self, markup: str | bytes, base_url: str) -> DocumentTree:
        soup = BeautifulSoup(markup, "lxml")
        title = soup.title.get_text(strip=True) if soup.title else ""
        return DocumentTree(soup=soup, base_url=base_url, title=title)

    def extract_article(self, tree: DocumentTree) -> ExtractedArticle:
        """Reduce a page to its primary article with readability.

        Raises ExtractionFailed when readability gives up or the article has no text.
        """

        try:
            document = Document(tree.soup.decode(), url=tree.base_url)
            summary_html = document.summary(html_partial=True)
            title = (document.short_title() or "").strip()
        except Exception as e:
            raise ExtractionFailed(tree.base_url, str(e) or type(e).__name__) from e

        content = BeautifulSoup(summary_html, "html.parser")
        if not content.get_text(strip=True):
            raise ExtractionFailed(tree.base_url)

        title = title or tree.title
        logger.debug("Extracted article %r from %s", title, tree.base_url)
        return ExtractedArticle(
            title=title,
            content=DocumentTree(soup=content, base_url=tree.base_url, title=title),
        )

    def discover_asset_references(self, tree: DocumentTree, *, include_logo: bool = True) -> list[AssetReference]:
        refs: list[AssetReference] = []
        seen: set[tuple[AssetRole, str]] = set()

        def add(href: str, role: AssetRole, hint: str) -> bool:
            try:
                url = resolve_url(href, tree.base_url)
            except ValueError:
                return False
            if not is_http_url(url) or (role, url) in seen:
                return False
            seen.add((role, url))
            refs.append(AssetReference(source_url=url, role=role, origin_hint=hint))
            return True

        if include_logo:
            found = False
            for href, hint in _logo_candidates(tree.soup):
                if add(href, AssetRole.LOGO, hint):
                    found = True
                    break
            if not found and is_http_url(tree.base_url):
                add(f"{site_origin(tree.base_url)}/favicon.ico", AssetRole.LOGO, "/favicon.ico")

        for index, img in enumerate(tree.soup.find_all("img")):
            src = image_source(img)
            if src:
                add(src, AssetRole.IMAGE, f"img:{index}")
        return refs

    def rank_supplemental_images(
        self,
        all_images: Iterable[AssetReference],
        already_included: Iterable[AssetReference | str],
        *,
        limit: int = MAX_SUPPLEMENTAL_IMAGES,
    ) -> list[AssetReference]:
        """Pick up to ``limit`` page images worth adding beside the article, in page order."""

        included = {r.source_url if isinstance(r, AssetReference) else r for r in already_included}
        picked: list[AssetReference] = []
        for ref in all_images:
            if len(picked) >= limit:
                break
            if ref.role is not AssetRole.IMAGE or ref.source_url in included:
                continue
            if looks_like_noise(ref.source_url):
                continue
            included.add(ref.source_url)
            picked.append(ref)
        return picked


def looks_like_noise(url: str) -> bool:
    parsed = urlparse(url)
    location = f"{parsed.netloc} {parsed.path}".lower()
    if any(marker in location for marker in NOISE_MARKERS):
        return True
    if set(_TOKEN_SPLIT.split(location)) & NOISE_TOKENS:
        return True
    if any(_AD_HOST_LABEL.match(label) for label in re.split(r"[.-]", parsed.netloc.lower())):
        return True
    params = parse_qs(parsed.query or "", keep_blank_values=False)
    for name in SIZE_PARAMS:
        for value in params.get(name, []):
            if value.isdigit() and int(value) < MIN_SUPPLEMENTAL_DIMENSION:
                return True
    return False
