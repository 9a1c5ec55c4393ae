from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Sequence
from urllib.parse import quote, quote_plus

from bs4 import Tag

from vintage_proxy.core.config import RelaySettings
from vintage_proxy.core.extractor import DocumentExtractor, ExtractionFailed, image_source
from vintage_proxy.core.fetcher import ContentClass, FetchError, Fetcher, FetchRole, classify
from vintage_proxy.core.media import LOGO_POLICY, MediaStore, TranscodePolicy, policy_for
from vintage_proxy.core.models import (
    AssetReference,
    AssetRole,
    DocumentTree,
    RelayResponse,
    ServableAsset,
)
from vintage_proxy.core.renderer import LegacyRenderer, RenderExtras
from vintage_proxy.core.rewriter import (
    apply_asset,
    apply_fallback,
    original_href,
    rewrite_links,
    simplify_markup,
)
from vintage_proxy.core.utils import is_http_url, resolve_url

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetOutcome:
    ref: AssetReference
    asset: ServableAsset | None = None
    error: BaseException | None = None


def _plain(status: int, message: str) -> RelayResponse:
    return RelayResponse(status=status, body=message.encode("utf-8"), content_type="text/plain; charset=utf-8")


def _drop_with_wrapper(img: Tag) -> None:
    wrapper = img.parent
    img.decompose()
    # Gallery images sit alone in a <p>; drop it once empty.
    if wrapper is not None and wrapper.name == "p" and wrapper.find(True) is None and not wrapper.get_text(strip=True):
        wrapper.decompose()


class Pipeline:
    """Per-request orchestration: fetch, classify, transform and encode one target."""

    def __init__(
        self,
        *,
        settings: RelaySettings,
        fetcher: Fetcher,
        media: MediaStore,
        extractor: DocumentExtractor | None = None,
        renderer: LegacyRenderer | None = None,
    ) -> None:
        settings.validate()
        self._settings = settings
        self._fetcher = fetcher
        self._media = media
        self._extractor = extractor or DocumentExtractor()
        self._renderer = renderer or LegacyRenderer(charset=settings.charset)
        self._image_policy = policy_for(settings.image_policy)

    def default_target(self) -> str | None:
        return self._settings.home_url

    async def handle(self, target: str, *, request_origin: str) -> RelayResponse:
        logger.info("Fetching: %s", target)
        try:
            return await self._run(target, request_origin)
        except FetchError as e:
            logger.warning("Page fetch failed: %s", e)
            return _plain(500, f"Error fetching page: {e}")
        except ExtractionFailed as e:
            logger.warning("%s", e)
            return _plain(500, "Failed to parse content")

    async def original(self, target: str) -> RelayResponse:
        logger.info("Fetching original page: %s", target)
        try:
            fetched = await self._fetcher.fetch(target, role=FetchRole.PAGE)
        except FetchError as e:
            logger.warning("Original page fetch failed: %s", e)
            return _plain(500, f"Error fetching original page: {e}")
        return RelayResponse(
            status=200,
            body=self._renderer.encode(fetched.text),
            content_type=self._renderer.content_type,
        )

    async def image_proxy(self, source_url: str) -> RelayResponse:
        try:
            fetched = await self._fetcher.fetch(source_url, role=FetchRole.ASSET)
        except FetchError as e:
            logger.warning("Image proxy fetch failed: %s", e)
            if e.status is not None:
                return _plain(e.status, "Failed to fetch image")
            return _plain(500, "Error fetching image")
        return RelayResponse(status=200, body=fetched.body, content_type=fetched.content_type or "image/jpeg")

    def search_redirect(self, keys: str) -> RelayResponse:
        template = self._settings.search_url_template
        if not template:
            return _plain(404, "Search is not configured")
        search_url = template.format(keys=quote_plus(keys or ""))
        return RelayResponse(status=302, body=b"", location=f"/?url={quote(search_url, safe='')}")

    async def _run(self, target: str, request_origin: str) -> RelayResponse:
        fetched = await self._fetcher.fetch(target, role=FetchRole.PAGE)
        kind = classify(fetched.content_type, url=target)
        if kind is ContentClass.IMAGE:
            return RelayResponse(status=200, body=fetched.body, content_type=fetched.content_type)
        if kind is ContentClass.BINARY:
            logger.info("Redirecting to non-text content %s (%s)", target, fetched.content_type)
            return RelayResponse(status=302, body=b"", location=target)

        tree = self._extractor.parse(fetched.text, fetched.final_url)
        if self._settings.mode == "article":
            title, content, logo = await self._transform_article(tree, request_origin)
            extras = RenderExtras(
                request_origin=request_origin,
                original_href=original_href(request_origin, target),
                logo=logo,
                search_action=self._search_action(request_origin),
            )
        else:
            title, content, logo = await self._transform_full_page(tree, request_origin)
            extras = RenderExtras(
                request_origin=request_origin,
                logo=logo,
                search_action=self._search_action(request_origin),
                heading=False,
            )

        rewrite_links(content, request_origin, fetched.final_url)
        body = self._renderer.render(title or target, content.body_markup(), extras)
        return RelayResponse(status=200, body=body, content_type=self._renderer.content_type)

    async def _transform_article(
        self, tree: DocumentTree, request_origin: str
    ) -> tuple[str, DocumentTree, ServableAsset | None]:
        article = self._extractor.extract_article(tree)
        content = article.content

        page_refs = self._extractor.discover_asset_references(tree, include_logo=self._settings.include_logo)
        article_refs = self._extractor.discover_asset_references(content, include_logo=False)
        supplemental = self._extractor.rank_supplemental_images(
            [r for r in page_refs if r.role is AssetRole.IMAGE],
            article_refs,
            limit=self._settings.max_supplemental_images,
        )
        if supplemental:
            self._insert_gallery(content, supplemental)

        simplify_markup(content)
        logo_refs = [r for r in page_refs if r.role is AssetRole.LOGO]
        outcomes = await self.transform_assets(logo_refs + article_refs + supplemental)
        logo = self._apply_outcomes(
            content,
            outcomes,
            request_origin,
            always_drop={r.source_url for r in supplemental},
        )
        return article.title, content, logo

    async def _transform_full_page(
        self, tree: DocumentTree, request_origin: str
    ) -> tuple[str, DocumentTree, ServableAsset | None]:
        simplify_markup(tree)
        refs = self._extractor.discover_asset_references(tree, include_logo=self._settings.include_logo)
        outcomes = await self.transform_assets(refs)
        logo = self._apply_outcomes(tree, outcomes, request_origin)
        return tree.title, tree, logo

    async def transform_assets(self, refs: Sequence[AssetReference]) -> list[AssetOutcome]:
        """Fan out one task per reference and wait for every one to settle."""

        limit = self._settings.max_asset_concurrency
        sem = asyncio.Semaphore(limit) if limit > 0 else None

        async def run(ref: AssetReference) -> ServableAsset | None:
            policy = self._policy_for(ref)
            if sem is None:
                return await self._media.obtain_asset(ref.source_url, policy)
            async with sem:
                return await self._media.obtain_asset(ref.source_url, policy)

        results = await asyncio.gather(*(run(ref) for ref in refs), return_exceptions=True)
        outcomes: list[AssetOutcome] = []
        for ref, result in zip(refs, results):
            if isinstance(result, BaseException):
                logger.warning("Asset task failed for %s: %r", ref.source_url, result)
                outcomes.append(AssetOutcome(ref=ref, error=result))
            else:
                outcomes.append(AssetOutcome(ref=ref, asset=result))
        converted = sum(1 for o in outcomes if o.asset is not None)
        logger.info("Processed %d assets (%d usable)", len(outcomes), converted)
        return outcomes

    def _policy_for(self, ref: AssetReference) -> TranscodePolicy:
        if ref.role is AssetRole.LOGO:
            return LOGO_POLICY
        return self._image_policy

    def _apply_outcomes(
        self,
        tree: DocumentTree,
        outcomes: Sequence[AssetOutcome],
        request_origin: str,
        *,
        always_drop: set[str] | None = None,
    ) -> ServableAsset | None:
        """Point every <img> at its transcoded asset and return the logo, if any."""

        logo: ServableAsset | None = None
        images: dict[str, ServableAsset | None] = {}
        for outcome in outcomes:
            if outcome.ref.role is AssetRole.LOGO:
                if outcome.asset is not None and not outcome.asset.passthrough:
                    logo = outcome.asset
                continue
            images[outcome.ref.source_url] = outcome.asset

        always_drop = always_drop or set()
        for img in tree.soup.find_all("img"):
            src = image_source(img)
            url = None
            if src:
                try:
                    url = resolve_url(src, tree.base_url)
                except ValueError:
                    url = None
            if url is None or not is_http_url(url):
                img.decompose()
                continue
            asset = images.get(url)
            if asset is not None:
                apply_asset(img, asset, request_origin)
            elif url in always_drop:
                _drop_with_wrapper(img)
            else:
                apply_fallback(img, url, request_origin, self._settings.asset_fallback)
        return logo

    @staticmethod
    def _insert_gallery(content: DocumentTree, refs: Sequence[AssetReference]) -> None:
        soup = content.soup
        gallery = soup.new_tag("div")
        for ref in refs:
            para = soup.new_tag("p")
            para.append(soup.new_tag("img", attrs={"src": ref.source_url, "alt": ""}))
            gallery.append(para)
        root = soup.body or soup.find("div") or soup
        root.insert(0, gallery)

    def _search_action(self, request_origin: str) -> str | None:
        if not self._settings.search_url_template:
            return None
        return f"{request_origin.rstrip('/')}/search"
