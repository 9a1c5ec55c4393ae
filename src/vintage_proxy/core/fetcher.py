from __future__ import annotations

import asyncio
import logging
from enum import Enum

import aiohttp
from aiolimiter import AsyncLimiter

from vintage_proxy.core.config import RelaySettings
from vintage_proxy.core.models import FetchResult

logger = logging.getLogger(__name__)


class FetchRole(str, Enum):
    PAGE = "page"
    ASSET = "asset"


class ContentClass(str, Enum):
    IMAGE = "image"
    MARKUP = "markup"
    BINARY = "binary"


class FetchError(RuntimeError):
    """Outbound retrieval failed.

    ``kind`` is ``"network"``, ``"timeout"`` or ``"status"``; ``status`` is set
    for the latter.
    """

    def __init__(self, url: str, kind: str, *, status: int | None = None, detail: str = "") -> None:
        message = f"{kind} error fetching {url}"
        if status is not None:
            message = f"HTTP {status} fetching {url}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message)
        self.url = url
        self.kind = kind
        self.status = status


def mime_type(content_type: str) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


def classify(content_type: str, *, url: str = "") -> ContentClass:
    mime = mime_type(content_type)
    if not mime:
        logger.info("No content type for %s; treating as text/html", url or "response")
        return ContentClass.MARKUP
    if mime.startswith("image/"):
        return ContentClass.IMAGE
    if mime.startswith("text/") or "xml" in mime or "json" in mime:
        return ContentClass.MARKUP
    return ContentClass.BINARY


class Fetcher:
    def __init__(self, *, settings: RelaySettings, session: aiohttp.ClientSession) -> None:
        self._settings = settings
        self._session = session
        # Optional outbound cap shared by page and asset fetches; 0 disables it.
        # Below 1 rps the period is stretched, since AsyncLimiter rejects a
        # fractional max_rate.
        self._limiter: AsyncLimiter | None = None
        rps = float(settings.requests_per_second)
        if rps >= 1.0:
            self._limiter = AsyncLimiter(max_rate=rps, time_period=1.0)
        elif rps > 0:
            self._limiter = AsyncLimiter(max_rate=1.0, time_period=1.0 / rps)

    def _headers(self, role: FetchRole) -> dict[str, str]:
        if role is FetchRole.ASSET:
            accept = "image/avif,image/webp,image/png,image/gif,image/jpeg,image/*;q=0.8,*/*;q=0.5"
        else:
            accept = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
        return {
            "User-Agent": self._settings.user_agent,
            "Accept": accept,
            "Accept-Language": "en-US,en;q=0.9",
        }

    def _timeout(self, role: FetchRole) -> aiohttp.ClientTimeout:
        if role is FetchRole.ASSET:
            return aiohttp.ClientTimeout(total=self._settings.asset_timeout_seconds)
        return aiohttp.ClientTimeout(total=self._settings.page_timeout_seconds)

    async def fetch(self, url: str, *, role: FetchRole = FetchRole.PAGE) -> FetchResult:
        try:
            if self._limiter is not None:
                await self._limiter.acquire()
            async with self._session.get(
                url,
                headers=self._headers(role),
                timeout=self._timeout(role),
                allow_redirects=True,
            ) as resp:
                body = await resp.read()
                result = FetchResult(
                    url=url,
                    final_url=str(resp.url),
                    status=int(resp.status),
                    content_type=resp.headers.get("Content-Type", ""),
                    charset=resp.charset,
                    body=body,
                )
        except asyncio.TimeoutError as e:
            raise FetchError(url, "timeout") from e
        except (aiohttp.ClientError, ValueError) as e:
            raise FetchError(url, "network", detail=str(e) or type(e).__name__) from e

        if not 200 <= result.status < 300:
            raise FetchError(url, "status", status=result.status)
        logger.debug("Fetched %s (%s, %d bytes, role=%s)", url, result.content_type, len(result.body), role.value)
        return result
