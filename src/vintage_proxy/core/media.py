from __future__ import annotations

import asyncio
import io
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from urllib.parse import quote

from PIL import Image, UnidentifiedImageError

from vintage_proxy.core.fetcher import FetchError, Fetcher, FetchRole, mime_type
from vintage_proxy.core.models import CacheEntry, ServableAsset
from vintage_proxy.core.utils import atomic_rename, cache_key

logger = logging.getLogger(__name__)


class AssetRejected(RuntimeError):
    """An asset was skipped.

    ``reason`` is one of ``bad_type``, ``too_small_bytes``,
    ``too_small_dimensions``, ``fetch_failed`` or ``undecodable``.
    """

    def __init__(self, url: str, reason: str, detail: str = "") -> None:
        super().__init__(f"{reason}: {url}" + (f" ({detail})" if detail else ""))
        self.url = url
        self.reason = reason


@dataclass(frozen=True)
class TranscodePolicy:
    name: str
    target_format: str
    max_width: int | None = 400
    max_height: int | None = 300
    allow_upscale: bool = False
    jpeg_quality: int = 60
    min_bytes: int = 1000
    min_dimension: int = 50
    # Pillow format names (``img.format``) served as-is through the image proxy.
    passthrough_formats: frozenset[str] = field(default_factory=frozenset)
    filename_prefix: str = ""

    @property
    def extension(self) -> str:
        return "jpg" if self.target_format == "JPEG" else "gif"


JPEG_POLICY = TranscodePolicy(name="jpeg", target_format="JPEG")
GIF_POLICY = TranscodePolicy(name="gif", target_format="GIF")
PNG_TO_GIF_POLICY = TranscodePolicy(
    name="png-to-gif",
    target_format="GIF",
    max_width=None,
    max_height=None,
    passthrough_formats=frozenset({"JPEG", "GIF"}),
)
LOGO_POLICY = TranscodePolicy(
    name="logo",
    target_format="GIF",
    max_width=48,
    max_height=48,
    allow_upscale=True,
    min_bytes=0,
    min_dimension=0,
    filename_prefix="logo_",
)

POLICIES: dict[str, TranscodePolicy] = {
    p.name: p for p in (JPEG_POLICY, GIF_POLICY, PNG_TO_GIF_POLICY, LOGO_POLICY)
}


def policy_for(name: str) -> TranscodePolicy:
    try:
        return POLICIES[name]
    except KeyError:
        raise ValueError(f"Unknown transcode policy {name!r}") from None


def fit_within(
    width: int,
    height: int,
    max_width: int | None,
    max_height: int | None,
    *,
    allow_upscale: bool = False,
) -> tuple[int, int]:
    scales: list[float] = []
    if max_width:
        scales.append(max_width / width)
    if max_height:
        scales.append(max_height / height)
    if not scales:
        return width, height
    scale = min(scales)
    if scale > 1.0 and not allow_upscale:
        scale = 1.0
    return max(1, round(width * scale)), max(1, round(height * scale))


def _flatten(img: Image.Image) -> Image.Image:
    if img.mode in ("RGBA", "LA", "P", "PA") or "transparency" in img.info:
        rgba = img.convert("RGBA")
        background = Image.new("RGBA", rgba.size, (255, 255, 255, 255))
        background.alpha_composite(rgba)
        return background.convert("RGB")
    return img.convert("RGB")


def transcode_bytes(data: bytes, policy: TranscodePolicy, *, url: str = "") -> tuple[bytes, int, int] | None:
    """Decode, filter, resize and re-encode one image.

    Returns ``(encoded, width, height)`` with the output dimensions, or None when
    the source format is one the policy leaves alone. Raises AssetRejected for
    undecodable or undersized images.
    """

    try:
        img = Image.open(io.BytesIO(data))
    except (UnidentifiedImageError, OSError) as e:
        raise AssetRejected(url, "undecodable", str(e)) from e

    with img:
        width, height = img.size
        if width < policy.min_dimension or height < policy.min_dimension:
            raise AssetRejected(url, "too_small_dimensions", f"{width}x{height}")
        if (img.format or "").upper() in policy.passthrough_formats:
            return None

        try:
            img.load()
        except OSError as e:
            raise AssetRejected(url, "undecodable", str(e)) from e

        out_img = _flatten(img)
        size = fit_within(width, height, policy.max_width, policy.max_height, allow_upscale=policy.allow_upscale)
        if size != out_img.size:
            out_img = out_img.resize(size, Image.Resampling.LANCZOS)

        buf = io.BytesIO()
        if policy.target_format == "JPEG":
            out_img.save(buf, format="JPEG", quality=policy.jpeg_quality, optimize=True)
        else:
            out_img.convert("P", palette=Image.Palette.ADAPTIVE, colors=256).save(buf, format="GIF")
        return buf.getvalue(), out_img.width, out_img.height


class MediaStore:
    """Content-addressed store of transcoded images in one flat directory.

    Files are named after the hash of the source URL and are never refreshed:
    once a file exists it is served as-is. Concurrent requests for the same
    file inside this process join one in-flight task; writes go through a
    temp file and an atomic rename.
    """

    def __init__(
        self,
        *,
        cache_dir: Path,
        fetcher: Fetcher,
        mount_path: str = "/converted_images",
        image_proxy_path: str = "/image-proxy",
    ) -> None:
        self._cache_dir = cache_dir
        self._fetcher = fetcher
        self._mount_path = mount_path.rstrip("/")
        self._image_proxy_path = image_proxy_path
        self._inflight: dict[str, asyncio.Task[ServableAsset | None]] = {}

    def filename_for(self, source_url: str, policy: TranscodePolicy) -> str:
        return f"{policy.filename_prefix}{cache_key(source_url)}.{policy.extension}"

    def path_for(self, source_url: str, policy: TranscodePolicy) -> Path:
        return self._cache_dir / self.filename_for(source_url, policy)

    def proxy_path_for(self, source_url: str) -> str:
        return f"{self._image_proxy_path}?url={quote(source_url, safe='')}"

    def lookup(self, source_url: str, policy: TranscodePolicy) -> CacheEntry | None:
        path = self.path_for(source_url, policy)
        if not path.exists():
            return None
        try:
            with Image.open(path) as img:
                width, height = img.size
        except (UnidentifiedImageError, OSError) as e:
            logger.warning("Unreadable cache file %s (%s); transcoding again", path.name, e)
            return None
        return CacheEntry(
            content_hash=cache_key(source_url),
            stored_path=path,
            format=policy.target_format,
            width=width,
            height=height,
        )

    async def obtain_asset(self, source_url: str, policy: TranscodePolicy) -> ServableAsset | None:
        """Return a servable asset for ``source_url``, or None to skip it.

        A cache hit makes no network call. On a miss the image is fetched once,
        filtered, transcoded and persisted. Every failure is logged and turned
        into None so one bad asset never fails the page.
        """

        key = self.filename_for(source_url, policy)
        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._obtain(source_url, policy))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _obtain(self, source_url: str, policy: TranscodePolicy) -> ServableAsset | None:
        try:
            entry = await asyncio.to_thread(self.lookup, source_url, policy)
            if entry is not None:
                logger.debug("Cache hit %s -> %s", source_url, entry.stored_path.name)
                return self._servable(source_url, entry)
            return await self._fetch_and_store(source_url, policy)
        except AssetRejected as e:
            logger.info("Skipping asset %s: %s", source_url, e.reason)
            return None
        except Exception as e:
            logger.warning("Error processing asset %s: %s", source_url, e)
            return None

    async def _fetch_and_store(self, source_url: str, policy: TranscodePolicy) -> ServableAsset | None:
        try:
            fetched = await self._fetcher.fetch(source_url, role=FetchRole.ASSET)
        except FetchError as e:
            raise AssetRejected(source_url, "fetch_failed", str(e)) from e

        if not mime_type(fetched.content_type).startswith("image/"):
            raise AssetRejected(source_url, "bad_type", fetched.content_type or "no content type")
        if len(fetched.body) < policy.min_bytes:
            raise AssetRejected(source_url, "too_small_bytes", f"{len(fetched.body)} bytes")

        encoded = await asyncio.to_thread(transcode_bytes, fetched.body, policy, url=source_url)
        if encoded is None:
            logger.debug("Passing through %s unchanged", source_url)
            return ServableAsset(
                source_url=source_url,
                servable_path=self.proxy_path_for(source_url),
                passthrough=True,
            )

        data, width, height = encoded
        path = self.path_for(source_url, policy)
        await asyncio.to_thread(self._write, path, data)
        logger.info("Transcoded %s -> %s (%dx%d)", source_url, path.name, width, height)
        return ServableAsset(
            source_url=source_url,
            servable_path=f"{self._mount_path}/{path.name}",
            width=width,
            height=height,
        )

    def _write(self, path: Path, data: bytes) -> None:
        part_path = path.with_name(f".{path.name}.{os.getpid()}.part")
        part_path.parent.mkdir(parents=True, exist_ok=True)
        try:
            part_path.write_bytes(data)
            atomic_rename(part_path, path)
        finally:
            part_path.unlink(missing_ok=True)

    def _servable(self, source_url: str, entry: CacheEntry) -> ServableAsset:
        return ServableAsset(
            source_url=source_url,
            servable_path=f"{self._mount_path}/{entry.stored_path.name}",
            width=entry.width,
            height=entry.height,
        )
