from __future__ import annotations

import logging
from typing import AsyncIterator

import aiohttp
from aiohttp import web

from vintage_proxy.core.config import AppConfig
from vintage_proxy.core.fetcher import Fetcher
from vintage_proxy.core.media import MediaStore
from vintage_proxy.core.models import RelayResponse
from vintage_proxy.core.pipeline import Pipeline
from vintage_proxy.core.utils import normalize_target

logger = logging.getLogger(__name__)

CONFIG_KEY = web.AppKey("config", AppConfig)
PIPELINE_KEY = web.AppKey("pipeline", Pipeline)


def request_origin(request: web.Request) -> str:
    return f"{request.scheme}://{request.host}"


def to_response(relay: RelayResponse) -> web.Response:
    if relay.location is not None:
        raise web.HTTPFound(relay.location)
    return web.Response(status=relay.status, body=relay.body, headers={"Content-Type": relay.content_type})


def _missing_target() -> web.Response:
    return web.Response(status=400, text="Error: No URL provided")


async def handle_relay(request: web.Request) -> web.Response:
    pipeline = request.app[PIPELINE_KEY]
    remainder = request.raw_path if request.path not in ("", "/") else ""
    target = normalize_target(request.query.get("url"), remainder) or pipeline.default_target()
    if not target:
        return _missing_target()
    try:
        relay = await pipeline.handle(target, request_origin=request_origin(request))
    except Exception as e:
        logger.exception("Unhandled error relaying %s", target)
        return web.Response(status=500, text=f"Error fetching page: {e}")
    return to_response(relay)


async def handle_original(request: web.Request) -> web.Response:
    target = normalize_target(request.query.get("url"))
    if not target:
        return _missing_target()
    return to_response(await request.app[PIPELINE_KEY].original(target))


async def handle_image_proxy(request: web.Request) -> web.Response:
    source_url = (request.query.get("url") or "").strip()
    if not source_url:
        return web.Response(status=400, text="No image URL provided")
    return to_response(await request.app[PIPELINE_KEY].image_proxy(source_url))


async def handle_search(request: web.Request) -> web.Response:
    return to_response(request.app[PIPELINE_KEY].search_redirect(request.query.get("keys", "")))


async def handle_favicon(request: web.Request) -> web.Response:
    raise web.HTTPNotFound()


async def _relay_context(app: web.Application) -> AsyncIterator[None]:
    config = app[CONFIG_KEY]
    timeout = aiohttp.ClientTimeout(total=None)
    connector = aiohttp.TCPConnector(limit=100)
    async with aiohttp.ClientSession(timeout=timeout, connector=connector) as session:
        fetcher = Fetcher(settings=config.relay, session=session)
        media = MediaStore(
            cache_dir=config.paths.cache_dir,
            fetcher=fetcher,
            mount_path=config.relay.mount_path,
        )
        app[PIPELINE_KEY] = Pipeline(settings=config.relay, fetcher=fetcher, media=media)
        logger.info(
            "Relay ready (mode=%s, images=%s, cache=%s)",
            config.relay.mode,
            config.relay.image_policy,
            config.paths.cache_dir,
        )
        yield


def build_app(config: AppConfig) -> web.Application:
    config.relay.validate()
    # add_static refuses a directory that does not exist yet.
    config.paths.cache_dir.mkdir(parents=True, exist_ok=True)

    app = web.Application()
    app[CONFIG_KEY] = config
    app.cleanup_ctx.append(_relay_context)

    app.router.add_get("/original", handle_original)
    app.router.add_get("/image-proxy", handle_image_proxy)
    app.router.add_get("/search", handle_search)
    app.router.add_get("/favicon.ico", handle_favicon)
    app.router.add_static(config.relay.mount_path, config.paths.cache_dir)
    app.router.add_get("/{tail:.*}", handle_relay)
    return app
