from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from urllib.parse import quote_plus

import pytest
from aiohttp.test_utils import TestClient, TestServer
from aioresponses import aioresponses
from PIL import Image
from yarl import URL

from vintage_proxy.core.config import AppConfig, AppPaths
from vintage_proxy.web.routes import build_app

PAGE_URL = "http://example.com/page"
PAGE = "<html><head><title>Routes</title></head><body><p>Hello there</p></body></html>"
HTML = {"Content-Type": "text/html; charset=utf-8"}


def _config(relay_settings, cache_dir: Path, **relay_overrides) -> AppConfig:
    return AppConfig(
        paths=AppPaths(cache_dir=cache_dir),
        relay=replace(relay_settings, mode="full", **relay_overrides),
    )


@pytest.mark.asyncio
async def test_missing_target_is_400(relay_settings, cache_dir: Path) -> None:
    async with TestClient(TestServer(build_app(_config(relay_settings, cache_dir)))) as client:
        resp = await client.get("/")
        assert resp.status == 400
        assert await resp.text() == "Error: No URL provided"

        resp = await client.get("/image-proxy")
        assert resp.status == 400

        resp = await client.get("/favicon.ico")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_home_url_replaces_missing_target(relay_settings, cache_dir: Path) -> None:
    app = build_app(_config(relay_settings, cache_dir, home_url=PAGE_URL))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(PAGE_URL, status=200, body=PAGE, headers=HTML)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/")
            assert resp.status == 200
            assert "Hello there" in await resp.text()


@pytest.mark.asyncio
async def test_relay_serves_legacy_html(relay_settings, cache_dir: Path) -> None:
    app = build_app(_config(relay_settings, cache_dir))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(PAGE_URL, status=200, body=PAGE, headers=HTML)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/", params={"url": PAGE_URL})
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "text/html; charset=ISO-8859-1"
            body = await resp.read()
            assert b'<meta charset="ISO-8859-1">' in body
            assert b"<title>Routes</title>" in body


@pytest.mark.asyncio
async def test_relay_accepts_target_in_path(relay_settings, cache_dir: Path) -> None:
    app = build_app(_config(relay_settings, cache_dir))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(PAGE_URL, status=200, body=PAGE, headers=HTML)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/example.com/page")
            assert resp.status == 200
            assert "Hello there" in await resp.text(encoding="iso-8859-1")


@pytest.mark.asyncio
async def test_upstream_failure_is_500(relay_settings, cache_dir: Path) -> None:
    app = build_app(_config(relay_settings, cache_dir))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(PAGE_URL, status=502, body="bad gateway", headers=HTML)
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/", params={"url": PAGE_URL})
            assert resp.status == 500
            assert (await resp.text()).startswith("Error fetching page:")


@pytest.mark.asyncio
@pytest.mark.parametrize("keys", ["retro", "tom & jerry"])
async def test_search_redirects_back_through_relay(relay_settings, cache_dir: Path, keys: str) -> None:
    async with TestClient(TestServer(build_app(_config(relay_settings, cache_dir)))) as client:
        resp = await client.get("/search", params={"keys": keys}, allow_redirects=False)
        assert resp.status == 302
        location = URL(resp.headers["Location"])
        assert location.path == "/"
        assert location.query["url"] == f"https://html.duckduckgo.com/html/?q={quote_plus(keys)}"


@pytest.mark.asyncio
async def test_binary_target_redirects_to_original(relay_settings, cache_dir: Path) -> None:
    pdf_url = "http://example.com/manual.pdf"
    app = build_app(_config(relay_settings, cache_dir))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(pdf_url, status=200, body=b"%PDF-1.4", headers={"Content-Type": "application/pdf"})
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/", params={"url": pdf_url}, allow_redirects=False)
            assert resp.status == 302
            assert resp.headers["Location"] == pdf_url


@pytest.mark.asyncio
async def test_converted_images_are_served_statically(relay_settings, cache_dir: Path) -> None:
    Image.new("RGB", (60, 60), (10, 20, 30)).save(cache_dir / "0123456789abcdef.gif", format="GIF")
    async with TestClient(TestServer(build_app(_config(relay_settings, cache_dir)))) as client:
        resp = await client.get("/converted_images/0123456789abcdef.gif")
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "image/gif"

        resp = await client.get("/converted_images/missing.gif")
        assert resp.status == 404


@pytest.mark.asyncio
async def test_image_proxy_returns_upstream_bytes(relay_settings, cache_dir: Path, jpeg_bytes) -> None:
    img_url = "https://example.com/photo.jpg"
    data = jpeg_bytes(70, 70)
    app = build_app(_config(relay_settings, cache_dir))
    with aioresponses(passthrough=["http://127.0.0.1"]) as m:
        m.get(img_url, status=200, body=data, headers={"Content-Type": "image/jpeg"})
        async with TestClient(TestServer(app)) as client:
            resp = await client.get("/image-proxy", params={"url": img_url})
            assert resp.status == 200
            assert resp.headers["Content-Type"] == "image/jpeg"
            assert await resp.read() == data
