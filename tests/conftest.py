from __future__ import annotations

import io
import os
from pathlib import Path
from typing import Callable

import pytest
from PIL import Image

from vintage_proxy.core.config import RelaySettings


def _noise_image(width: int, height: int, fmt: str) -> bytes:
    # Random pixels keep the encoded size well above the byte threshold.
    img = Image.frombytes("RGB", (width, height), os.urandom(width * height * 3))
    buf = io.BytesIO()
    img.save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def cache_dir(tmp_path: Path) -> Path:
    path = tmp_path / "converted_images"
    path.mkdir()
    return path


@pytest.fixture()
def png_bytes() -> Callable[[int, int], bytes]:
    return lambda width, height: _noise_image(width, height, "PNG")


@pytest.fixture()
def jpeg_bytes() -> Callable[[int, int], bytes]:
    return lambda width, height: _noise_image(width, height, "JPEG")


@pytest.fixture()
def relay_settings() -> RelaySettings:
    return RelaySettings(include_logo=False)
