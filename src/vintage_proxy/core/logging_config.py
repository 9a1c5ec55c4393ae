from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler

from vintage_proxy.core.config import AppConfig


def configure_logging(config: AppConfig, level: int = logging.INFO) -> None:
    root = logging.getLogger()
    root.setLevel(level)

    fmt = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")

    root.handlers.clear()

    console = logging.StreamHandler()
    console.setFormatter(fmt)
    root.addHandler(console)

    if config.paths.log_path is not None:
        config.paths.log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            config.paths.log_path,
            maxBytes=2_000_000,
            backupCount=3,
            encoding="utf-8",
        )
        file_handler.setFormatter(fmt)
        root.addHandler(file_handler)

    # aiohttp logs every request at INFO; keep the relay's own lines readable.
    logging.getLogger("aiohttp.access").setLevel(max(level, logging.WARNING))
