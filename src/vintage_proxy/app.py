from __future__ import annotations

import argparse
import logging
from dataclasses import replace
from pathlib import Path

from aiohttp import web

from vintage_proxy.core.config import MODES, AppConfig
from vintage_proxy.core.logging_config import configure_logging
from vintage_proxy.web.routes import build_app

logger = logging.getLogger(__name__)


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Relay web pages in a form legacy browsers can display.")
    parser.add_argument("--config", type=Path, default=None, help="Path to a JSON config file")
    parser.add_argument("--host", default=None, help="Interface to listen on")
    parser.add_argument("--port", type=int, default=None, help="Port to listen on")
    parser.add_argument("--cache-dir", type=Path, default=None, help="Directory for transcoded images")
    parser.add_argument("--mode", choices=MODES, default=None, help="article: reader view; full: whole page")
    parser.add_argument("--verbose", action="store_true", help="Log at DEBUG level")
    return parser.parse_args(argv)


def apply_cli_overrides(config: AppConfig, args: argparse.Namespace) -> AppConfig:
    server = config.server
    if args.host:
        server = replace(server, host=args.host)
    if args.port:
        server = replace(server, port=args.port)
    paths = replace(config.paths, cache_dir=args.cache_dir) if args.cache_dir else config.paths
    relay = replace(config.relay, mode=args.mode) if args.mode else config.relay
    return AppConfig(paths=paths, server=server, relay=relay)


def main(argv: list[str] | None = None) -> int:
    args = parse_args(argv)
    config = apply_cli_overrides(AppConfig.load(args.config), args)
    configure_logging(config, level=logging.DEBUG if args.verbose else logging.INFO)

    app = build_app(config)
    logger.info("vintage-proxy listening on http://%s:%d", config.server.host, config.server.port)
    web.run_app(app, host=config.server.host, port=config.server.port, print=None)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
