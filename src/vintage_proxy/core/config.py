from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields, replace
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)


CONFIG_ENV_VAR = "VINTAGE_PROXY_CONFIG"
DEFAULT_CONFIG_NAME = "vintage_proxy.json"

MODES = ("article", "full")
IMAGE_POLICIES = ("jpeg", "gif", "png-to-gif")
ASSET_FALLBACKS = ("drop", "keep", "proxy")

DEFAULT_USER_AGENT = "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36"


@dataclass(frozen=True)
class AppPaths:
    cache_dir: Path = Path("converted_images")
    log_path: Path | None = None


@dataclass(frozen=True)
class ServerSettings:
    host: str = "0.0.0.0"
    port: int = 8080


@dataclass(frozen=True)
class RelaySettings:
    user_agent: str = DEFAULT_USER_AGENT
    page_timeout_seconds: float = 40.0
    asset_timeout_seconds: float = 10.0
    # Outbound fetches per second across all requests; 0 means unlimited.
    requests_per_second: float = 0.0
    mode: str = "article"
    image_policy: str = "jpeg"
    asset_fallback: str = "drop"
    include_logo: bool = True
    max_supplemental_images: int = 3
    # 0 disables the bound.
    max_asset_concurrency: int = 16
    charset: str = "ISO-8859-1"
    search_url_template: str = "https://html.duckduckgo.com/html/?q={keys}"
    home_url: str | None = None
    mount_path: str = "/converted_images"

    def validate(self) -> None:
        if self.mode not in MODES:
            raise ValueError(f"Unknown mode {self.mode!r}; expected one of {', '.join(MODES)}")
        if self.image_policy not in IMAGE_POLICIES:
            raise ValueError(
                f"Unknown image_policy {self.image_policy!r}; expected one of {', '.join(IMAGE_POLICIES)}"
            )
        if self.asset_fallback not in ASSET_FALLBACKS:
            raise ValueError(
                f"Unknown asset_fallback {self.asset_fallback!r}; expected one of {', '.join(ASSET_FALLBACKS)}"
            )
        if self.requests_per_second < 0:
            raise ValueError(f"requests_per_second must be >= 0: {self.requests_per_second!r}")
        if not self.mount_path.startswith("/"):
            raise ValueError(f"mount_path must start with '/': {self.mount_path!r}")


@dataclass(frozen=True)
class AppConfig:
    paths: AppPaths = field(default_factory=AppPaths)
    server: ServerSettings = field(default_factory=ServerSettings)
    relay: RelaySettings = field(default_factory=RelaySettings)

    @classmethod
    def load(cls, path: Path | None = None) -> "AppConfig":
        """Build the effective config: defaults, then a JSON file, then env vars.

        The JSON file is looked up at ``path``, then ``$VINTAGE_PROXY_CONFIG``,
        then ``vintage_proxy.json`` in the working directory. Only the last one
        may be absent; a missing explicit path raises FileNotFoundError.
        """

        cfg = cls()
        config_path = path or _default_config_path()
        if config_path is not None and not config_path.exists():
            raise FileNotFoundError(f"Config file not found: {config_path}")
        if config_path is not None:
            raw = json.loads(config_path.read_text(encoding="utf-8"))
            if not isinstance(raw, dict):
                raise ValueError(f"Config file {config_path} must contain a JSON object")
            cfg = cfg._merged(raw, source=str(config_path))
            logger.info("Loaded config from %s", config_path)
        cfg = cfg._with_env_overrides()
        cfg.relay.validate()
        return cfg

    def _merged(self, raw: dict[str, Any], *, source: str) -> "AppConfig":
        paths_raw = dict(raw.get("paths") or {})
        if "cache_dir" in paths_raw:
            paths_raw["cache_dir"] = Path(paths_raw["cache_dir"])
        if paths_raw.get("log_path"):
            paths_raw["log_path"] = Path(paths_raw["log_path"])
        for key in raw:
            if key not in {"paths", "server", "relay"}:
                logger.warning("Ignoring unknown config section %r in %s", key, source)
        return AppConfig(
            paths=_overlay(self.paths, paths_raw, source=source),
            server=_overlay(self.server, dict(raw.get("server") or {}), source=source),
            relay=_overlay(self.relay, dict(raw.get("relay") or {}), source=source),
        )

    def _with_env_overrides(self) -> "AppConfig":
        server = self.server
        paths = self.paths
        relay = self.relay
        host = os.environ.get("VINTAGE_PROXY_HOST", "").strip()
        if host:
            server = replace(server, host=host)
        port = os.environ.get("VINTAGE_PROXY_PORT", "").strip()
        if port:
            server = replace(server, port=int(port))
        cache_dir = os.environ.get("VINTAGE_PROXY_CACHE_DIR", "").strip()
        if cache_dir:
            paths = replace(paths, cache_dir=Path(cache_dir))
        mode = os.environ.get("VINTAGE_PROXY_MODE", "").strip()
        if mode:
            relay = replace(relay, mode=mode)
        return AppConfig(paths=paths, server=server, relay=relay)


def _default_config_path() -> Path | None:
    env = os.environ.get(CONFIG_ENV_VAR, "").strip()
    if env:
        return Path(env)
    candidate = Path.cwd() / DEFAULT_CONFIG_NAME
    return candidate if candidate.exists() else None


def _overlay(base: Any, values: dict[str, Any], *, source: str) -> Any:
    known = {f.name for f in fields(base)}
    accepted: dict[str, Any] = {}
    for key, value in values.items():
        if key not in known:
            logger.warning("Ignoring unknown config key %r in %s", key, source)
            continue
        accepted[key] = value
    return replace(base, **accepted)
