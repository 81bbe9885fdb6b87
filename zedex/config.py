"""Runtime configuration for the mirror and the server."""

from __future__ import annotations

from dataclasses import dataclass, fields
from pathlib import Path
from typing import Any

import yaml

API_BASE = "https://api.zed.dev"
RELEASE_BASE = "https://zed.dev"
DEFAULT_ROOT = ".zedex-cache"


@dataclass(slots=True)
class Config:
    """Runtime configuration loaded from a YAML file and CLI flags."""

    root_dir: str = DEFAULT_ROOT
    api_base: str = API_BASE
    release_base: str = RELEASE_BASE
    max_schema_version: int = 100
    concurrency: int = 1
    rate_limit: float = 10.0
    delay_sec: float = 0.0
    max_retries: int = 4
    timeout_sec: int = 300
    host: str = "127.0.0.1"
    port: int = 2654
    proxy_mode: bool = False
    domain: str | None = None
    user_agent: str = "zedex"

    @property
    def extensions_dir(self) -> Path:
        return Path(self.root_dir)

    @property
    def releases_dir(self) -> Path:
        return Path(self.root_dir) / "releases"

    def override(self, **values: Any) -> None:
        """Apply non-None keyword overrides (typically CLI flags)."""
        for key, value in values.items():
            if value is not None:
                setattr(self, key, value)


def _as_bool(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def load_config(config_path: Path) -> Config:
    """Load a YAML config file and apply defaults for missing keys."""
    data = yaml.safe_load(config_path.read_text(encoding="utf-8")) or {}
    if not isinstance(data, dict):
        raise ValueError(f"{config_path} must be a mapping")

    known = {f.name for f in fields(Config)}
    unknown = sorted(set(data) - known)
    if unknown:
        raise ValueError(f"unknown config keys in {config_path}: {', '.join(unknown)}")

    defaults = Config()
    domain = data.get("domain")
    return Config(
        root_dir=str(data.get("root_dir", defaults.root_dir)),
        api_base=str(data.get("api_base", defaults.api_base)).rstrip("/"),
        release_base=str(data.get("release_base", defaults.release_base)).rstrip("/"),
        max_schema_version=int(data.get("max_schema_version", defaults.max_schema_version)),
        concurrency=int(data.get("concurrency", defaults.concurrency)),
        rate_limit=float(data.get("rate_limit", defaults.rate_limit)),
        delay_sec=float(data.get("delay_sec", defaults.delay_sec)),
        max_retries=int(data.get("max_retries", defaults.max_retries)),
        timeout_sec=int(data.get("timeout_sec", defaults.timeout_sec)),
        host=str(data.get("host", defaults.host)),
        port=int(data.get("port", defaults.port)),
        proxy_mode=_as_bool(data.get("proxy_mode", defaults.proxy_mode)),
        domain=str(domain).rstrip("/") if domain else None,
        user_agent=str(data.get("user_agent", defaults.user_agent)),
    )
