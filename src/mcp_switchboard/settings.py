"""Runtime settings, read once from the environment at the composition root."""

from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, field
from pathlib import Path

_PREFIX = "MCP_SWITCHBOARD_"
_TRUTHY = frozenset({"1", "true", "yes", "on"})

DEFAULT_CONFIG_PATH = Path.home() / ".config" / "mcp-switchboard" / "servers.json"
DEFAULT_PROXY_PATH = "/mcp-proxy"


@dataclass(frozen=True, slots=True)
class Settings:
    """Process-wide settings.

    ``page_origin`` is the origin this client is allowed to talk to directly.
    Any server on another origin is reached through the relay mounted at
    ``proxy_path`` on that origin. Empty means every request goes direct.
    """

    config_path: Path = DEFAULT_CONFIG_PATH
    page_origin: str = ""
    proxy_path: str = DEFAULT_PROXY_PATH
    version_fallback: bool = False
    relay_host: str = "127.0.0.1"
    relay_port: int = 8765
    relay_allowed_hosts: frozenset[str] = field(default_factory=frozenset)
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Mapping[str, str] | None = None) -> Settings:
        env = os.environ if environ is None else environ

        def get(name: str, default: str = "") -> str:
            return env.get(_PREFIX + name, default).strip()

        allowed = {h.strip().lower() for h in get("RELAY_ALLOWED_HOSTS").split(",") if h.strip()}
        proxy_path = get("PROXY_PATH", DEFAULT_PROXY_PATH) or DEFAULT_PROXY_PATH
        if not proxy_path.startswith("/"):
            proxy_path = "/" + proxy_path

        return cls(
            config_path=Path(get("CONFIG") or DEFAULT_CONFIG_PATH).expanduser(),
            page_origin=get("ORIGIN").rstrip("/"),
            proxy_path=proxy_path,
            version_fallback=get("VERSION_FALLBACK").lower() in _TRUTHY,
            relay_host=get("RELAY_HOST", "127.0.0.1") or "127.0.0.1",
            relay_port=int(get("RELAY_PORT", "8765") or 8765),
            relay_allowed_hosts=frozenset(allowed),
            log_level=(get("LOG_LEVEL", "INFO") or "INFO").upper(),
        )
