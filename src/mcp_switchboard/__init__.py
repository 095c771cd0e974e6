"""mcp-switchboard: keep one live connection per remote MCP tool server."""

from __future__ import annotations

from importlib.metadata import PackageNotFoundError
from importlib.metadata import version as _distribution_version

_LOCAL_VERSION_FALLBACK = "0.0.0+local"


def _resolve_version() -> str:
    """Resolve package version from installed metadata with deterministic fallback."""
    try:
        return _distribution_version("mcp-switchboard")
    except PackageNotFoundError:
        return _LOCAL_VERSION_FALLBACK


__version__ = _resolve_version()


def _configure_logging(level: str) -> None:
    import logging

    # stdout carries the MCP stdio channel; logs go to stderr.
    logging.basicConfig(
        level=level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def main() -> None:
    """Entry point for `mcp-switchboard` CLI."""
    from mcp_switchboard.server import mcp
    from mcp_switchboard.settings import Settings

    _configure_logging(Settings.from_env().log_level)
    mcp.run(transport="stdio")


def relay_main() -> None:
    """Entry point for `mcp-switchboard-relay`: serve the same-origin relay."""
    import uvicorn

    from mcp_switchboard.relay.app import create_app_from_settings
    from mcp_switchboard.settings import Settings

    settings = Settings.from_env()
    _configure_logging(settings.log_level)
    uvicorn.run(
        create_app_from_settings(settings),
        host=settings.relay_host,
        port=settings.relay_port,
        log_level=settings.log_level.lower(),
    )
