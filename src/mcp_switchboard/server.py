"""MCP server exposing the connection lifecycle of remote MCP tool servers."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass

import httpx
from mcp.server.fastmcp import FastMCP
from mcp.types import ToolAnnotations

from mcp_switchboard.config.base import ConfigStorePort
from mcp_switchboard.config.store import JsonConfigStore
from mcp_switchboard.connection.manager import ConnectionManager
from mcp_switchboard.diagnostics.probe import ConnectionProbe
from mcp_switchboard.settings import Settings
from mcp_switchboard.tools.diagnose import diagnose_connection, test_connection
from mcp_switchboard.tools.servers import (
    add_server,
    call_server,
    list_server_tools,
    list_servers,
    pause_server,
    remove_server,
    restart_servers,
    resume_server,
)
from mcp_switchboard.transport.factory import TransportFactory


@dataclass(frozen=True, slots=True)
class AppContext:
    """Shared state across all tool invocations.

    The connection registry lives inside the manager; the factory is exposed
    so tools can validate a config before it is persisted.
    """

    settings: Settings
    http_client: httpx.AsyncClient
    store: ConfigStorePort
    factory: TransportFactory
    manager: ConnectionManager
    probe: ConnectionProbe


@asynccontextmanager
async def app_lifespan(server: FastMCP) -> AsyncIterator[AppContext]:
    """Manage shared adapter lifecycle. This is the composition root."""
    settings = Settings.from_env()
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(30.0, connect=10.0),
        follow_redirects=True,
        limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
        transport=httpx.AsyncHTTPTransport(retries=3),
    ) as http_client:
        store = JsonConfigStore(settings.config_path)
        factory = TransportFactory.from_settings(settings)
        manager = ConnectionManager(store, factory)
        probe = ConnectionProbe(
            store,
            http_client,
            page_origin=settings.page_origin,
            proxy_path=settings.proxy_path,
        )

        await manager.initialize_system()
        try:
            yield AppContext(
                settings=settings,
                http_client=http_client,
                store=store,
                factory=factory,
                manager=manager,
                probe=probe,
            )
        finally:
            await manager.aclose()


mcp = FastMCP(
    "mcp-switchboard",
    instructions=(
        "mcp-switchboard keeps one live connection per configured remote MCP "
        "server (SSE or Streamable HTTP).\n\n"
        "- **list_servers**: status of every server (active, paused, error, "
        "initializing, or undefined).\n"
        "- **add_server**: save a server and start connecting. The handshake "
        "runs in the background; check list_servers afterwards.\n"
        "- **pause_server** / **resume_server**: disconnect without forgetting, "
        "or reconnect now. resume_server reports failures immediately.\n"
        "- **remove_server**: disconnect and delete.\n"
        "- **restart_servers**: reconnect everything that is not paused.\n"
        "- **list_server_tools** / **call_server**: inspect and use a connected "
        "server's tools.\n"
        "- **test_connection** / **diagnose_connection**: raw initialize probes "
        "when a server stays in error. diagnose_connection tries several "
        "Accept / Content-Type combinations after a 4xx."
    ),
    lifespan=app_lifespan,
)

# ─── Read-only tools ──────────────────────────────────────────
mcp.tool(annotations=ToolAnnotations(readOnlyHint=True))(list_servers)
mcp.tool(annotations=ToolAnnotations(readOnlyHint=True))(list_server_tools)
mcp.tool(annotations=ToolAnnotations(readOnlyHint=True))(test_connection)
mcp.tool(annotations=ToolAnnotations(readOnlyHint=True))(diagnose_connection)

# ─── Stateful tools ───────────────────────────────────────────
mcp.tool()(add_server)
mcp.tool()(pause_server)
mcp.tool()(resume_server)
mcp.tool()(restart_servers)
mcp.tool()(call_server)

# ─── Destructive tools ────────────────────────────────────────
mcp.tool(annotations=ToolAnnotations(destructiveHint=True))(remove_server)
