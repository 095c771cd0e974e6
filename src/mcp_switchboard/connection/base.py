"""Port: turning a server config into a live connection."""

from __future__ import annotations

from typing import TYPE_CHECKING, Protocol

from mcp_switchboard.models import ServerConfig

if TYPE_CHECKING:
    from mcp_switchboard.connection.session import McpConnection


class ConnectorPort(Protocol):
    """Port for building a transport and completing the initialize handshake."""

    async def connect(self, server_id: str, config: ServerConfig) -> McpConnection:
        """Return a connected session or raise a SwitchboardError."""
        ...
