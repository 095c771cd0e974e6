"""Port: durable server config store."""

from __future__ import annotations

from typing import Protocol

from mcp_switchboard.models import ServerConfig


class ConfigStorePort(Protocol):
    """Mapping from server id to its config. Storage format is the adapter's concern."""

    def load_all(self) -> dict[str, ServerConfig]:
        """Return every configured server, in store order."""
        ...

    def upsert(self, server_id: str, config: ServerConfig) -> None:
        """Add or replace one server entry."""
        ...

    def delete(self, server_id: str) -> ServerConfig | None:
        """Remove one server entry. Returns the removed config or None."""
        ...
