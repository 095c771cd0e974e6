"""Per-server connection lifecycle: add, pause, resume, remove, restart.

Failures of add / pause teardown / remove / restart_all land in the registry
as Error entries and are never raised. ``resume`` is the exception: it
re-raises so the caller gets immediate feedback.

``initialize_single_client`` writes Initializing synchronously and finishes
the handshake in a background task. A status read right after ``add`` may
therefore see Initializing; ``wait_until_settled()`` awaits the pending work.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from mcp_switchboard.config.base import ConfigStorePort
from mcp_switchboard.connection.base import ConnectorPort
from mcp_switchboard.connection.registry import ConnectionRegistry
from mcp_switchboard.connection.session import McpConnection
from mcp_switchboard.errors import ServerNotFoundError, TransportClosedError, describe_error
from mcp_switchboard.models import (
    ConnectionState,
    ServerConfig,
    ServerStatus,
    ServerStatusResponse,
    ToolDescriptor,
    resolve_display_status,
)

logger = logging.getLogger(__name__)


class ConnectionManager:
    """Orchestrates the config store, the registry, and the connector."""

    def __init__(
        self,
        store: ConfigStorePort,
        connector: ConnectorPort,
        registry: ConnectionRegistry | None = None,
    ) -> None:
        self._store = store
        self._connector = connector
        self.registry = registry if registry is not None else ConnectionRegistry()
        self._tasks: set[asyncio.Task[None]] = set()

    # ── Status ───────────────────────────────────────────────────

    async def get_status(
        self, configs: dict[str, ServerConfig] | None = None
    ) -> dict[str, ServerStatusResponse]:
        """Display status per configured id. Pass *configs* to reuse a store snapshot."""
        if configs is None:
            configs = self._store.load_all()
        entries = self.registry.snapshot()
        return {
            server_id: resolve_display_status(config, entries.get(server_id))
            for server_id, config in configs.items()
        }

    def get_client_tools(self, server_id: str) -> tuple[ToolDescriptor, ...] | None:
        state = self.registry.get(server_id)
        return state.tools if state is not None else None

    def get_all_tools(self) -> dict[str, tuple[ToolDescriptor, ...] | None]:
        return {server_id: state.tools for server_id, state in self.registry.snapshot().items()}

    def available_clients_count(self) -> int:
        return sum(1 for state in self.registry.snapshot().values() if not state.error)

    # ── Lifecycle ────────────────────────────────────────────────

    async def initialize_system(self) -> dict[str, ServerConfig]:
        """Initialize every configured server once. No-op if already initialized."""
        configs = self._store.load_all()
        if len(self.registry) > 0:
            logger.info("MCP system already initialized, skipping")
            return configs

        logger.info("Initializing %d configured MCP server(s)", len(configs))
        for server_id, config in configs.items():
            await self.initialize_single_client(server_id, config)
        return configs

    async def add(self, server_id: str, config: ServerConfig) -> dict[str, ServerConfig]:
        """Upsert a server and start connecting if it is new or active."""
        is_new = server_id not in self._store.load_all()
        if is_new and config.status is None:
            config = config.with_status(ServerStatus.ACTIVE)

        self._store.upsert(server_id, config)

        if config.is_paused:
            await self._teardown(server_id)
        elif is_new or config.status == ServerStatus.ACTIVE:
            await self.initialize_single_client(server_id, config)
        return self._store.load_all()

    async def pause(self, server_id: str) -> dict[str, ServerConfig]:
        config = self._require_config(server_id)
        # Persisted first so a concurrent status read already reports Paused.
        self._store.upsert(server_id, config.with_status(ServerStatus.PAUSED))
        await self._teardown(server_id)
        logger.info("Paused server [%s]", server_id)
        return self._store.load_all()

    async def resume(self, server_id: str) -> None:
        """Reconnect now. Raises the connection failure after recording it."""
        config = self._require_config(server_id)
        previous = self.registry.get(server_id)

        try:
            state = await self._open(server_id, config)
        except Exception as exc:
            self.registry.set(server_id, ConnectionState.failed(describe_error(exc)))
            self._store.upsert(server_id, config.with_status(ServerStatus.ERROR))
            # The Error entry replaced it, so nothing else can close it later.
            await self._close_state(server_id, previous)
            logger.error("Failed to resume server [%s]: %s", server_id, describe_error(exc))
            raise

        self.registry.set(server_id, state)
        self._store.upsert(server_id, config.with_status(ServerStatus.ACTIVE))
        await self._close_state(server_id, previous)
        logger.info("Resumed server [%s]", server_id)

    async def remove(self, server_id: str) -> dict[str, ServerConfig]:
        """Close, forget, and delete a server. Safe to call more than once."""
        await self._teardown(server_id)
        if self._store.delete(server_id) is not None:
            logger.info("Removed server [%s]", server_id)
        return self._store.load_all()

    async def restart_all(self) -> dict[str, ServerConfig]:
        logger.info("Restarting all clients")
        for server_id, state in self.registry.snapshot().items():
            await self._close_state(server_id, state)
        self.registry.clear()

        configs = self._store.load_all()
        for server_id, config in configs.items():
            await self.initialize_single_client(server_id, config)
        return configs

    async def initialize_single_client(self, server_id: str, config: ServerConfig) -> None:
        """Write Initializing now; connect and record the outcome in the background."""
        if config.is_paused:
            logger.info("Skipping initialization for paused client [%s]", server_id)
            return

        logger.info("Initializing client [%s]...", server_id)
        previous = self.registry.get(server_id)
        pending = ConnectionState.initializing()
        self.registry.set(server_id, pending)

        task = asyncio.create_task(
            self._finish_initialization(server_id, config, pending, previous),
            name=f"initialize:{server_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def execute_request(self, server_id: str, request: dict[str, Any]) -> dict[str, Any]:
        """Pass one JSON-RPC request through to an active server."""
        state = self.registry.get(server_id)
        if state is None or state.connection is None:
            raise ServerNotFoundError(f"Client {server_id} not found or not active.")
        logger.info("Executing %s for [%s]", request.get("method"), server_id)
        return await state.connection.request(request)

    async def wait_until_settled(self) -> None:
        """Wait for every background initialization started so far."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        """Cancel pending initializations and close every connection."""
        for task in list(self._tasks):
            task.cancel()
        await self.wait_until_settled()
        for server_id, state in self.registry.snapshot().items():
            await self._close_state(server_id, state)
        self.registry.clear()

    # ── Internals ────────────────────────────────────────────────

    def _require_config(self, server_id: str) -> ServerConfig:
        config = self._store.load_all().get(server_id)
        if config is None:
            raise ServerNotFoundError(f"Server {server_id} not found")
        return config

    async def _open(self, server_id: str, config: ServerConfig) -> ConnectionState:
        connection = await self._connector.connect(server_id, config)
        try:
            tools = await connection.list_tools()
        except BaseException:
            await connection.close()
            raise
        connection.on_lost = self._on_connection_lost
        return ConnectionState.active(connection, tools)

    async def _finish_initialization(
        self,
        server_id: str,
        config: ServerConfig,
        pending: ConnectionState,
        previous: ConnectionState | None,
    ) -> None:
        await self._close_state(server_id, previous)
        try:
            state = await self._open(server_id, config)
        except Exception as exc:
            message = describe_error(exc)
            if self.registry.replace_if(server_id, pending, ConnectionState.failed(message)):
                logger.error("Failed to initialize client [%s]: %s", server_id, message)
            return

        if self.registry.replace_if(server_id, pending, state):
            logger.info(
                "Client [%s] initialized successfully with %d tool(s)",
                server_id,
                len(state.tools or ()),
            )
            return

        # Paused, removed, or restarted while we were connecting.
        logger.info("Discarding superseded connection for [%s]", server_id)
        await self._close_state(server_id, state)

    async def _teardown(self, server_id: str) -> None:
        state = self.registry.get(server_id)
        await self._close_state(server_id, state)
        self.registry.delete(server_id)

    async def _close_state(self, server_id: str, state: ConnectionState | None) -> None:
        if state is None or state.connection is None:
            return
        try:
            await state.connection.close()
        except Exception as exc:
            logger.warning("Error closing client [%s]: %s", server_id, describe_error(exc))

    def _on_connection_lost(self, connection: McpConnection, error: TransportClosedError) -> None:
        current = self.registry.get(connection.server_id)
        if current is not None and current.connection is connection:
            self.registry.replace_if(
                connection.server_id, current, ConnectionState.failed(str(error))
            )
