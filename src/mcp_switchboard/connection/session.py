"""A live MCP client session, owned by its own task.

The SDK transports are anyio context managers whose cancel scopes must be
exited by the task that entered them. Each McpConnection therefore runs the
transport and session inside a dedicated task; ``close()`` signals that task
and waits for it, so any caller may close a connection it did not open.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import timedelta
from typing import Any

from mcp import types
from mcp.client.session import ClientSession
from mcp.shared.exceptions import McpError
from pydantic import ValidationError

from mcp_switchboard.errors import (
    HandshakeError,
    ServerNotFoundError,
    SwitchboardError,
    TransportClosedError,
    describe_error,
    root_cause,
)
from mcp_switchboard.models import ToolDescriptor

logger = logging.getLogger(__name__)

# Extra seconds on top of the request timeout before start() gives up on the
# whole transport-open + initialize sequence.
_HANDSHAKE_GRACE_SECONDS = 5.0

TransportOpener = Callable[[], AbstractAsyncContextManager[tuple[Any, ...]]]


async def handshake(
    session: ClientSession,
    protocol_version: str,
    client_info: types.Implementation,
) -> types.InitializeResult:
    """Send an explicit initialize with *protocol_version*, then the initialized notification.

    ``ClientSession.initialize()`` always advertises the SDK's own latest
    version, so the request is built by hand.
    """
    request = types.ClientRequest(
        types.InitializeRequest(
            method="initialize",
            params=types.InitializeRequestParams(
                protocolVersion=protocol_version,
                capabilities=types.ClientCapabilities(),
                clientInfo=client_info,
            ),
        )
    )
    try:
        result = await session.send_request(request, types.InitializeResult)
    except McpError as exc:
        raise HandshakeError(f"Server rejected initialize: {exc.error.message}") from exc
    except ValidationError as exc:
        raise HandshakeError(f"Malformed initialize response: {exc.error_count()} invalid field(s)") from exc

    await session.send_notification(
        types.ClientNotification(types.InitializedNotification(method="notifications/initialized"))
    )
    return result


class McpConnection:
    """Handle for one connected remote server."""

    def __init__(
        self,
        server_id: str,
        open_transport: TransportOpener,
        *,
        protocol_version: str,
        client_info: types.Implementation,
        request_timeout: float,
        relayed: bool = False,
    ) -> None:
        self.server_id = server_id
        self.requested_version = protocol_version
        self.protocol_version = protocol_version
        self.relayed = relayed
        self.server_info: types.Implementation | None = None
        self.failure: TransportClosedError | None = None
        self.on_lost: Callable[[McpConnection, TransportClosedError], None] | None = None

        self._open_transport = open_transport
        self._client_info = client_info
        self._request_timeout = request_timeout
        self._session: ClientSession | None = None
        self._ready: asyncio.Future[None] | None = None
        self._closing = asyncio.Event()
        self._task: asyncio.Task[None] | None = None

    @property
    def is_open(self) -> bool:
        return self._session is not None and self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Open the transport and complete the handshake. Raises HandshakeError on failure."""
        self._ready = asyncio.get_running_loop().create_future()
        self._task = asyncio.create_task(self._run(), name=f"mcp-connection:{self.server_id}")

        timeout = self._request_timeout + _HANDSHAKE_GRACE_SECONDS
        try:
            await asyncio.wait_for(self._ready, timeout=timeout)
        except TimeoutError:
            await self._abort()
            raise HandshakeError(
                f"Server '{self.server_id}' did not complete initialize within {timeout:g}s."
            ) from None
        except BaseException:
            await self._abort()
            raise

    async def list_tools(self) -> tuple[ToolDescriptor, ...]:
        session = self._require_session()
        result = await session.list_tools()
        return tuple(
            ToolDescriptor(
                name=tool.name,
                description=tool.description or "",
                input_schema=dict(tool.inputSchema or {}),
            )
            for tool in result.tools
        )

    async def request(self, message: dict[str, Any]) -> dict[str, Any]:
        """Forward one JSON-RPC request opaquely and return the raw result."""
        session = self._require_session()
        try:
            request = types.ClientRequest.model_validate(
                {"method": message.get("method"), "params": message.get("params")}
            )
        except ValidationError as exc:
            raise SwitchboardError(
                f"Unsupported MCP request method: {message.get('method')!r}"
            ) from exc
        result = await session.send_request(request, types.Result)
        return result.model_dump(by_alias=True, exclude_none=True)

    async def close(self) -> None:
        """Ask the owning task to exit its contexts and wait for it."""
        if self._task is None:
            return
        self._closing.set()
        await asyncio.wait([self._task])

    def _require_session(self) -> ClientSession:
        if self._session is None:
            raise ServerNotFoundError(f"Connection '{self.server_id}' is not open.")
        return self._session

    async def _abort(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
            await asyncio.wait([self._task])

    async def _run(self) -> None:
        ready = self._ready
        assert ready is not None
        try:
            async with self._open_transport() as streams:
                read_stream, write_stream = streams[0], streams[1]
                async with ClientSession(
                    read_stream,
                    write_stream,
                    read_timeout_seconds=timedelta(seconds=self._request_timeout),
                    client_info=self._client_info,
                ) as session:
                    result = await handshake(session, self.requested_version, self._client_info)
                    self.protocol_version = str(result.protocolVersion)
                    self.server_info = result.serverInfo
                    self._session = session
                    if not ready.done():
                        ready.set_result(None)
                    await self._closing.wait()
        except Exception as exc:
            cause = root_cause(exc)
            if not ready.done():
                if not isinstance(cause, HandshakeError):
                    cause = HandshakeError(f"initialize failed: {describe_error(cause)}")
                ready.set_exception(cause)
            elif not self._closing.is_set():
                self._lost(exc)
        finally:
            self._session = None
            if not ready.done():
                ready.set_exception(
                    TransportClosedError(
                        f"Transport for '{self.server_id}' closed before initialize completed."
                    )
                )

    def _lost(self, exc: BaseException) -> None:
        self.failure = TransportClosedError(
            f"Connection to '{self.server_id}' closed unexpectedly: {describe_error(exc)}"
        )
        logger.warning("%s", self.failure)
        if self.on_lost is not None:
            self.on_lost(self, self.failure)
