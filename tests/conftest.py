"""Shared test fixtures and fakes."""

from __future__ import annotations

import asyncio
import json
from collections.abc import Callable

import httpx
import pytest

from mcp_switchboard.config.store import MemoryConfigStore
from mcp_switchboard.connection.manager import ConnectionManager
from mcp_switchboard.models import ServerConfig, ServerStatus, ToolDescriptor, TransportType


class FakeConnection:
    """Stands in for McpConnection: records close() and serves a fixed tool list."""

    def __init__(self, server_id: str, tools: tuple[ToolDescriptor, ...] = ()) -> None:
        self.server_id = server_id
        self.tools = tools
        self.closed = False
        self.on_lost = None
        self.requests: list[dict] = []

    async def list_tools(self) -> tuple[ToolDescriptor, ...]:
        return self.tools

    async def request(self, message: dict) -> dict:
        self.requests.append(message)
        return {"echo": message["method"]}

    async def close(self) -> None:
        self.closed = True


class FakeConnector:
    """Connector whose outcome per server id is scripted by the test.

    ``failures`` maps id -> exception to raise. ``gates`` maps id -> Event the
    connect call waits on before finishing.
    """

    def __init__(self) -> None:
        self.failures: dict[str, Exception] = {}
        self.gates: dict[str, asyncio.Event] = {}
        self.tools: dict[str, tuple[ToolDescriptor, ...]] = {}
        self.connections: list[FakeConnection] = []
        self.calls: list[str] = []

    async def connect(self, server_id: str, config: ServerConfig) -> FakeConnection:
        self.calls.append(server_id)
        gate = self.gates.get(server_id)
        if gate is not None:
            await gate.wait()
        if server_id in self.failures:
            raise self.failures[server_id]
        connection = FakeConnection(server_id, self.tools.get(server_id, ()))
        self.connections.append(connection)
        return connection


FAKE_SESSION_ID = "session-123"

DEFAULT_TOOLS = [
    {
        "name": "echo",
        "description": "Echo the input back",
        "inputSchema": {"type": "object", "properties": {"text": {"type": "string"}}},
    },
    {"name": "time", "description": "Current time", "inputSchema": {"type": "object"}},
]


class FakeStreamableServer:
    """Answers initialize, tools/list and ping with JSON; records every request."""

    def __init__(
        self,
        *,
        tools: list[dict] | None = None,
        initialize_status: int = 200,
    ) -> None:
        self.tools = DEFAULT_TOOLS if tools is None else tools
        self.initialize_status = initialize_status
        self.session_id = FAKE_SESSION_ID
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            return httpx.Response(405)
        if request.method == "DELETE":
            return httpx.Response(200)

        message = json.loads(request.content)
        if "id" not in message:
            return httpx.Response(202)

        method = message["method"]
        if method == "initialize":
            if self.initialize_status != 200:
                return httpx.Response(self.initialize_status, text="rejected")
            return self._result(
                message,
                {
                    "protocolVersion": message["params"]["protocolVersion"],
                    "capabilities": {"tools": {}},
                    "serverInfo": {"name": "fake-server", "version": "1.0.0"},
                },
                headers={"mcp-session-id": self.session_id},
            )
        if method == "tools/list":
            return self._result(message, {"tools": self.tools})
        if method == "ping":
            return self._result(message, {})
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": message["id"],
                "error": {"code": -32601, "message": f"Method not found: {method}"},
            },
        )

    def posted(self, method: str) -> list[httpx.Request]:
        return [
            r
            for r in self.requests
            if r.method == "POST" and json.loads(r.content).get("method") == method
        ]

    @staticmethod
    def _result(
        message: dict, result: dict, headers: dict[str, str] | None = None
    ) -> httpx.Response:
        return httpx.Response(
            200,
            json={"jsonrpc": "2.0", "id": message["id"], "result": result},
            headers=headers,
        )


class FakeSseServer:
    """Legacy SSE endpoint: GET opens the event stream, POSTs are answered on it."""

    endpoint = "/messages?session_id=abc"

    def __init__(self, *, stream_status: int = 200) -> None:
        self.stream_status = stream_status
        self.requests: list[httpx.Request] = []
        self._outbox: asyncio.Queue[dict] = asyncio.Queue()

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.method == "GET":
            if self.stream_status != 200:
                return httpx.Response(self.stream_status, text="denied")
            return httpx.Response(
                200, headers={"Content-Type": "text/event-stream"}, content=self._events()
            )

        message = json.loads(request.content)
        if "id" in message:
            await self._outbox.put(self._reply(message))
        return httpx.Response(202)

    async def _events(self):
        yield f"event: endpoint\ndata: {self.endpoint}\n\n".encode()
        while True:
            message = await self._outbox.get()
            yield f"event: message\ndata: {json.dumps(message)}\n\n".encode()

    @staticmethod
    def _reply(message: dict) -> dict:
        if message["method"] == "initialize":
            result = {
                "protocolVersion": message["params"]["protocolVersion"],
                "capabilities": {"tools": {}},
                "serverInfo": {"name": "fake-sse-server", "version": "1.0.0"},
            }
        elif message["method"] == "tools/list":
            result = {"tools": DEFAULT_TOOLS}
        else:
            result = {}
        return {"jsonrpc": "2.0", "id": message["id"], "result": result}


def make_config(
    base_url: str = "https://host/mcp",
    *,
    transport: TransportType | str = TransportType.STREAMABLE_HTTP,
    status: ServerStatus | None = None,
    **kwargs: object,
) -> ServerConfig:
    return ServerConfig(type=transport, base_url=base_url, status=status, **kwargs)  # type: ignore[arg-type]


@pytest.fixture()
def store() -> MemoryConfigStore:
    return MemoryConfigStore()


@pytest.fixture()
def connector() -> FakeConnector:
    return FakeConnector()


@pytest.fixture()
def manager(store: MemoryConfigStore, connector: FakeConnector) -> ConnectionManager:
    return ConnectionManager(store, connector)


@pytest.fixture()
def config_factory() -> Callable[..., ServerConfig]:
    return make_config


@pytest.fixture()
def fake_server() -> FakeStreamableServer:
    return FakeStreamableServer()


@pytest.fixture()
def fake_sse_server() -> FakeSseServer:
    return FakeSseServer()
