"""Tests for the connection lifecycle manager (connection/manager.py)."""

from __future__ import annotations

import asyncio

import httpx
import pytest

from mcp_switchboard.config.store import MemoryConfigStore
from mcp_switchboard.connection.manager import ConnectionManager
from mcp_switchboard.errors import HandshakeError, ServerNotFoundError, TransportClosedError
from mcp_switchboard.models import ConnectionState, DisplayState, ServerStatus, ToolDescriptor
from mcp_switchboard.transport.factory import TransportFactory

# --- Helpers ---


async def _status(manager: ConnectionManager, server_id: str) -> DisplayState:
    return (await manager.get_status())[server_id].status


# --- add ---


class TestAdd:
    async def test_initializing_is_visible_before_the_handshake_finishes(
        self, manager, config_factory
    ):
        await manager.add("s1", config_factory())

        assert await _status(manager, "s1") is DisplayState.INITIALIZING

        await manager.wait_until_settled()
        assert await _status(manager, "s1") is DisplayState.ACTIVE

    async def test_new_server_defaults_to_active(self, manager, store, config_factory):
        configs = await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        assert configs["s1"].status is ServerStatus.ACTIVE
        assert store.load_all()["s1"].status is ServerStatus.ACTIVE

    async def test_tools_are_cached(self, manager, connector, config_factory):
        connector.tools["s1"] = (ToolDescriptor(name="search"), ToolDescriptor(name="fetch"))

        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        assert [t.name for t in manager.get_client_tools("s1")] == ["search", "fetch"]
        assert list(manager.get_all_tools()) == ["s1"]

    async def test_failure_lands_in_registry_without_raising(
        self, manager, connector, config_factory
    ):
        connector.failures["s1"] = HandshakeError("connection refused")

        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        status = (await manager.get_status())["s1"]
        assert status.status is DisplayState.ERROR
        assert status.error_msg == "connection refused"
        assert manager.available_clients_count() == 0

    async def test_paused_config_is_saved_but_not_connected(
        self, manager, connector, config_factory
    ):
        await manager.add("s1", config_factory(status=ServerStatus.PAUSED))
        await manager.wait_until_settled()

        assert connector.calls == []
        assert "s1" not in manager.registry
        assert await _status(manager, "s1") is DisplayState.PAUSED

    async def test_readding_active_server_replaces_connection(
        self, manager, connector, config_factory
    ):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()
        first = connector.connections[0]

        await manager.add("s1", config_factory("https://host/v2", status=ServerStatus.ACTIVE))
        await manager.wait_until_settled()

        assert first.closed
        assert manager.registry.get("s1").connection is connector.connections[1]

    async def test_readding_as_paused_tears_down(self, manager, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        await manager.add("s1", config_factory(status=ServerStatus.PAUSED))

        assert connector.connections[0].closed
        assert "s1" not in manager.registry


# --- pause / resume ---


class TestPause:
    async def test_pause_closes_and_purges(self, manager, store, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        configs = await manager.pause("s1")

        assert connector.connections[0].closed
        assert "s1" not in manager.registry
        assert configs["s1"].status is ServerStatus.PAUSED
        assert store.load_all()["s1"].status is ServerStatus.PAUSED
        assert await _status(manager, "s1") is DisplayState.PAUSED

    async def test_paused_config_wins_over_stale_entry(self, manager, store, config_factory):
        store.upsert("s1", config_factory(status=ServerStatus.PAUSED))
        manager.registry.set("s1", ConnectionState.failed("stale"))

        assert await _status(manager, "s1") is DisplayState.PAUSED

    async def test_pause_unknown_server_raises(self, manager):
        with pytest.raises(ServerNotFoundError):
            await manager.pause("ghost")

    async def test_pause_during_initialization_discards_late_connection(
        self, manager, connector, config_factory
    ):
        gate = asyncio.Event()
        connector.gates["s1"] = gate

        await manager.add("s1", config_factory())
        await asyncio.sleep(0)
        await manager.pause("s1")

        gate.set()
        await manager.wait_until_settled()

        assert connector.connections[0].closed
        assert "s1" not in manager.registry
        assert await _status(manager, "s1") is DisplayState.PAUSED


class TestResume:
    async def test_pause_then_resume_is_active(self, manager, store, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()
        await manager.pause("s1")

        await manager.resume("s1")

        assert await _status(manager, "s1") is DisplayState.ACTIVE
        assert store.load_all()["s1"].status is ServerStatus.ACTIVE
        open_connections = [c for c in connector.connections if not c.closed]
        assert open_connections == [manager.registry.get("s1").connection]

    async def test_resume_failure_is_recorded_and_raised(
        self, manager, store, connector, config_factory
    ):
        store.upsert("s1", config_factory(status=ServerStatus.PAUSED))
        connector.failures["s1"] = HandshakeError("401 Unauthorized")

        with pytest.raises(HandshakeError):
            await manager.resume("s1")

        status = (await manager.get_status())["s1"]
        assert status.status is DisplayState.ERROR
        assert status.error_msg == "401 Unauthorized"
        assert store.load_all()["s1"].status is ServerStatus.ERROR

    async def test_resume_closes_previous_connection(self, manager, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        await manager.resume("s1")

        assert connector.connections[0].closed
        assert not connector.connections[1].closed

    async def test_failed_resume_closes_previous_connection(
        self, manager, connector, config_factory
    ):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()
        first = connector.connections[0]
        connector.failures["s1"] = HandshakeError("down")

        with pytest.raises(HandshakeError):
            await manager.resume("s1")

        assert first.closed
        assert manager.registry.get("s1").connection is None
        assert await _status(manager, "s1") is DisplayState.ERROR

    async def test_resume_unknown_server_raises(self, manager):
        with pytest.raises(ServerNotFoundError):
            await manager.resume("ghost")


# --- remove / restart ---


class TestRemove:
    async def test_remove_closes_and_deletes(self, manager, store, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        configs = await manager.remove("s1")

        assert configs == {}
        assert connector.connections[0].closed
        assert "s1" not in manager.registry
        assert store.load_all() == {}

    async def test_remove_twice_does_not_raise(self, manager, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        await manager.remove("s1")
        assert await manager.remove("s1") == {}

    async def test_remove_unknown_server_is_harmless(self, manager):
        assert await manager.remove("ghost") == {}


class TestRestartAll:
    async def test_reinitializes_only_non_paused(self, manager, store, connector, config_factory):
        store.upsert("a", config_factory(status=ServerStatus.ACTIVE))
        store.upsert("b", config_factory(status=ServerStatus.PAUSED))
        store.upsert("c", config_factory(status=ServerStatus.ERROR))
        await manager.initialize_system()
        await manager.wait_until_settled()
        before = list(connector.connections)

        await manager.restart_all()
        await manager.wait_until_settled()

        assert all(c.closed for c in before)
        assert set(manager.registry.snapshot()) == {"a", "c"}
        assert connector.calls == ["a", "c", "a", "c"]
        assert await _status(manager, "b") is DisplayState.PAUSED


# --- system init / requests / teardown ---


class TestInitializeSystem:
    async def test_runs_once(self, manager, store, connector, config_factory):
        store.upsert("a", config_factory())
        await manager.initialize_system()
        await manager.wait_until_settled()

        await manager.initialize_system()
        await manager.wait_until_settled()

        assert connector.calls == ["a"]


class TestExecuteRequest:
    async def test_forwards_to_active_connection(self, manager, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        result = await manager.execute_request("s1", {"method": "tools/call", "params": {}})

        assert result == {"echo": "tools/call"}
        assert connector.connections[0].requests[0]["method"] == "tools/call"

    async def test_unknown_or_failed_server_raises(self, manager, connector, config_factory):
        connector.failures["s1"] = HandshakeError("down")
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()

        with pytest.raises(ServerNotFoundError):
            await manager.execute_request("s1", {"method": "ping"})
        with pytest.raises(ServerNotFoundError):
            await manager.execute_request("ghost", {"method": "ping"})


class TestConnectionLoss:
    async def test_lost_connection_becomes_error(self, manager, connector, config_factory):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()
        connection = connector.connections[0]

        connection.on_lost(connection, TransportClosedError("stream ended"))

        status = (await manager.get_status())["s1"]
        assert status.status is DisplayState.ERROR
        assert status.error_msg == "stream ended"

    async def test_loss_of_replaced_connection_is_ignored(
        self, manager, connector, config_factory
    ):
        await manager.add("s1", config_factory())
        await manager.wait_until_settled()
        stale = connector.connections[0]
        await manager.resume("s1")

        stale.on_lost(stale, TransportClosedError("old stream ended"))

        assert await _status(manager, "s1") is DisplayState.ACTIVE


class TestAclose:
    async def test_closes_everything(self, manager, connector, config_factory):
        await manager.add("a", config_factory())
        await manager.add("b", config_factory())
        await manager.wait_until_settled()

        await manager.aclose()

        assert all(c.closed for c in connector.connections)
        assert len(manager.registry) == 0

    async def test_cancels_pending_initialization(self, manager, connector, config_factory):
        connector.gates["s1"] = asyncio.Event()
        await manager.add("s1", config_factory())
        await asyncio.sleep(0)

        await manager.aclose()

        assert connector.connections == []
        assert len(manager.registry) == 0


# --- End to end with the real transport factory ---


class TestWithStreamableHttpServer:
    async def test_add_reaches_active_with_remote_tools(self, fake_server, config_factory):
        factory = TransportFactory(http_transport=httpx.MockTransport(fake_server))
        manager = ConnectionManager(MemoryConfigStore(), factory)

        await manager.add("s1", config_factory("https://host/mcp", timeout=60))
        await manager.wait_until_settled()
        try:
            assert await _status(manager, "s1") is DisplayState.ACTIVE
            assert [t.name for t in manager.get_client_tools("s1")] == ["echo", "time"]
            assert manager.get_client_tools("s1")[0].input_schema["type"] == "object"
        finally:
            await manager.aclose()

    async def test_unreachable_server_becomes_error(self, config_factory):
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("Connection refused", request=request)

        factory = TransportFactory(http_transport=httpx.MockTransport(refuse))
        manager = ConnectionManager(MemoryConfigStore(), factory)

        await manager.add("s1", config_factory("https://unreachable.invalid/mcp", timeout=1))
        await manager.wait_until_settled()

        status = (await manager.get_status())["s1"]
        assert status.status is DisplayState.ERROR
        assert status.error_msg
        await manager.aclose()
