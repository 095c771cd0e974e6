"""Lifecycle tools -- add, pause, resume, remove, and inspect remote MCP servers."""

from __future__ import annotations

import logging
from dataclasses import asdict

from mcp.server.fastmcp import Context

from mcp_switchboard.errors import SwitchboardError, describe_error
from mcp_switchboard.models import ServerConfig, ServerStatus, TransportType
from mcp_switchboard.tools._helpers import failure, get_context

logger = logging.getLogger(__name__)


def _config_map(configs: dict[str, ServerConfig]) -> dict[str, object]:
    return {server_id: config.to_dict() for server_id, config in configs.items()}


async def list_servers(ctx: Context) -> dict[str, object]:
    """List every configured remote MCP server with its live status.

    Status is one of "active", "paused", "error", "initializing", or
    "undefined". A server that was just added may briefly report
    "initializing" while its handshake runs in the background.

    Returns:
        Mapping of server id to config, status, and error message (if any).
    """
    app = get_context(ctx)
    try:
        configs = app.store.load_all()
        statuses = await app.manager.get_status(configs)
    except SwitchboardError as exc:
        return failure(str(exc))

    return {
        "success": True,
        "servers": {
            server_id: {
                "config": configs[server_id].to_dict(),
                "status": str(status.status),
                "error": status.error_msg,
            }
            for server_id, status in statuses.items()
        },
        "available": app.manager.available_clients_count(),
    }


async def add_server(
    server_id: str,
    base_url: str,
    ctx: Context,
    transport: str = "streamableHttp",
    headers: dict[str, str] | None = None,
    timeout: float = 30,
    protocol_version: str = "",
    post_accept: str = "",
    status: str = "",
    name: str = "",
    description: str = "",
) -> dict[str, object]:
    """Add or update a remote MCP server and start connecting to it.

    The handshake runs in the background: call list_servers afterwards to
    see whether the server became "active" or "error".

    Args:
        server_id: Unique id for this server.
        base_url: Absolute URL of the server's MCP endpoint.
        transport: "streamableHttp" (default) or "sse".
        headers: Extra HTTP headers, e.g. {"Authorization": "Bearer ..."}.
        timeout: Per-request timeout in seconds.
        protocol_version: Override the default MCP protocol version.
        post_accept: Override the Accept header sent on POST requests.
        status: "active", "paused", or empty to keep the default.
        name: Display name.
        description: Free-form description.
    """
    app = get_context(ctx)
    try:
        parsed_status = ServerStatus(status) if status else None
    except ValueError:
        return failure(f"Invalid status {status!r}. Use 'active' or 'paused'.")

    try:
        config = ServerConfig(
            type=transport,
            base_url=base_url,
            headers=dict(headers or {}),
            timeout=timeout,
            protocol_version=protocol_version,
            status=parsed_status,
            post_accept=post_accept,
            name=name,
            description=description,
        )
        app.factory.validate_config(config)
        configs = await app.manager.add(server_id, config)
    except SwitchboardError as exc:
        return failure(str(exc), server_id=server_id)
    except Exception as exc:
        await ctx.error(f"Unexpected error in add_server: {exc}")
        return failure(f"Internal error: {type(exc).__name__}", server_id=server_id)

    return {
        "success": True,
        "server_id": server_id,
        "message": f"Server '{server_id}' saved. Connection is being established.",
        "servers": _config_map(configs),
        "transports": [t.value for t in TransportType],
    }


async def pause_server(server_id: str, ctx: Context) -> dict[str, object]:
    """Pause a server: close its connection and keep its config.

    Args:
        server_id: Id of the server, as shown by list_servers.
    """
    app = get_context(ctx)
    try:
        configs = await app.manager.pause(server_id)
    except SwitchboardError as exc:
        return failure(str(exc), server_id=server_id)
    return {"success": True, "server_id": server_id, "servers": _config_map(configs)}


async def resume_server(server_id: str, ctx: Context) -> dict[str, object]:
    """Reconnect a paused or failed server and report the outcome immediately.

    Args:
        server_id: Id of the server, as shown by list_servers.
    """
    app = get_context(ctx)
    try:
        await app.manager.resume(server_id)
    except Exception as exc:
        return failure(f"Failed to resume '{server_id}': {describe_error(exc)}", server_id=server_id)

    tools = app.manager.get_client_tools(server_id) or ()
    return {
        "success": True,
        "server_id": server_id,
        "tools": [tool.name for tool in tools],
    }


async def remove_server(server_id: str, ctx: Context) -> dict[str, object]:
    """Close a server's connection and delete its config. Removing twice is harmless.

    Args:
        server_id: Id of the server, as shown by list_servers.
    """
    app = get_context(ctx)
    try:
        configs = await app.manager.remove(server_id)
    except SwitchboardError as exc:
        return failure(str(exc), server_id=server_id)
    return {"success": True, "server_id": server_id, "servers": _config_map(configs)}


async def restart_servers(ctx: Context) -> dict[str, object]:
    """Close every connection and reconnect all servers that are not paused."""
    app = get_context(ctx)
    try:
        configs = await app.manager.restart_all()
    except SwitchboardError as exc:
        return failure(str(exc))
    return {
        "success": True,
        "restarted": [sid for sid, config in configs.items() if not config.is_paused],
    }


async def list_server_tools(ctx: Context, server_id: str = "") -> dict[str, object]:
    """Show the tools advertised by one server, or by every connected server.

    Args:
        server_id: Id of one server. Empty lists tools for all servers.
    """
    app = get_context(ctx)
    if server_id:
        tools = app.manager.get_client_tools(server_id)
        if tools is None:
            return failure(f"No tools cached for '{server_id}'. Is it active?", server_id=server_id)
        return {"success": True, "server_id": server_id, "tools": [asdict(t) for t in tools]}

    return {
        "success": True,
        "tools": {
            sid: [asdict(t) for t in tools] if tools is not None else None
            for sid, tools in app.manager.get_all_tools().items()
        },
    }


async def call_server(
    server_id: str,
    method: str,
    ctx: Context,
    params: dict[str, object] | None = None,
) -> dict[str, object]:
    """Forward one raw MCP JSON-RPC request to an active server.

    Args:
        server_id: Id of an active server.
        method: MCP method name, e.g. "tools/call" or "resources/list".
        params: Request params as a JSON object.
    """
    app = get_context(ctx)
    try:
        result = await app.manager.execute_request(
            server_id, {"method": method, "params": params}
        )
    except Exception as exc:
        logger.error("Failed to execute %s for [%s]: %s", method, server_id, exc)
        return failure(describe_error(exc), server_id=server_id)
    return {"success": True, "server_id": server_id, "result": result}
