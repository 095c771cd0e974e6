"""Diagnostic tools -- raw initialize probes against a configured server."""

from __future__ import annotations

from dataclasses import asdict

from mcp.server.fastmcp import Context

from mcp_switchboard.errors import SwitchboardError
from mcp_switchboard.models import ProbeResult
from mcp_switchboard.tools._helpers import failure, get_context


def _probe_dict(result: ProbeResult) -> dict[str, object]:
    return {**asdict(result), "success": result.success}


async def test_connection(server_id: str, ctx: Context) -> dict[str, object]:
    """Send one initialize request to a server and return the raw response.

    Use this as a quick smoke test: the response status, headers, and body
    are returned verbatim.

    Args:
        server_id: Id of the server, as shown by list_servers.
    """
    app = get_context(ctx)
    try:
        result = await app.probe.test_connection(server_id)
    except SwitchboardError as exc:
        return failure(str(exc), server_id=server_id)
    return {"server_id": server_id, **_probe_dict(result)}


async def diagnose_connection(server_id: str, ctx: Context) -> dict[str, object]:
    """Find out why a server rejects the handshake.

    When the basic initialize probe returns a 4xx, several Accept /
    Content-Type combinations and an event-stream GET are tried, and every
    outcome is returned for comparison.

    Args:
        server_id: Id of the server, as shown by list_servers.
    """
    app = get_context(ctx)
    try:
        report = await app.probe.diagnose_connection(server_id)
    except SwitchboardError as exc:
        return failure(str(exc), server_id=server_id)
    return {
        "success": True,
        "server_id": server_id,
        "target": report.target,
        "basic": _probe_dict(report.basic),
        "results": [_probe_dict(r) for r in report.results],
    }
