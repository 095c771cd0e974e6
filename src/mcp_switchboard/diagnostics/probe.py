"""Handshake diagnostics: raw initialize probes against one configured server.

Never raises per probe -- every outcome, success or failure, is captured in
a ProbeResult so variants can be compared side by side.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

import httpx

from mcp_switchboard import __version__
from mcp_switchboard.config.base import ConfigStorePort
from mcp_switchboard.errors import ServerNotFoundError, describe_error
from mcp_switchboard.models import DiagnosisReport, ProbeResult, ServerConfig
from mcp_switchboard.settings import DEFAULT_PROXY_PATH
from mcp_switchboard.transport.factory import CLIENT_NAME
from mcp_switchboard.transport.headers import (
    DEFAULT_ACCEPT,
    DEFAULT_PROTOCOL_VERSION,
    EVENT_STREAM_ACCEPT,
    JSON_CONTENT_TYPE,
    bridge_request,
    build_request_headers,
    merge_headers,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class ProbeVariant:
    name: str
    accept: str
    content_type: str


DIAGNOSTIC_VARIANTS: tuple[ProbeVariant, ...] = (
    ProbeVariant("json+eventstream", DEFAULT_ACCEPT, JSON_CONTENT_TYPE),
    ProbeVariant("json-only", "application/json", "application/json"),
    ProbeVariant("json-only-utf8", "application/json", JSON_CONTENT_TYPE),
)

SSE_GET_PROBE = "sse-get"


def initialize_body(server_id: str, protocol_version: str, request_id: int = 0) -> dict[str, object]:
    return {
        "jsonrpc": "2.0",
        "id": request_id,
        "method": "initialize",
        "params": {
            "protocolVersion": protocol_version,
            "clientInfo": {"name": f"{CLIENT_NAME}-{server_id}", "version": __version__},
            "capabilities": {},
        },
    }


class ConnectionProbe:
    """Runs raw initialize requests, bridged through the relay like real transports."""

    def __init__(
        self,
        store: ConfigStorePort,
        http_client: httpx.AsyncClient,
        *,
        page_origin: str = "",
        proxy_path: str = DEFAULT_PROXY_PATH,
    ) -> None:
        self._store = store
        self._http = http_client
        self.page_origin = page_origin
        self.proxy_path = proxy_path

    async def test_connection(self, server_id: str) -> ProbeResult:
        """One initialize with the configured (or default) version and Accept header."""
        config = self._require_config(server_id)
        return await self._post_initialize(
            "basic",
            server_id,
            config,
            accept=config.post_accept or DEFAULT_ACCEPT,
            content_type=JSON_CONTENT_TYPE,
            request_id=0,
        )

    async def diagnose_connection(self, server_id: str) -> DiagnosisReport:
        """Localize which Accept / Content-Type combination the server accepts.

        The variant matrix and the SSE GET probe only run when the basic probe
        came back with a 4xx.
        """
        config = self._require_config(server_id)
        basic = await self.test_connection(server_id)
        report = DiagnosisReport(target=config.base_url, basic=basic)
        if basic.status is None or not 400 <= basic.status < 500:
            return report

        logger.info("Basic probe for [%s] returned %s; running variants", server_id, basic.status)
        for variant in DIAGNOSTIC_VARIANTS:
            report.results.append(
                await self._post_initialize(
                    variant.name,
                    server_id,
                    config,
                    accept=variant.accept,
                    content_type=variant.content_type,
                    request_id=1,
                )
            )
        report.results.append(await self._get_event_stream(config))
        return report

    def _require_config(self, server_id: str) -> ServerConfig:
        config = self._store.load_all().get(server_id)
        if config is None:
            raise ServerNotFoundError(f"Server {server_id} not found")
        return config

    async def _post_initialize(
        self,
        name: str,
        server_id: str,
        config: ServerConfig,
        *,
        accept: str,
        content_type: str,
        request_id: int,
    ) -> ProbeResult:
        version = config.protocol_version or DEFAULT_PROTOCOL_VERSION
        headers = build_request_headers(
            version, config.headers, accept=accept, content_type=content_type
        )
        bridged = bridge_request(
            config.base_url, headers, page_origin=self.page_origin, proxy_path=self.proxy_path
        )
        try:
            response = await self._http.post(
                bridged.url,
                headers=bridged.headers,
                json=initialize_body(server_id, version, request_id),
                timeout=config.timeout,
            )
        except Exception as exc:
            return ProbeResult(name=name, url=bridged.url, error=describe_error(exc))
        return _to_result(name, bridged.url, response, include_body=True)

    async def _get_event_stream(self, config: ServerConfig) -> ProbeResult:
        headers = merge_headers({"Accept": EVENT_STREAM_ACCEPT}, config.headers)
        bridged = bridge_request(
            config.base_url, headers, page_origin=self.page_origin, proxy_path=self.proxy_path
        )
        try:
            # Only the status line and headers matter; an event stream never ends.
            async with self._http.stream(
                "GET", bridged.url, headers=bridged.headers, timeout=config.timeout
            ) as response:
                return _to_result(SSE_GET_PROBE, bridged.url, response, include_body=False)
        except Exception as exc:
            return ProbeResult(name=SSE_GET_PROBE, url=bridged.url, error=describe_error(exc))


def _to_result(name: str, url: str, response: httpx.Response, *, include_body: bool) -> ProbeResult:
    return ProbeResult(
        name=name,
        url=url,
        status=response.status_code,
        status_text=response.reason_phrase,
        headers=dict(response.headers.items()),
        body=response.text if include_body else "",
    )
