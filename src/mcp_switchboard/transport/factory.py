"""Build SSE / Streamable-HTTP transports and connect them with an explicit handshake."""

from __future__ import annotations

import logging
from datetime import timedelta

import httpx
from mcp import types
from mcp.client.sse import sse_client
from mcp.client.streamable_http import streamablehttp_client

from mcp_switchboard import __version__
from mcp_switchboard.connection.session import McpConnection, TransportOpener
from mcp_switchboard.errors import HandshakeError, InvalidConfigError, UnsupportedTransportError
from mcp_switchboard.models import ServerConfig, TransportType
from mcp_switchboard.settings import DEFAULT_PROXY_PATH, Settings
from mcp_switchboard.transport.headers import (
    DEFAULT_PROTOCOL_VERSION,
    FALLBACK_PROTOCOL_VERSIONS,
    bridge_request,
    build_request_headers,
    is_absolute_url,
    merge_headers,
)

logger = logging.getLogger(__name__)

CLIENT_NAME = "mcp-switchboard"


async def _reject_error_status(response: httpx.Response) -> None:
    """Fail fast on an error page instead of waiting on a stream that never opens."""
    if not (response.is_success or response.is_redirect):
        raise HandshakeError(
            f"SSE request failed: {response.status_code} {response.reason_phrase}"
        )


class TransportFactory:
    """Turns a ServerConfig into a connected McpConnection.

    Args:
        page_origin: Origin requests may go to directly. Other origins are
            reached through the relay at ``proxy_path``. Empty disables relaying.
        version_fallback: Retry the handshake with older protocol versions
            when the configured one is rejected.
        http_transport: Optional httpx transport used by every client this
            factory builds (tests inject ``httpx.MockTransport`` here).
    """

    def __init__(
        self,
        *,
        page_origin: str = "",
        proxy_path: str = DEFAULT_PROXY_PATH,
        version_fallback: bool = False,
        client_name: str = CLIENT_NAME,
        client_version: str = __version__,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.page_origin = page_origin
        self.proxy_path = proxy_path
        self.version_fallback = version_fallback
        self.client_name = client_name
        self.client_version = client_version
        self._http_transport = http_transport

    @classmethod
    def from_settings(cls, settings: Settings, **kwargs: object) -> TransportFactory:
        return cls(
            page_origin=settings.page_origin,
            proxy_path=settings.proxy_path,
            version_fallback=settings.version_fallback,
            **kwargs,  # type: ignore[arg-type]
        )

    @staticmethod
    def validate_config(config: ServerConfig) -> TransportType:
        """Check transport type and base URL before any network action."""
        try:
            transport = TransportType(config.type)
        except ValueError:
            raise UnsupportedTransportError(
                f"Unsupported transport type: {config.type!r}. "
                f"Supported types: {', '.join(t.value for t in TransportType)}"
            ) from None

        if not config.base_url:
            raise InvalidConfigError(f"Base URL is required for {transport} transport")
        if not is_absolute_url(config.base_url):
            raise InvalidConfigError(f"Invalid base URL: {config.base_url}")
        return transport

    def client_info(self, server_id: str) -> types.Implementation:
        return types.Implementation(
            name=f"{self.client_name}-{server_id}",
            version=self.client_version,
        )

    def candidate_versions(self, config: ServerConfig) -> list[str]:
        preferred = config.protocol_version or DEFAULT_PROTOCOL_VERSION
        if not self.version_fallback:
            return [preferred]
        return [preferred, *(v for v in FALLBACK_PROTOCOL_VERSIONS if v != preferred)]

    async def connect(self, server_id: str, config: ServerConfig) -> McpConnection:
        """Build the transport, run initialize, and return the live connection."""
        transport = self.validate_config(config)
        versions = self.candidate_versions(config)
        logger.info("Creating %s transport for %s...", transport, server_id)

        last_error: HandshakeError | None = None
        for version in versions:
            connection = self.build_connection(server_id, config, version, transport=transport)
            try:
                await connection.start()
            except HandshakeError as exc:
                last_error = exc
                if version != versions[-1]:
                    logger.info(
                        "Handshake with %s at protocol %s failed (%s); trying an older version",
                        server_id,
                        version,
                        exc,
                    )
                continue

            logger.info(
                "Client %s connected via %s (protocol %s%s)",
                server_id,
                transport,
                connection.protocol_version,
                ", relayed" if connection.relayed else "",
            )
            return connection

        assert last_error is not None
        raise last_error

    def build_connection(
        self,
        server_id: str,
        config: ServerConfig,
        protocol_version: str,
        *,
        transport: TransportType | None = None,
    ) -> McpConnection:
        transport = transport or self.validate_config(config)
        if transport is TransportType.SSE:
            opener, relayed = self._sse_opener(config, protocol_version), False
        else:
            opener, relayed = self._streamable_http_opener(config, protocol_version)

        return McpConnection(
            server_id,
            opener,
            protocol_version=protocol_version,
            client_info=self.client_info(server_id),
            request_timeout=config.timeout,
            relayed=relayed,
        )

    def _sse_opener(self, config: ServerConfig, protocol_version: str) -> TransportOpener:
        headers = merge_headers(
            build_request_headers(
                protocol_version,
                accept=config.post_accept,
                content_type=None,
            ),
            {"Cache-Control": "no-cache"},
            config.headers,
        )
        logger.debug("Creating SSE transport with URL: %s", config.base_url)

        def open_transport():
            return sse_client(
                config.base_url,
                headers=headers,
                timeout=config.timeout,
                httpx_client_factory=self._client_factory(reject_errors=True),
            )

        return open_transport

    def _streamable_http_opener(
        self, config: ServerConfig, protocol_version: str
    ) -> tuple[TransportOpener, bool]:
        headers = build_request_headers(
            protocol_version,
            config.headers,
            accept=config.post_accept,
        )
        bridged = bridge_request(
            config.base_url,
            headers,
            page_origin=self.page_origin,
            proxy_path=self.proxy_path,
        )
        logger.debug(
            "Creating StreamableHTTP transport with URL: %s%s",
            bridged.url,
            " (via relay)" if bridged.relayed else "",
        )

        def open_transport():
            return streamablehttp_client(
                bridged.url,
                headers=bridged.headers,
                timeout=timedelta(seconds=config.timeout),
                httpx_client_factory=self._client_factory(reject_errors=False),
            )

        return open_transport, bridged.relayed

    def _client_factory(self, *, reject_errors: bool):
        http_transport = self._http_transport

        def create_client(
            headers: dict[str, str] | None = None,
            timeout: httpx.Timeout | None = None,
            auth: httpx.Auth | None = None,
        ) -> httpx.AsyncClient:
            hooks = {"response": [_reject_error_status]} if reject_errors else {}
            return httpx.AsyncClient(
                headers=headers,
                timeout=timeout or httpx.Timeout(30.0),
                auth=auth,
                follow_redirects=True,
                event_hooks=hooks,
                transport=http_transport,
            )

        return create_client
