"""Domain models for mcp-switchboard. All frozen dataclasses -- no mutation after creation."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum
from typing import TYPE_CHECKING, Any

from mcp_switchboard.errors import InvalidConfigError

if TYPE_CHECKING:
    from mcp_switchboard.connection.session import McpConnection

DEFAULT_TIMEOUT_SECONDS = 30

# ─── Enumerations ─────────────────────────────────────────────


class TransportType(StrEnum):
    SSE = "sse"
    STREAMABLE_HTTP = "streamableHttp"


class ServerStatus(StrEnum):
    """Status persisted alongside a server config."""

    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"


class DisplayState(StrEnum):
    """Status shown to callers, derived from config + registry on every read."""

    ACTIVE = "active"
    PAUSED = "paused"
    ERROR = "error"
    INITIALIZING = "initializing"
    UNDEFINED = "undefined"


# ─── Config Models ────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ServerConfig:
    """A single remote MCP server entry in the config store.

    ``type`` is kept as a plain string when it is not a known transport so the
    transport factory can report the offending value.
    """

    type: TransportType | str
    base_url: str
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float = DEFAULT_TIMEOUT_SECONDS
    protocol_version: str = ""
    status: ServerStatus | None = None
    post_accept: str = ""
    name: str = ""
    description: str = ""

    @property
    def is_paused(self) -> bool:
        return self.status == ServerStatus.PAUSED

    def with_status(self, status: ServerStatus) -> ServerConfig:
        return replace(self, status=status)

    def to_dict(self) -> dict[str, object]:
        result: dict[str, object] = {"type": str(self.type), "baseUrl": self.base_url}
        if self.headers:
            result["headers"] = dict(self.headers)
        if self.timeout != DEFAULT_TIMEOUT_SECONDS:
            result["timeout"] = self.timeout
        if self.protocol_version:
            result["protocolVersion"] = self.protocol_version
        if self.status is not None:
            result["status"] = str(self.status)
        if self.post_accept:
            result["postAccept"] = self.post_accept
        if self.name:
            result["name"] = self.name
        if self.description:
            result["description"] = self.description
        return result

    @classmethod
    def from_dict(cls, raw: object) -> ServerConfig:
        """Build a config from its JSON form. Tolerant of missing optional fields."""
        if not isinstance(raw, dict):
            raise InvalidConfigError(
                f"Server config must be a JSON object, got {type(raw).__name__}."
            )

        raw_type = str(raw.get("type", ""))
        try:
            transport: TransportType | str = TransportType(raw_type)
        except ValueError:
            transport = raw_type

        raw_status = raw.get("status")
        try:
            status = ServerStatus(raw_status) if raw_status else None
        except ValueError:
            status = None

        headers = raw.get("headers") or {}
        if not isinstance(headers, dict):
            raise InvalidConfigError("Server config 'headers' must be a JSON object.")

        try:
            timeout = float(raw.get("timeout") or DEFAULT_TIMEOUT_SECONDS)
        except (TypeError, ValueError) as exc:
            raise InvalidConfigError(
                f"Server config 'timeout' must be a number, got {raw.get('timeout')!r}."
            ) from exc

        return cls(
            type=transport,
            base_url=str(raw.get("baseUrl") or raw.get("base_url") or ""),
            headers={str(k): str(v) for k, v in headers.items()},
            timeout=timeout,
            protocol_version=str(raw.get("protocolVersion") or ""),
            status=status,
            post_accept=str(raw.get("postAccept") or ""),
            name=str(raw.get("name") or ""),
            description=str(raw.get("description") or ""),
        )


# ─── Connection Models ────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ToolDescriptor:
    """A tool advertised by a remote server's tools/list."""

    name: str
    description: str = ""
    input_schema: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ConnectionState:
    """Registry value for one server id.

    Initializing has every field unset; Active carries the live connection and
    its tool set; Error carries only the message. Absent is "no entry".
    """

    connection: McpConnection | None = None
    tools: tuple[ToolDescriptor, ...] | None = None
    error: str | None = None

    @classmethod
    def initializing(cls) -> ConnectionState:
        return cls()

    @classmethod
    def active(
        cls, connection: McpConnection, tools: tuple[ToolDescriptor, ...]
    ) -> ConnectionState:
        return cls(connection=connection, tools=tools)

    @classmethod
    def failed(cls, message: str) -> ConnectionState:
        return cls(error=message)

    @property
    def is_initializing(self) -> bool:
        return self.connection is None and self.tools is None and self.error is None


# ─── Tool Return Models ───────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ServerStatusResponse:
    status: DisplayState
    error_msg: str | None = None


@dataclass(frozen=True, slots=True)
class ProbeResult:
    """Raw outcome of one diagnostic HTTP request."""

    name: str
    url: str = ""
    status: int | None = None
    status_text: str = ""
    headers: dict[str, str] = field(default_factory=dict)
    body: str = ""
    error: str = ""

    @property
    def success(self) -> bool:
        return not self.error and self.status is not None and 200 <= self.status < 300


@dataclass(frozen=True, slots=True)
class DiagnosisReport:
    target: str
    basic: ProbeResult
    results: list[ProbeResult] = field(default_factory=list)


def resolve_display_status(
    config: ServerConfig | None,
    state: ConnectionState | None,
) -> ServerStatusResponse:
    """Derive what callers see for one server id.

    The order of checks matters: a paused config hides any stale registry
    entry, and an entry with every field unset is still initializing.
    """
    if config is None:
        return ServerStatusResponse(DisplayState.UNDEFINED)
    if config.is_paused:
        return ServerStatusResponse(DisplayState.PAUSED)
    if state is None:
        return ServerStatusResponse(DisplayState.UNDEFINED)
    if state.is_initializing:
        return ServerStatusResponse(DisplayState.INITIALIZING)
    if state.error:
        return ServerStatusResponse(DisplayState.ERROR, state.error)
    if state.connection is not None:
        return ServerStatusResponse(DisplayState.ACTIVE)
    return ServerStatusResponse(DisplayState.ERROR, "Client not found")
