"""Exception hierarchy for mcp-switchboard.

All exceptions inherit from SwitchboardError (single catch point).
Messages are written for LLM consumption -- clear, actionable, no stack traces.
"""

from __future__ import annotations


class SwitchboardError(Exception):
    """Base exception for all mcp-switchboard errors."""


class ServerNotFoundError(SwitchboardError):
    """Operation referenced a server id that is not configured."""


class InvalidConfigError(SwitchboardError):
    """Server config is missing a base URL or has a malformed one."""


class UnsupportedTransportError(InvalidConfigError):
    """Server config names a transport type we cannot build."""


class HandshakeError(SwitchboardError):
    """The initialize handshake was rejected, timed out, or malformed."""


class TransportClosedError(SwitchboardError):
    """A live transport closed without being asked to."""


class ProxyUpstreamError(SwitchboardError):
    """The relay's own upstream request failed or was aborted."""

    def __init__(self, message: str, *, status_code: int = 502) -> None:
        super().__init__(message)
        self.status_code = status_code


class ConfigReadError(SwitchboardError):
    """Error reading the server config file."""


class ConfigWriteError(SwitchboardError):
    """Error writing the server config file."""


def root_cause(exc: BaseException) -> BaseException:
    """Unwrap exception groups raised by task groups down to the first leaf."""
    while isinstance(exc, BaseExceptionGroup) and exc.exceptions:
        exc = exc.exceptions[0]
    return exc


def describe_error(exc: BaseException) -> str:
    """Stringify a failure for storage in the registry. Never empty."""
    cause = root_cause(exc)
    return str(cause) or type(cause).__name__
