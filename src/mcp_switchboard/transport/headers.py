"""Outbound header policy and the cross-origin relay rewrite.

Remote servers disagree on the protocol-version header name, so every
request carries the version under all known aliases at once. HTTP header
names are case-insensitive: aliases differing only in case collapse into a
single header carrying the one value.
"""

from __future__ import annotations

import base64
import binascii
import json
from collections.abc import Mapping
from dataclasses import dataclass
from urllib.parse import urlencode, urlsplit

DEFAULT_PROTOCOL_VERSION = "2025-06-18"

# Newest first.
FALLBACK_PROTOCOL_VERSIONS: tuple[str, ...] = ("2025-03-26", "2024-11-05", "2024-10-07")

# The SDK transport writes "mcp-protocol-version" after initialize, so that
# spelling must come first among its case variants or the header is doubled.
VERSION_HEADER_KEYS: tuple[str, ...] = (
    "X-MCP-Version",
    "x-mcp-version",
    "mcp-protocol-version",
    "MCP-Protocol-Version",
    "Mcp-Protocol-Version",
    "mcp-version",
)

DEFAULT_ACCEPT = "application/json, text/event-stream"
EVENT_STREAM_ACCEPT = "text/event-stream"
JSON_CONTENT_TYPE = "application/json; charset=utf-8"

FORWARD_HEADERS_HEADER = "x-proxy-forward-headers"


def merge_headers(*layers: Mapping[str, str] | None) -> dict[str, str]:
    """Merge header mappings left to right; later layers win.

    Keys compare case-insensitively. The first spelling seen for a name is
    kept, the value comes from the last layer that sets it.
    """
    spelling: dict[str, str] = {}
    values: dict[str, str] = {}
    for layer in layers:
        if not layer:
            continue
        for key, value in layer.items():
            lower = key.lower()
            spelling.setdefault(lower, key)
            values[lower] = str(value)
    return {spelling[lower]: value for lower, value in values.items()}


def version_headers(protocol_version: str) -> dict[str, str]:
    return merge_headers({key: protocol_version for key in VERSION_HEADER_KEYS})


def build_request_headers(
    protocol_version: str,
    caller_headers: Mapping[str, str] | None = None,
    *,
    accept: str = "",
    content_type: str | None = JSON_CONTENT_TYPE,
) -> dict[str, str]:
    """Headers for one outbound MCP request: policy first, caller headers on top."""
    policy: dict[str, str] = {}
    if content_type:
        policy["Content-Type"] = content_type
    policy["Accept"] = accept or DEFAULT_ACCEPT
    return merge_headers(policy, version_headers(protocol_version), caller_headers)


def encode_forward_headers(headers: Mapping[str, str]) -> str:
    """base64(JSON(headers)) as carried in the relay's bundle header."""
    raw = json.dumps(dict(headers), ensure_ascii=False).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def decode_forward_headers(value: str | None) -> dict[str, str] | None:
    """Inverse of encode_forward_headers. Returns None for anything undecodable."""
    if not value:
        return None
    try:
        data = json.loads(base64.b64decode(value, validate=True).decode("utf-8"))
    except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError, ValueError):
        return None
    if not isinstance(data, dict):
        return None
    return {str(k): str(v) for k, v in data.items()}


def origin_of(url: str) -> str:
    """scheme://host[:port], with default ports dropped and case normalized."""
    parts = urlsplit(url)
    scheme = parts.scheme.lower()
    host = (parts.hostname or "").lower()
    port = parts.port
    if port is None or (scheme, port) in (("http", 80), ("https", 443)):
        return f"{scheme}://{host}"
    return f"{scheme}://{host}:{port}"


def is_absolute_url(url: str) -> bool:
    try:
        parts = urlsplit(url)
        parts.port  # noqa: B018 -- raises ValueError on a malformed port
    except ValueError:
        return False
    return parts.scheme in ("http", "https") and bool(parts.hostname)


@dataclass(frozen=True, slots=True)
class BridgedRequest:
    """Where a request actually goes and with which headers."""

    url: str
    headers: dict[str, str]
    relayed: bool


def bridge_request(
    target_url: str,
    headers: Mapping[str, str],
    *,
    page_origin: str = "",
    proxy_path: str = "/mcp-proxy",
) -> BridgedRequest:
    """Route a request directly, or through the relay when the origins differ.

    A cross-origin target is never contacted directly: its headers are
    bundled into one relay header and the true URL rides in ``target``.
    """
    if not page_origin or origin_of(target_url) == origin_of(page_origin):
        return BridgedRequest(url=target_url, headers=dict(headers), relayed=False)

    relay_url = f"{page_origin.rstrip('/')}{proxy_path}?{urlencode({'target': target_url})}"
    return BridgedRequest(
        url=relay_url,
        headers={FORWARD_HEADERS_HEADER: encode_forward_headers(headers)},
        relayed=True,
    )
