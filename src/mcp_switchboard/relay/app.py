"""Same-origin relay that forwards a request to an arbitrary target URL.

Contract::

    GET|POST <proxy path>?target=<absolute url>
    x-proxy-forward-headers: base64(JSON(header map))   (optional)

The decoded bundle becomes the outbound header set. Session headers the
client adds after the bundle was built are passed through from the inbound
request. The endpoint never raises: every failure becomes a JSON error
response.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from urllib.parse import urlsplit

import httpx
from starlette.applications import Starlette
from starlette.background import BackgroundTask
from starlette.requests import Request
from starlette.responses import JSONResponse, Response, StreamingResponse
from starlette.routing import Route

from mcp_switchboard.errors import ProxyUpstreamError, describe_error
from mcp_switchboard.settings import DEFAULT_PROXY_PATH, Settings
from mcp_switchboard.transport.headers import (
    FORWARD_HEADERS_HEADER,
    decode_forward_headers,
    is_absolute_url,
)

logger = logging.getLogger(__name__)

RELAY_TIMEOUT_SECONDS = 600.0

# Session / protocol headers copied from the inbound request even when the
# bundle lacks them: a stateful client learns mcp-session-id after the bundle
# was encoded.
PASSTHROUGH_HEADERS = frozenset(
    {"mcp-session-id", "mcp-protocol-version", "x-mcp-version", "last-event-id"}
)

# Removed from every relayed response. content-encoding and content-length
# go because httpx hands us the decoded body.
STRIPPED_RESPONSE_HEADERS = frozenset(
    {
        "www-authenticate",
        "content-encoding",
        "content-length",
        "transfer-encoding",
        "connection",
        "keep-alive",
    }
)

PREFLIGHT_HEADERS = {
    "Access-Control-Allow-Origin": "*",
    "Access-Control-Allow-Methods": "*",
    "Access-Control-Allow-Headers": "*",
    "Access-Control-Max-Age": "86400",
}


def build_upstream_headers(request: Request) -> dict[str, str]:
    """Decoded bundle first, then the inbound session headers on top."""
    headers = decode_forward_headers(request.headers.get(FORWARD_HEADERS_HEADER)) or {}
    lowered = {key.lower(): key for key in headers}
    for key, value in request.headers.items():
        if key.lower() in PASSTHROUGH_HEADERS:
            existing = lowered.pop(key.lower(), None)
            if existing is not None:
                del headers[existing]
            headers[key] = value
    return headers


def sanitize_response_headers(headers: httpx.Headers) -> list[tuple[bytes, bytes]]:
    """ASGI header list; repeated headers such as Set-Cookie stay separate."""
    result = [
        (key.lower(), value)
        for key, value in headers.raw
        if key.decode("latin-1").lower() not in STRIPPED_RESPONSE_HEADERS
    ]
    result.append((b"x-accel-buffering", b"no"))
    return result


async def relay(request: Request) -> Response:
    target = request.query_params.get("target")
    if not target:
        return JSONResponse({"error": "missing target"}, status_code=400)
    if not is_absolute_url(target):
        return JSONResponse({"error": f"invalid target: {target}"}, status_code=400)

    allowed_hosts: frozenset[str] = request.app.state.allowed_hosts
    if allowed_hosts and (urlsplit(target).hostname or "").lower() not in allowed_hosts:
        return JSONResponse({"error": "target host not allowed"}, status_code=403)

    try:
        upstream = await _send_upstream(request, target)
    except ProxyUpstreamError as exc:
        logger.warning("Relay to %s failed: %s", target, exc)
        return JSONResponse({"error": str(exc)}, status_code=exc.status_code)

    response = StreamingResponse(
        upstream.aiter_bytes(),
        status_code=upstream.status_code,
        background=BackgroundTask(upstream.aclose),
    )
    response.raw_headers.extend(sanitize_response_headers(upstream.headers))
    return response


async def _send_upstream(request: Request, target: str) -> httpx.Response:
    http: httpx.AsyncClient = request.app.state.http_client
    timeout: float = request.app.state.timeout_seconds

    try:
        # Buffered on purpose: some upstreams mis-parse chunked request bodies.
        body = None if request.method in ("GET", "HEAD") else await request.body()
        outbound = http.build_request(
            request.method,
            target,
            headers=build_upstream_headers(request),
            content=body,
        )
        return await asyncio.wait_for(
            http.send(outbound, stream=True, follow_redirects=False),
            timeout=timeout,
        )
    except TimeoutError:
        raise ProxyUpstreamError(
            f"upstream request aborted after {timeout:g}s", status_code=504
        ) from None
    except httpx.TimeoutException as exc:
        raise ProxyUpstreamError(
            f"upstream request aborted: {describe_error(exc)}", status_code=504
        ) from exc
    except httpx.HTTPError as exc:
        raise ProxyUpstreamError(f"upstream request failed: {describe_error(exc)}") from exc
    except Exception as exc:
        raise ProxyUpstreamError(f"relay error: {type(exc).__name__}: {exc}") from exc


async def preflight(request: Request) -> Response:
    return Response(status_code=204, headers=PREFLIGHT_HEADERS)


def create_relay_app(
    *,
    proxy_path: str = DEFAULT_PROXY_PATH,
    http_client: httpx.AsyncClient | None = None,
    allowed_hosts: frozenset[str] = frozenset(),
    timeout_seconds: float = RELAY_TIMEOUT_SECONDS,
) -> Starlette:
    """Build the relay application.

    When *http_client* is given the caller owns it; otherwise the app opens
    one for its lifespan.
    """

    @asynccontextmanager
    async def lifespan(app: Starlette) -> AsyncIterator[None]:
        if http_client is not None:
            app.state.http_client = http_client
            yield
            return
        async with httpx.AsyncClient(
            timeout=httpx.Timeout(timeout_seconds, connect=30.0),
            follow_redirects=False,
        ) as client:
            app.state.http_client = client
            yield

    app = Starlette(
        routes=[
            Route(proxy_path, relay, methods=["GET", "POST"]),
            Route(proxy_path, preflight, methods=["OPTIONS"]),
        ],
        lifespan=lifespan,
    )
    app.state.allowed_hosts = allowed_hosts
    app.state.timeout_seconds = timeout_seconds
    if http_client is not None:
        app.state.http_client = http_client
    return app


def create_app_from_settings(settings: Settings) -> Starlette:
    return create_relay_app(
        proxy_path=settings.proxy_path,
        allowed_hosts=settings.relay_allowed_hosts,
    )
