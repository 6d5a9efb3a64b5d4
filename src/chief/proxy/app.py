"""
CORS allow-listing proxy.

Requests arrive as ``/<target-url>`` from the notes host and are forwarded with
:class:`httpx.AsyncClient`.  Redirects are never followed: an upstream redirect becomes a 502 so
an allowed host cannot bounce the proxy onto an internal one.
"""

import logging

import httpx
from fastapi import (
    FastAPI,
    Request,
    Response,
)

from chief.common import (
    AnsiColors,
    colored_print,
)
from chief.config import settings
from chief.proxy.filters import (
    cors_headers,
    forwardable_headers,
    is_method_allowed,
    is_origin_allowed,
    is_redirect_status,
    is_sse_probe,
    is_target_allowed,
)

logger = logging.getLogger(__name__)

# Upstream headers that must not be copied onto the proxied response
_HOP_BY_HOP = frozenset(
    {"connection", "keep-alive", "transfer-encoding", "content-encoding", "content-length", "upgrade"}
)

app = FastAPI(title="chief CORS proxy", version="0.1.0", docs_url=None, redoc_url=None, openapi_url=None)
# Tests swap this for an httpx.MockTransport
app.state.transport = None


def _target_from_request(request: Request) -> str:
    target = request.url.path[1:]
    if request.url.query:
        target += "?" + request.url.query
    return target


@app.api_route("/{target:path}", methods=["GET", "POST", "PUT", "PATCH", "DELETE", "OPTIONS", "HEAD"])
async def proxy(request: Request, target: str) -> Response:  # pylint: disable=unused-argument
    """Validate and forward one request."""
    origin = request.headers.get("origin")
    if not is_origin_allowed(origin):
        logger.info("Rejected origin %r", origin)
        return Response("Forbidden", status_code=403)

    headers = cors_headers(origin, request.headers.get("access-control-request-headers"))
    if not is_method_allowed(request.method):
        return Response("Method not allowed", status_code=405, headers=headers)
    if request.method == "OPTIONS":
        return Response(status_code=200, headers=headers)

    target_url = _target_from_request(request)
    if "://" not in target_url:
        return Response("Usage: /<target-url>", status_code=400, headers=headers)
    if not is_target_allowed(target_url):
        logger.info("Rejected target %s", target_url)
        return Response("Forbidden target", status_code=403, headers=headers)
    if is_sse_probe(request.method, target_url):
        return Response(status_code=204, headers=headers)

    body = await request.body() if request.method != "GET" else None
    try:
        async with httpx.AsyncClient(
            transport=request.app.state.transport,
            follow_redirects=False,
            timeout=settings.PROXY_TIMEOUT_SECONDS,
        ) as client:
            upstream = await client.request(
                request.method,
                target_url,
                headers=forwardable_headers(request.headers.items()),
                content=body,
            )
    except httpx.HTTPError as exc:
        logger.warning("Upstream request to %s failed: %s", target_url, exc)
        return Response("Bad gateway", status_code=502, headers=headers)

    if is_redirect_status(upstream.status_code):
        logger.warning("Blocked upstream redirect from %s to %s", target_url, upstream.headers.get("location"))
        return Response("Upstream redirect blocked", status_code=502, headers=headers)

    response_headers = {k: v for k, v in upstream.headers.items() if k.lower() not in _HOP_BY_HOP}
    response_headers.update(headers)
    return Response(content=upstream.content, status_code=upstream.status_code, headers=response_headers)


def run_proxy(host: str = "0.0.0.0", port: int | None = None, log_level: str | None = None) -> None:
    """Start a uvicorn server hosting the proxy."""

    # Lazy import - keeps uvicorn an optional dependency at pkg-import time
    import uvicorn  # pylint: disable=import-outside-toplevel

    port = port or settings.PROXY_PORT
    log_level = log_level or settings.LOG_LEVEL
    logger.info("Starting chief CORS proxy at %s:%d", host, port)
    colored_print(f"chief CORS proxy is running at http://localhost:{port}.", AnsiColors.GREEN)
    uvicorn.run("chief.proxy.app:app", host=host, port=port, log_level=log_level)
