"""Tests for the CORS proxy and its request filters."""

import httpx
import pytest
from fastapi.testclient import TestClient

from chief.proxy import app as proxy_module
from chief.proxy.filters import (
    get_allowed_headers,
    is_origin_allowed,
    is_private_ipv4_host,
    is_target_allowed,
    normalise_origin,
)

ORIGIN = {"Origin": "https://roamresearch.com"}


@pytest.fixture
def upstream():
    """Route proxied requests to a handler the test controls."""

    state = {"handler": lambda request: httpx.Response(200, json={"ok": True}), "requests": []}

    def _dispatch(request: httpx.Request) -> httpx.Response:
        state["requests"].append(request)
        return state["handler"](request)

    proxy_module.app.state.transport = httpx.MockTransport(_dispatch)
    yield state
    proxy_module.app.state.transport = None


@pytest.fixture
def client(upstream):
    return TestClient(proxy_module.app)


# ---------------------------------------------------------------------------
# Filters
# ---------------------------------------------------------------------------
def test_target_allowlist() -> None:
    assert is_target_allowed("http://10.0.0.5:3000/mcp") is True
    assert is_target_allowed("https://8.8.8.8/dns") is False
    assert is_target_allowed("https://mcp.composio.dev/v3/mcp") is True
    assert is_target_allowed("http://mcp.composio.dev/v3/mcp") is False
    assert is_target_allowed("http://localhost:8080/sse") is True
    assert is_target_allowed("ftp://localhost/x") is False
    assert is_target_allowed("not a url") is False


def test_private_ipv4_ranges() -> None:
    for host in ("10.1.2.3", "172.16.0.1", "172.31.255.255", "192.168.1.10", "127.0.0.1"):
        assert is_private_ipv4_host(host) is True
    for host in ("172.32.0.1", "8.8.8.8", "999.1.1.1", "localhost", ""):
        assert is_private_ipv4_host(host) is False


def test_link_local_and_non_ipv4_hosts_are_not_private() -> None:
    """Cloud metadata, CGNAT, IPv6 and partial addresses are never forwarded as private targets."""

    for host in ("169.254.169.254", "100.64.0.1", "0.0.0.0", "::1", "fd00::1", "10.0.0", "10.0.0.5.1"):
        assert is_private_ipv4_host(host) is False
    assert is_private_ipv4_host("127.8.0.1") is True
    assert is_target_allowed("http://169.254.169.254/latest/meta-data") is False


def test_origin_checks() -> None:
    assert normalise_origin("HTTPS://RoamResearch.com/path") == "https://roamresearch.com"
    assert normalise_origin("null") == ""
    assert is_origin_allowed("https://www.roamresearch.com") is True
    assert is_origin_allowed("https://evil.example.com") is False
    assert is_origin_allowed(None) is False


def test_allowed_headers_echo() -> None:
    assert get_allowed_headers("Content-Type, MCP-Session-Id, X-Evil") == "content-type, mcp-session-id"
    assert get_allowed_headers(None).startswith("accept, authorization")


# ---------------------------------------------------------------------------
# Proxy app
# ---------------------------------------------------------------------------
def test_missing_origin_is_forbidden(client) -> None:
    response = client.get("/https://mcp.composio.dev/v3/mcp")
    assert response.status_code == 403
    assert response.text == "Forbidden"
    assert "access-control-allow-origin" not in response.headers


def test_preflight(client) -> None:
    headers = {**ORIGIN, "Access-Control-Request-Headers": "Content-Type, MCP-Session-Id, X-Evil"}
    response = client.options("/https://mcp.composio.dev/v3/mcp", headers=headers)
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "https://roamresearch.com"
    assert response.headers["access-control-allow-headers"] == "content-type, mcp-session-id"


def test_rejected_requests(client, upstream) -> None:
    assert client.put("/https://mcp.composio.dev/v3/mcp", headers=ORIGIN).status_code == 405
    assert client.get("/mcp.composio.dev/v3/mcp", headers=ORIGIN).status_code == 400

    response = client.get("/https://evil.example.com/steal", headers=ORIGIN)
    assert response.status_code == 403
    assert response.text == "Forbidden target"
    assert upstream["requests"] == []


def test_tool_router_get_is_short_circuited(client, upstream) -> None:
    response = client.get("/https://backend.composio.dev/tool_router/abc/mcp", headers=ORIGIN)
    assert response.status_code == 204
    assert upstream["requests"] == []


def test_private_target_is_forwarded_with_filtered_headers(client, upstream) -> None:
    headers = {**ORIGIN, "Authorization": "Bearer t", "Mcp-Session-Id": "s1", "Cookie": "secret=1"}
    response = client.post("/http://10.0.0.5:3000/mcp", headers=headers, content=b'{"jsonrpc": "2.0"}')

    assert response.status_code == 200
    assert response.json() == {"ok": True}
    assert response.headers["access-control-allow-origin"] == "https://roamresearch.com"

    forwarded = upstream["requests"][0]
    assert str(forwarded.url) == "http://10.0.0.5:3000/mcp"
    assert forwarded.headers["authorization"] == "Bearer t"
    assert forwarded.headers["mcp-session-id"] == "s1"
    assert "cookie" not in forwarded.headers
    assert forwarded.content == b'{"jsonrpc": "2.0"}'


def test_upstream_redirect_is_blocked(client, upstream) -> None:
    upstream["handler"] = lambda request: httpx.Response(302, headers={"location": "http://169.254.169.254/"})
    response = client.get("/https://mcp.composio.dev/v3/mcp", headers=ORIGIN)
    assert response.status_code == 502
    assert response.text == "Upstream redirect blocked"


def test_upstream_failure_is_bad_gateway(client, upstream) -> None:
    def _refuse(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("connection refused", request=request)

    upstream["handler"] = _refuse
    response = client.get("/https://mcp.composio.dev/v3/mcp", headers=ORIGIN)
    assert response.status_code == 502
