"""
Request checks for the CORS proxy.

Every function here is pure; :mod:`chief.proxy.app` composes them.  The proxy only forwards
browser requests from the notes host to Composio and to local or private-network MCP servers, so
it cannot be used as an open relay.
"""

import ipaddress
from typing import (
    Dict,
    Iterable,
    List,
    Optional,
)
from urllib.parse import urlsplit

from chief.config import settings

ALLOWED_METHODS = ("GET", "POST", "OPTIONS")
CORS_ALLOWED_HEADERS = [
    "accept",
    "authorization",
    "cache-control",
    "content-type",
    "last-event-id",
    "pragma",
    "x-api-key",
]
CORS_ALLOWED_HEADER_PREFIXES = ("mcp-", "x-composio-")
REDIRECT_STATUSES = frozenset({301, 302, 303, 307, 308})
CORS_MAX_AGE = "86400"

# RFC-1918 only: link-local (169.254/16) and carrier-grade NAT addresses never count as private
PRIVATE_IPV4_NETWORKS = tuple(
    ipaddress.IPv4Network(cidr) for cidr in ("10.0.0.0/8", "172.16.0.0/12", "192.168.0.0/16")
)


def normalise_origin(value: Optional[str]) -> str:
    """``scheme://host[:port]`` of *value*, or ``""`` when it is not an absolute URL."""
    try:
        parts = urlsplit(str(value or ""))
    except ValueError:
        return ""
    if not parts.scheme or not parts.netloc:
        return ""
    return f"{parts.scheme.lower()}://{parts.netloc.lower()}"


def is_origin_allowed(origin: Optional[str], allowed: Iterable[str] | None = None) -> bool:
    normalised = normalise_origin(origin)
    allowed = settings.PROXY_ALLOWED_ORIGINS if allowed is None else allowed
    return bool(normalised) and normalised in allowed


def is_method_allowed(method: str) -> bool:
    return str(method or "").upper() in ALLOWED_METHODS


def is_private_ipv4_host(hostname: Optional[str]) -> bool:
    """RFC-1918 ranges plus loopback; anything that is not an IPv4 literal is rejected."""
    try:
        address = ipaddress.IPv4Address(str(hostname or ""))
    except ValueError:
        return False
    return address.is_loopback or any(address in network for network in PRIVATE_IPV4_NETWORKS)


def is_target_allowed(target_url: str, allowed_hosts: Iterable[str] | None = None) -> bool:
    """
    Whether the proxy may forward to *target_url*.

    The host must be allow-listed or a private IPv4 address.  Plain http is only accepted for
    localhost and private addresses.
    """
    try:
        parts = urlsplit(str(target_url or ""))
        hostname = (parts.hostname or "").lower()
    except ValueError:
        return False
    scheme = parts.scheme.lower()
    if scheme not in ("http", "https") or not hostname:
        return False
    hosts = settings.PROXY_ALLOWED_TARGET_HOSTS if allowed_hosts is None else allowed_hosts
    private = is_private_ipv4_host(hostname)
    if hostname not in set(hosts) and not private:
        return False
    if scheme == "http" and not (hostname == "localhost" or private):
        return False
    return True


def is_redirect_status(status: int) -> bool:
    return status in REDIRECT_STATUSES


def is_sse_probe(method: str, target_url: str) -> bool:
    """Composio answers GET probes on ``/tool_router/`` with 405; the proxy short-circuits them."""
    return str(method or "").upper() == "GET" and "/tool_router/" in urlsplit(target_url).path


def get_allowed_headers(requested: Optional[str]) -> str:
    """
    Echo the requested headers that are allow-listed, lower-cased.

    Falls back to the static list when nothing was requested or nothing requested is allowed.
    """
    names = [h.strip().lower() for h in str(requested or "").split(",") if h.strip()]
    accepted: List[str] = [
        h for h in names if h in CORS_ALLOWED_HEADERS or h.startswith(CORS_ALLOWED_HEADER_PREFIXES)
    ]
    return ", ".join(accepted or CORS_ALLOWED_HEADERS)


def cors_headers(origin: Optional[str], requested_headers: Optional[str] = None) -> Dict[str, str]:
    return {
        "Access-Control-Allow-Origin": normalise_origin(origin) or settings.PROXY_ALLOWED_ORIGINS[0],
        "Access-Control-Allow-Methods": ", ".join(ALLOWED_METHODS),
        "Access-Control-Allow-Headers": get_allowed_headers(requested_headers),
        "Access-Control-Max-Age": CORS_MAX_AGE,
        "Vary": "Origin",
    }


def forwardable_headers(headers: Iterable[tuple[str, str]]) -> Dict[str, str]:
    """Request headers passed upstream: only the allow-listed names."""
    return {
        name: value
        for name, value in headers
        if name.lower() in CORS_ALLOWED_HEADERS or name.lower().startswith(CORS_ALLOWED_HEADER_PREFIXES)
    }
