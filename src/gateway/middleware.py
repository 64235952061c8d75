"""
Front door middleware: local-network access gate and request logging.
"""

import ipaddress
import time
from typing import Optional

from fastapi import Request
from starlette.responses import JSONResponse
from starlette.types import ASGIApp, Receive, Scope, Send
from starlette.websockets import WebSocketClose

from common.logging import get_logger

logger = get_logger(__name__)

_LOCAL_NETWORKS = tuple(
    ipaddress.ip_network(network)
    for network in (
        "10.0.0.0/8",
        "172.16.0.0/12",
        "192.168.0.0/16",
        "fe80::/10",
        "fc00::/7",
    )
)


def is_local_network_address(host: Optional[str]) -> bool:
    """
    True for loopback, RFC1918 private, IPv6 link-local and unique-local addresses.

    IPv4-mapped IPv6 addresses are judged by their IPv4 form. Anything that
    does not parse as an IP address is rejected.
    """
    if not host:
        return False
    candidate = host.strip()
    if candidate.startswith("[") and candidate.endswith("]"):
        candidate = candidate[1:-1]
    # Drop an IPv6 zone id such as fe80::1%en0
    candidate = candidate.split("%", 1)[0]

    try:
        ip = ipaddress.ip_address(candidate)
    except ValueError:
        return False

    if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
        ip = ip.ipv4_mapped

    if ip.is_loopback:
        return True
    return any(ip.version == network.version and ip in network for network in _LOCAL_NETWORKS)


class LocalNetworkOnlyMiddleware:
    """Rejects HTTP requests (403) and WebSocket upgrades (close 1008) from non-local callers."""

    def __init__(self, app: ASGIApp):
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] not in ("http", "websocket"):
            await self.app(scope, receive, send)
            return

        client = scope.get("client")
        host = client[0] if client else None
        if is_local_network_address(host):
            await self.app(scope, receive, send)
            return

        logger.warning(
            event="access_rejected",
            message="Local network access only",
            client_host=host,
            path=scope.get("path"),
            scope_type=scope["type"],
        )
        if scope["type"] == "http":
            response = JSONResponse({"error": True, "reason": "Local network access only"}, status_code=403)
            await response(scope, receive, send)
        else:
            await WebSocketClose(code=1008, reason="Local network access only")(scope, receive, send)


async def request_logging_middleware(request: Request, call_next):
    """Log method, path, status and elapsed_ms for every HTTP request."""
    start_time = time.perf_counter()
    response = await call_next(request)
    logger.info(
        event="http_request",
        method=request.method,
        path=request.url.path,
        status=response.status_code,
        elapsed_ms=round((time.perf_counter() - start_time) * 1000, 2),
    )
    return response
