"""
Tunnel Lifecycle Manager - the public entry point.

Composes route parsing, the router handshake and the HTTP relay:

    response = await perform_tunneled_request(
        "/H/router.example/S/3299",
        TunnelTarget(target_host="10.0.0.5", target_port=8000),
        HttpRequestSpec(method="GET", path="/ping"),
    )

For several sequential requests over one handshake use the long-lived form:

    async with open_tunnel(route, target) as tunnel:
        first = await tunnel.request(HttpRequestSpec(path="/a"))
        second = await tunnel.request(HttpRequestSpec(path="/b"))

The socket is closed on every exit path. Nothing is retried here; retry
policy belongs to the caller.
"""
from __future__ import annotations

import asyncio
import ssl
from typing import Any, Dict, Optional, Union

import structlog

from niroute.config import settings
from niroute.engine.http_relay import HttpRelay
from niroute.engine.route_string import parse_route_string
from niroute.engine.tunnel import OpenConnection, TunnelConnection
from niroute.exceptions import InvalidRouteFormatError, RouterTunnelError, TunnelBrokenError
from niroute.models import (
    HttpRequestSpec,
    HttpResponse,
    RouteDescriptor,
    RouteReply,
    TunnelState,
    TunnelTarget,
    TunnelTimeouts,
)

logger = structlog.get_logger()

RouteLike = Union[str, RouteDescriptor]


def resolve_route(route: RouteLike) -> RouteDescriptor:
    """Accept either a route string or an already parsed descriptor."""
    if isinstance(route, RouteDescriptor):
        return route
    return parse_route_string(route)


class RouterTunnel:
    """
    One tunnel to one destination, usable for sequential requests.

    Wraps a TunnelConnection and an HttpRelay. Requests are serialized with
    a lock; concurrent callers wait their turn rather than interleave on the
    socket.
    """

    def __init__(
        self,
        descriptor: RouteDescriptor,
        target: TunnelTarget,
        timeouts: Optional[TunnelTimeouts] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        open_connection: Optional[OpenConnection] = None,
        decode_chunked: Optional[bool] = None,
        allow_multi_hop: Optional[bool] = None,
    ):
        if allow_multi_hop is None:
            allow_multi_hop = settings.allow_multi_hop

        if descriptor.is_multi_hop:
            if not allow_multi_hop:
                raise InvalidRouteFormatError(
                    "Multi-hop route strings are not supported; only a single /H/ router hop can be dialled",
                    details={"hops": [f"{hop.host}:{hop.port}" for hop in descriptor.hops]},
                )
            logger.warning(
                "multi_hop_route_first_hop_only",
                router=f"{descriptor.router_host}:{descriptor.router_port}",
                ignored_hops=len(descriptor.hops) - 1,
            )

        self.descriptor = descriptor
        self.target = target
        self.timeouts = timeouts or TunnelTimeouts()
        self.connection = TunnelConnection(
            descriptor,
            target,
            self.timeouts,
            ssl_context=ssl_context,
            open_connection=open_connection,
        )
        self.relay = HttpRelay(self.connection, decode_chunked=decode_chunked)
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TunnelState:
        return self.connection.state

    async def open(self) -> RouteReply:
        """Connect to the router and complete the route handshake."""
        return await self.connection.connect()

    async def request(self, request: HttpRequestSpec) -> HttpResponse:
        """
        Send one request and return the complete response.

        Any failure closes the tunnel before the error propagates.
        """
        async with self._lock:
            try:
                return await self.relay.send_request(request, self.timeouts.response_ms)
            except RouterTunnelError:
                await self.connection.close()
                raise
            except OSError as e:
                await self.connection.close()
                raise TunnelBrokenError(
                    f"Tunnel to {self.target.authority} failed: {e}",
                    details={"error": str(e), "error_type": type(e).__name__},
                ) from e
            except BaseException:
                await self.connection.close()
                raise

    async def close(self) -> None:
        await self.connection.close()

    def get_stats(self) -> Dict[str, Any]:
        return self.connection.get_stats()

    async def __aenter__(self) -> "RouterTunnel":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()


def open_tunnel(
    route: RouteLike,
    target: TunnelTarget,
    timeouts: Optional[TunnelTimeouts] = None,
    **kwargs: Any,
) -> RouterTunnel:
    """
    Create a long-lived tunnel; use it as an async context manager.

    Raises:
        InvalidRouteFormatError: Route string cannot be parsed (no I/O attempted)
    """
    return RouterTunnel(resolve_route(route), target, timeouts, **kwargs)


async def perform_tunneled_request(
    route: RouteLike,
    target: TunnelTarget,
    request: HttpRequestSpec,
    timeouts: Optional[TunnelTimeouts] = None,
    **kwargs: Any,
) -> HttpResponse:
    """
    Establish a tunnel, send one request, and tear the tunnel down.

    Args:
        route: Route string (``/H/host[/S/port]``) or parsed descriptor
        target: Destination host/port and TLS flag
        request: HTTP request to send
        timeouts: Connect / handshake grace / response timeouts
        **kwargs: Passed to RouterTunnel (ssl_context, open_connection, ...)

    Returns:
        The destination's HttpResponse

    Raises:
        RouterTunnelError: One of the typed failures in niroute.exceptions
    """
    tunnel = open_tunnel(route, target, timeouts, **kwargs)

    if not request.has_header("Connection"):
        request = request.model_copy(update={"headers": {**request.headers, "Connection": "close"}})

    try:
        await tunnel.open()
        return await tunnel.request(request)
    except RouterTunnelError as e:
        logger.warning(
            "tunneled_request_failed",
            router=f"{tunnel.descriptor.router_host}:{tunnel.descriptor.router_port}",
            target=target.authority,
            error=e.message,
            error_type=type(e).__name__,
            phase=e.details.get("phase"),
        )
        raise
    finally:
        await tunnel.close()
