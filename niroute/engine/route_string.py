"""
Route String Parser

Turns a router address descriptor such as ``/H/router.example/S/3299`` into a
RouteDescriptor. Chained descriptors (``/H/a/S/3299/H/b/S/3298``) keep every
hop; the first hop is the router the tunnel dials.
"""
from typing import List, Optional

import structlog
from pydantic import ValidationError

from niroute.config import settings
from niroute.exceptions import InvalidRouteFormatError
from niroute.models import RouteDescriptor, RouteHop

logger = structlog.get_logger()

HOST_SEGMENT = "H"
SERVICE_SEGMENT = "S"


def _parse_port(value: str, route: str) -> int:
    if not value.isdigit():
        raise InvalidRouteFormatError(
            f"Invalid router port '{value}' in route string: {route}",
            details={"route": route, "segment": value},
        )
    port = int(value)
    if not 1 <= port <= 65535:
        raise InvalidRouteFormatError(
            f"Router port {port} out of range in route string: {route}",
            details={"route": route, "port": port},
        )
    return port


def parse_route_string(route: str, default_port: Optional[int] = None) -> RouteDescriptor:
    """
    Parse a route descriptor into its hops.

    Args:
        route: Descriptor made of ``/<letter>/<value>`` pairs
        default_port: Port for hops without an /S/ segment (defaults to 3299)

    Returns:
        RouteDescriptor whose first hop is the router to connect to

    Raises:
        InvalidRouteFormatError: No /H/ segment, or an unusable /S/ value
    """
    if default_port is None:
        default_port = settings.default_router_port

    tokens = [token for token in (route or "").split("/") if token]
    hops: List[RouteHop] = []
    host: Optional[str] = None
    port: Optional[int] = None

    index = 0
    while index < len(tokens):
        letter = tokens[index].upper()
        value = tokens[index + 1] if index + 1 < len(tokens) else None

        if letter == HOST_SEGMENT:
            if value is None:
                raise InvalidRouteFormatError(
                    f"Missing host after /H/ in route string: {route}",
                    details={"route": route},
                )
            if host is not None:
                hops.append(RouteHop(host=host, port=port or default_port))
            host, port = value, None
        elif letter == SERVICE_SEGMENT and value is not None:
            # Only the first /S/ after a host belongs to that hop
            if host is not None and port is None:
                port = _parse_port(value, route)
        # Any other pair (/P/, /W/ passwords) is not needed to open the socket

        index += 2

    if host is None:
        raise InvalidRouteFormatError(
            f"Invalid router route string (no /H/ segment): {route}",
            details={"route": route},
        )
    try:
        hops.append(RouteHop(host=host, port=port or default_port))
        descriptor = RouteDescriptor(hops=tuple(hops))
    except ValidationError as e:
        raise InvalidRouteFormatError(
            f"Invalid router route string: {route}",
            details={"route": route, "error": str(e)},
        )

    logger.debug(
        "route_string_parsed",
        router_host=descriptor.router_host,
        router_port=descriptor.router_port,
        hop_count=len(descriptor.hops),
    )
    return descriptor
