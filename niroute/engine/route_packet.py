"""
Route Packet Codec

Builds the binary route-request packet and classifies the router's reply.

Route request (all integers big-endian):
┌────────────┬────────────┬────────────┬────────────┬──────────────────────┐
│ Total (4B) │ Header (4B)│ Version(4B)│ Type (4B)  │ "host/port" (var)    │
│ 16 + len   │ always 16  │ 38         │ 1 = route  │ UTF-8, no NUL        │
└────────────┴────────────┴────────────┴────────────┴──────────────────────┘

Router error packet:
┌────────────┬──────────────────┬──────────┬────────────┬────────────┬──────┐
│ Length (4B)│ "NI_RTERR\\0" ... │ ver/op   │ Code (4B)  │ TextLen(4B)│ Text │
│ offset 0   │ offset 4         │ 13-15    │ offset 16  │ offset 20  │ 24.. │
└────────────┴──────────────────┴──────────┴────────────┴────────────┴──────┘
"""
import struct
from typing import Optional

import structlog

from niroute.config import settings
from niroute.exceptions import MalformedReplyError
from niroute.models import RouteReply, RouteReplyStatus

logger = structlog.get_logger()

HEADER_FORMAT = ">IIII"  # total length, header length, version, packet type
HEADER_SIZE = struct.calcsize(HEADER_FORMAT)  # 16 bytes
PACKET_TYPE_ROUTE = 1

ERROR_EYECATCHER = b"NI_RTERR"
EYECATCHER_WINDOW = 12
MIN_REPLY_SIZE = 4
REPLY_CODE_OFFSET = 12
ERROR_CODE_OFFSET = 16
ERROR_TEXT_LENGTH_OFFSET = 20
ERROR_TEXT_OFFSET = 24

SUCCESS_CODES = frozenset({0, 2})

ROUTER_ERROR_MESSAGES = {
    78: "invalid route",
    79: "access denied",
    80: "connection limit reached",
    81: "connection refused",
    82: "route not found",
    83: "route syntax error",
    -6: "unknown host",
    -1: "unspecified error",
}
UNKNOWN_ROUTER_ERROR = "unknown router error"


def router_error_message(code: int) -> str:
    """Human-readable description of a router response code."""
    return ROUTER_ERROR_MESSAGES.get(code, UNKNOWN_ROUTER_ERROR)


def encode_route_packet(
    target_host: str,
    target_port: int,
    version: Optional[int] = None,
) -> bytes:
    """
    Build the route-request packet for ``target_host:target_port``.

    Args:
        target_host: Destination host the router should connect to
        target_port: Destination port
        version: Route protocol version (defaults to settings)

    Returns:
        Complete packet bytes
    """
    if version is None:
        version = settings.route_protocol_version
    route = f"{target_host}/{target_port}".encode("utf-8")
    header = struct.pack(HEADER_FORMAT, HEADER_SIZE + len(route), HEADER_SIZE, version, PACKET_TYPE_ROUTE)
    return header + route


def _read_int32(data: bytes, offset: int) -> int:
    return struct.unpack_from(">i", data, offset)[0]


def _decode_error_text(data: bytes) -> Optional[str]:
    """Extract the NUL-separated text fields of a router error packet."""
    if len(data) <= ERROR_TEXT_OFFSET:
        return None
    declared = _read_int32(data, ERROR_TEXT_LENGTH_OFFSET)
    end = len(data)
    if 0 < declared < end - ERROR_TEXT_OFFSET:
        end = ERROR_TEXT_OFFSET + declared
    raw = data[ERROR_TEXT_OFFSET:end].decode("utf-8", errors="replace")
    fields = [field.strip() for field in raw.split("\x00")]
    fields = [field for field in fields if field and field.isprintable()]
    return " ".join(fields) or None


def decode_route_reply(data: bytes) -> RouteReply:
    """
    Classify the router's reply to a route request.

    Raises:
        MalformedReplyError: Fewer than 4 bytes were received
    """
    if len(data) < MIN_REPLY_SIZE:
        raise MalformedReplyError(
            f"Router reply too short to classify ({len(data)} bytes)",
            details={"size": len(data), "preview": data.hex()},
        )

    if ERROR_EYECATCHER in data[:EYECATCHER_WINDOW]:
        code = _read_int32(data, ERROR_CODE_OFFSET) if len(data) >= ERROR_CODE_OFFSET + 4 else -1
        detail = _decode_error_text(data)
        logger.debug("route_reply_error_packet", code=code, detail=detail)
        return RouteReply(
            status=RouteReplyStatus.REJECTED,
            code=code,
            message=router_error_message(code),
            detail=detail,
        )

    if len(data) >= HEADER_SIZE:
        code = _read_int32(data, REPLY_CODE_OFFSET)
        if code in SUCCESS_CODES:
            return RouteReply(status=RouteReplyStatus.ESTABLISHED, code=code)
        return RouteReply(
            status=RouteReplyStatus.REJECTED,
            code=code,
            message=router_error_message(code),
        )

    return RouteReply(status=RouteReplyStatus.PENDING)


def reply_bytes_wanted(data: bytes) -> int:
    """
    Number of reply bytes needed before the reply can be classified in full.

    Error packets are read up to their declared length so the router's
    error text is available; everything else needs the 16-byte header.
    """
    if ERROR_EYECATCHER in data[:EYECATCHER_WINDOW] and len(data) >= MIN_REPLY_SIZE:
        declared = struct.unpack_from(">I", data, 0)[0]
        return max(MIN_REPLY_SIZE + declared, HEADER_SIZE)
    return HEADER_SIZE
