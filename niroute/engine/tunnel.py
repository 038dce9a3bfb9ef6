"""
Tunnel Connection - one router socket driven through the route handshake.

Provides:
- TCP connect to the router with timeout
- Route request / reply handshake with a grace window for silent routers
- Optional TLS upgrade to the destination once the route is up
- Raw read/write on the open tunnel with statistics
- Idempotent close that unblocks outstanding reads
"""
from __future__ import annotations

import asyncio
import ssl
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple

import structlog

from niroute.config import settings
from niroute.engine.route_packet import (
    HEADER_SIZE,
    decode_route_reply,
    encode_route_packet,
    reply_bytes_wanted,
)
from niroute.exceptions import (
    NotConnectedError,
    RouterConnectError,
    RouterConnectTimeoutError,
    RouterRejectedError,
    TunnelBrokenError,
    TunnelCancelledError,
)
from niroute.models import (
    RouteDescriptor,
    RouteReply,
    RouteReplyStatus,
    TunnelState,
    TunnelTarget,
    TunnelTimeouts,
)

logger = structlog.get_logger()

OpenConnection = Callable[[str, int], Awaitable[Tuple[asyncio.StreamReader, asyncio.StreamWriter]]]

# Upper bound on router error packets; the text block is a few hundred bytes
MAX_REPLY_SIZE = 4096

# A failed start_tls leaves the stream protocol detached, so wait_closed may never return
CLOSE_TIMEOUT_SEC = 1.0


def build_ssl_context(
    verify: Optional[bool] = None,
    ca_file: Optional[Path] = None,
) -> ssl.SSLContext:
    """Client TLS context for the destination behind the router."""
    if verify is None:
        verify = settings.tls_verify
    if ca_file is None:
        ca_file = settings.tls_ca_file

    context = ssl.create_default_context(cafile=str(ca_file) if ca_file else None)
    if not verify:
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE
    return context


class TunnelConnection:
    """
    Owns exactly one socket to the router.

    States: IDLE -> CONNECTING -> HANDSHAKING -> OPEN -> CLOSED, with FAILED
    reachable from CONNECTING and HANDSHAKING. Once OPEN the router is a
    transparent relay and read()/write() carry destination traffic.
    """

    def __init__(
        self,
        descriptor: RouteDescriptor,
        target: TunnelTarget,
        timeouts: Optional[TunnelTimeouts] = None,
        ssl_context: Optional[ssl.SSLContext] = None,
        open_connection: Optional[OpenConnection] = None,
        route_version: Optional[int] = None,
        read_chunk_size: Optional[int] = None,
    ):
        self.descriptor = descriptor
        self.target = target
        self.timeouts = timeouts or TunnelTimeouts()
        self.route_version = route_version
        self.read_chunk_size = read_chunk_size or settings.read_chunk_size

        self._ssl_context = ssl_context
        self._open_connection: OpenConnection = open_connection or asyncio.open_connection
        self._reader: Optional[asyncio.StreamReader] = None
        self._writer: Optional[asyncio.StreamWriter] = None
        self._connect_task: Optional[asyncio.Future] = None
        self._closing = False

        self.state = TunnelState.IDLE
        self.reply: Optional[RouteReply] = None

        # Statistics
        self.created_at: Optional[datetime] = None
        self.opened_at: Optional[datetime] = None
        self.bytes_sent: int = 0
        self.bytes_received: int = 0
        self.send_count: int = 0
        self.recv_count: int = 0

    @property
    def router_host(self) -> str:
        return self.descriptor.router_host

    @property
    def router_port(self) -> int:
        return self.descriptor.router_port

    @property
    def is_open(self) -> bool:
        return self.state == TunnelState.OPEN and self._writer is not None

    async def connect(self) -> RouteReply:
        """
        Connect to the router and run the route handshake.

        Returns:
            The route reply (ESTABLISHED or PENDING)

        Raises:
            RouterConnectError: TCP connect or TLS upgrade failed
            RouterRejectedError: Router refused the route
            MalformedReplyError: Reply too short to classify
            TunnelBrokenError: Router dropped the connection mid-handshake
            TunnelCancelledError: close() was called during connect
        """
        if self.state == TunnelState.OPEN:
            return self.reply
        if self.state != TunnelState.IDLE:
            raise RouterConnectError(
                f"Tunnel cannot connect from state {self.state.value}",
                details={"state": self.state.value},
            )

        self.state = TunnelState.CONNECTING
        self.created_at = datetime.now(timezone.utc)
        connect_sec = self.timeouts.connect_ms / 1000.0

        self._connect_task = asyncio.ensure_future(self._open_connection(self.router_host, self.router_port))
        try:
            self._reader, self._writer = await asyncio.wait_for(self._connect_task, timeout=connect_sec)
        except asyncio.TimeoutError:
            self.state = TunnelState.FAILED
            raise RouterConnectTimeoutError(
                f"Connection timeout to router {self.router_host}:{self.router_port}",
                details={"host": self.router_host, "port": self.router_port, "timeout_sec": connect_sec},
            )
        except OSError as e:
            self.state = TunnelState.FAILED
            raise RouterConnectError(
                f"Failed to connect to router {self.router_host}:{self.router_port}: {e}",
                details={"host": self.router_host, "port": self.router_port, "error": str(e)},
            ) from e
        except asyncio.CancelledError:
            if not self._closing:
                self.state = TunnelState.FAILED
                raise
            # close() cancelled the pending connect
            self.state = TunnelState.CLOSED
            logger.info("router_connect_cancelled", host=self.router_host, port=self.router_port)
            raise TunnelCancelledError(
                f"Tunnel closed while connecting to router {self.router_host}:{self.router_port}",
                details={"phase": "connect", "host": self.router_host, "port": self.router_port},
            )
        except BaseException:
            self.state = TunnelState.FAILED
            raise
        finally:
            self._connect_task = None

        if self._closing:
            await self._abort(TunnelState.CLOSED)
            raise TunnelCancelledError(
                "Tunnel closed while connecting",
                details={"phase": "connect"},
            )

        logger.info(
            "router_connected",
            host=self.router_host,
            port=self.router_port,
            target=self.target.authority,
        )

        self.state = TunnelState.HANDSHAKING
        try:
            reply = await self._handshake()
            if self.target.use_tls:
                await self._start_tls()
        except OSError as e:
            await self._abort(TunnelState.FAILED)
            raise TunnelBrokenError(
                f"Router connection failed during handshake: {e}",
                details={"phase": "handshake", "error": str(e), "error_type": type(e).__name__},
            ) from e
        except BaseException:
            await self._abort(TunnelState.FAILED)
            raise

        self.reply = reply
        self.state = TunnelState.OPEN
        self.opened_at = datetime.now(timezone.utc)
        logger.info(
            "tunnel_open",
            router=f"{self.router_host}:{self.router_port}",
            target=self.target.authority,
            reply=reply.status.value,
            tls=self.target.use_tls,
        )
        return reply

    async def _handshake(self) -> RouteReply:
        """Send the route request and classify the reply."""
        packet = encode_route_packet(
            self.target.target_host,
            self.target.target_port,
            version=self.route_version,
        )
        self._writer.write(packet)
        await self._writer.drain()
        self.bytes_sent += len(packet)
        self.send_count += 1
        logger.debug(
            "route_request_sent",
            target=self.target.authority,
            size=len(packet),
            preview=packet[:32].hex(),
        )

        data, eof = await self._collect_reply()
        if self._closing:
            raise TunnelCancelledError(
                "Tunnel closed during route handshake",
                details={"phase": "handshake"},
            )
        if not data and eof:
            raise TunnelBrokenError(
                "Router closed the connection during the route handshake",
                details={"phase": "handshake", "host": self.router_host, "port": self.router_port},
            )

        if data:
            logger.debug("route_reply_received", size=len(data), preview=data[:32].hex())
            reply = decode_route_reply(data)
        else:
            reply = RouteReply(status=RouteReplyStatus.PENDING)

        if reply.status == RouteReplyStatus.REJECTED:
            logger.warning(
                "router_rejected_route",
                target=self.target.authority,
                code=reply.code,
                reason=reply.message,
                detail=reply.detail,
            )
            raise RouterRejectedError(reply.code, reply.message, reply.detail)

        if eof:
            raise TunnelBrokenError(
                "Router closed the connection after the route reply",
                details={"phase": "handshake", "reply": reply.status.value},
            )

        if reply.status == RouteReplyStatus.PENDING:
            logger.info(
                "route_reply_pending",
                target=self.target.authority,
                received=len(data),
                grace_ms=self.timeouts.handshake_grace_ms,
            )
        return reply

    async def _collect_reply(self) -> Tuple[bytes, bool]:
        """
        Read the route reply within the grace window.

        Reads no further than the reply itself so destination bytes that
        follow it stay in the stream. Returns (bytes, eof).
        """
        reader = self._reader
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeouts.handshake_grace_ms / 1000.0
        buffer = bytearray()
        wanted = HEADER_SIZE

        while len(buffer) < wanted:
            remaining = deadline - loop.time()
            if remaining <= 0:
                break
            try:
                chunk = await asyncio.wait_for(
                    reader.read(wanted - len(buffer)),
                    timeout=remaining,
                )
            except asyncio.TimeoutError:
                break

            if not chunk:
                return bytes(buffer), True

            buffer += chunk
            self.bytes_received += len(chunk)
            self.recv_count += 1
            wanted = min(reply_bytes_wanted(bytes(buffer)), MAX_REPLY_SIZE)

        return bytes(buffer), False

    async def _start_tls(self) -> None:
        """Upgrade the open route to TLS with the destination."""
        if self._closing:
            raise TunnelCancelledError("Tunnel closed before TLS upgrade", details={"phase": "tls"})
        context = self._ssl_context or build_ssl_context()
        connect_sec = self.timeouts.connect_ms / 1000.0
        try:
            await asyncio.wait_for(
                self._writer.start_tls(context, server_hostname=self.target.target_host),
                timeout=connect_sec,
            )
        except asyncio.TimeoutError:
            raise RouterConnectTimeoutError(
                f"TLS handshake with {self.target.authority} timed out",
                details={"phase": "tls", "target": self.target.authority, "timeout_sec": connect_sec},
            )
        except (ssl.SSLError, OSError) as e:
            raise RouterConnectError(
                f"TLS handshake with {self.target.authority} failed: {e}",
                details={"phase": "tls", "target": self.target.authority, "error": str(e)},
            ) from e
        logger.debug("tunnel_tls_established", target=self.target.authority)

    def _require_open(self, operation: str) -> None:
        if not self.is_open:
            raise NotConnectedError(
                f"Cannot {operation}: tunnel to {self.target.authority} is {self.state.value}",
                current_state=self.state.value,
            )

    async def write(self, data: bytes) -> None:
        """Send raw bytes to the destination."""
        self._require_open("write")
        writer = self._writer

        try:
            writer.write(data)
            await writer.drain()
        except OSError as e:
            if self._closing:
                raise TunnelCancelledError("Tunnel closed while writing", details={"phase": "request"})
            await self._abort(TunnelState.CLOSED)
            raise TunnelBrokenError(
                f"Failed to send data to {self.target.authority}",
                details={"phase": "request", "error": str(e), "data_size": len(data)},
            ) from e

        self.bytes_sent += len(data)
        self.send_count += 1

    async def read(
        self,
        max_bytes: Optional[int] = None,
        timeout_sec: Optional[float] = None,
    ) -> bytes:
        """
        Receive raw bytes from the destination.

        Returns b"" when the peer closed the connection (state becomes CLOSED).

        Raises:
            asyncio.TimeoutError: Nothing arrived within ``timeout_sec``
            TunnelBrokenError: Socket error
            TunnelCancelledError: close() was called while waiting
        """
        self._require_open("read")
        reader = self._reader

        try:
            if timeout_sec is None:
                chunk = await reader.read(max_bytes or self.read_chunk_size)
            else:
                chunk = await asyncio.wait_for(
                    reader.read(max_bytes or self.read_chunk_size),
                    timeout=timeout_sec,
                )
        except asyncio.TimeoutError:
            raise
        except OSError as e:
            if self._closing:
                raise TunnelCancelledError("Tunnel closed while reading", details={"phase": "response"})
            await self._abort(TunnelState.CLOSED)
            raise TunnelBrokenError(
                f"Failed to receive data from {self.target.authority}",
                details={"phase": "response", "error": str(e)},
            ) from e

        if self._closing:
            raise TunnelCancelledError(
                "Tunnel closed while a read was outstanding",
                details={"phase": "response"},
            )

        if not chunk:
            logger.debug("tunnel_peer_closed", target=self.target.authority)
            await self._abort(TunnelState.CLOSED)
            return b""

        self.bytes_received += len(chunk)
        self.recv_count += 1
        return chunk

    async def close(self) -> None:
        """Close the tunnel. Safe to call repeatedly and from any state."""
        self._closing = True
        if self._connect_task is not None and not self._connect_task.done():
            self._connect_task.cancel()
        if self._writer is None:
            if self.state in (TunnelState.IDLE, TunnelState.OPEN):
                self.state = TunnelState.CLOSED
            return
        final = TunnelState.FAILED if self.state == TunnelState.FAILED else TunnelState.CLOSED
        await self._abort(final)

    async def _abort(self, final_state: TunnelState) -> None:
        """Force-close the socket and settle in ``final_state``."""
        writer = self._writer
        self._reader = None
        self._writer = None
        if self._closing and final_state == TunnelState.FAILED and self.state != TunnelState.FAILED:
            final_state = TunnelState.CLOSED
        self.state = final_state

        if writer is None:
            return

        writer.transport.abort()
        try:
            await asyncio.wait_for(writer.wait_closed(), timeout=CLOSE_TIMEOUT_SEC)
        except asyncio.TimeoutError:
            logger.warning(
                "tunnel_close_timeout",
                host=self.router_host,
                port=self.router_port,
                timeout_sec=CLOSE_TIMEOUT_SEC,
            )
        except Exception as e:
            logger.warning(
                "tunnel_close_error",
                host=self.router_host,
                port=self.router_port,
                error=str(e),
                error_type=type(e).__name__,
            )
        logger.info(
            "tunnel_closed",
            target=self.target.authority,
            state=self.state.value,
            bytes_sent=self.bytes_sent,
            bytes_received=self.bytes_received,
        )

    def get_stats(self) -> Dict[str, Any]:
        """Get tunnel statistics."""
        return {
            "state": self.state.value,
            "router": f"{self.router_host}:{self.router_port}",
            "target": self.target.authority,
            "reply": self.reply.status.value if self.reply else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "opened_at": self.opened_at.isoformat() if self.opened_at else None,
            "bytes_sent": self.bytes_sent,
            "bytes_received": self.bytes_received,
            "send_count": self.send_count,
            "recv_count": self.recv_count,
        }

    async def __aenter__(self) -> "TunnelConnection":
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()
