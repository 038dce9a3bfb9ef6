"""
HTTP Relay Codec - HTTP/1.1 over an open tunnel.

Serializes requests onto the tunnel and reassembles responses from a byte
stream with no message boundaries. Response framing follows RFC 7230:

- HEAD requests, 1xx, 204 and 304 responses carry no body
- Transfer-Encoding: chunked completes on the zero-size chunk
- Content-Length completes after that many body bytes
- anything else completes when the destination closes the connection

ResponseAssembler does no I/O so it can be fed arbitrary splits of a stream;
HttpRelay drives it from a TunnelConnection.
"""
from __future__ import annotations

import asyncio
import re
from enum import Enum
from typing import Dict, List, Optional, Tuple

import structlog

from niroute.config import settings
from niroute.engine.tunnel import TunnelConnection
from niroute.exceptions import (
    InvalidResponseError,
    NotConnectedError,
    ResponseTimeoutError,
    TunnelBrokenError,
)
from niroute.models import HttpRequestSpec, HttpResponse, TunnelState

logger = structlog.get_logger()

CRLF = b"\r\n"
HEADER_TERMINATOR = b"\r\n\r\n"

STATUS_LINE = re.compile(r"^HTTP/(\d+(?:\.\d+)?)\s+(\d{3})(?:\s+(.*))?$")
HEX_DIGITS = frozenset(b"0123456789abcdefABCDEF")


class BodyFraming(str, Enum):
    """How the end of a response body is recognised"""

    NONE = "none"
    CONTENT_LENGTH = "content_length"
    CHUNKED = "chunked"
    UNTIL_CLOSE = "until_close"


class ChunkState(str, Enum):
    """Chunked decoder position"""

    SIZE = "size"
    DATA = "data"
    DATA_CRLF = "data_crlf"
    TRAILER = "trailer"
    DONE = "done"


def encode_request(spec: HttpRequestSpec, default_host: Optional[str] = None) -> bytes:
    """
    Serialize an HTTP/1.1 request.

    Headers are written in insertion order with keys exactly as supplied.
    A Host header is added when missing, and Content-Length when a body is
    present without explicit framing headers.
    """
    headers: List[Tuple[str, str]] = []
    if default_host and not spec.has_header("Host"):
        headers.append(("Host", default_host))
    headers.extend(spec.headers.items())

    body = spec.body
    if body is not None and not (spec.has_header("Content-Length") or spec.has_header("Transfer-Encoding")):
        headers.append(("Content-Length", str(len(body))))

    lines = [f"{spec.method} {spec.path} HTTP/1.1"]
    lines.extend(f"{key}: {value}" for key, value in headers)
    head = "\r\n".join(lines).encode("utf-8") + HEADER_TERMINATOR
    return head + (body or b"")


def parse_status_line(line: str) -> Tuple[str, int, str]:
    """Split ``HTTP/<ver> <code> <reason>`` into (version, code, reason)."""
    match = STATUS_LINE.match(line.strip())
    if not match:
        raise InvalidResponseError(
            "Malformed HTTP status line",
            details={"status_line": line[:200]},
        )
    return match.group(1), int(match.group(2)), (match.group(3) or "").strip()


def parse_header_lines(lines: List[str]) -> Dict[str, str]:
    """Split header lines at the first colon; keys lower-cased, last one wins."""
    headers: Dict[str, str] = {}
    for line in lines:
        key, sep, value = line.partition(":")
        if not sep:
            continue
        headers[key.strip().lower()] = value.strip()
    return headers


class ResponseAssembler:
    """
    Incremental HTTP response parser for one request/response cycle.

    Feed it bytes in whatever pieces the transport delivers; ``feed`` returns
    True once the response is complete. The same byte stream produces the
    same HttpResponse regardless of how it was split.
    """

    def __init__(
        self,
        method: str = "GET",
        decode_chunked: Optional[bool] = None,
        max_bytes: Optional[int] = None,
    ):
        self.method = method.upper()
        self.decode_chunked = settings.decode_chunked if decode_chunked is None else decode_chunked
        self.max_bytes = max_bytes or settings.max_response_bytes

        self.buffer = bytearray()
        self.headers_parsed = False
        self.complete = False
        self.received = 0

        self.http_version = ""
        self.status_code: Optional[int] = None
        self.reason = ""
        self.headers: Dict[str, str] = {}
        self.content_length: Optional[int] = None
        self.is_chunked = False
        self.framing: Optional[BodyFraming] = None

        self.surplus = b""
        self._body = bytearray()
        self._raw_chunked = bytearray()
        self._chunk_buffer = bytearray()
        self._chunk_state = ChunkState.SIZE
        self._chunk_remaining = 0

    def feed(self, data: bytes) -> bool:
        """Accumulate inbound bytes. Returns True when the response is complete."""
        if not data:
            return self.complete
        if self.complete:
            self.surplus += data
            return True

        self.received += len(data)
        if self.received > self.max_bytes:
            raise InvalidResponseError(
                f"Response exceeds {self.max_bytes} bytes",
                details={"received": self.received, "max_bytes": self.max_bytes},
            )

        if not self.headers_parsed:
            self.buffer += data
            if not self._parse_head():
                return False
            data = bytes(self.buffer)
            self.buffer.clear()
            if self.complete:
                self.surplus = data
                return True

        self._consume_body(data)
        return self.complete

    def feed_eof(self) -> bool:
        """Record that the peer closed. Returns True if the response is complete."""
        if not self.complete and self.headers_parsed and self.framing == BodyFraming.UNTIL_CLOSE:
            self.complete = True
        return self.complete

    def build(self) -> HttpResponse:
        if not self.complete:
            raise InvalidResponseError(
                "Response is incomplete",
                details={"headers_parsed": self.headers_parsed, "received": self.received},
            )
        if self.framing == BodyFraming.CHUNKED and not self.decode_chunked:
            body = bytes(self._raw_chunked)
        else:
            body = bytes(self._body)
        return HttpResponse(
            status_code=self.status_code,
            reason=self.reason,
            http_version=self.http_version,
            headers=dict(self.headers),
            body=body,
        )

    def _parse_head(self) -> bool:
        """Parse the header block once it is complete; skips interim 1xx responses."""
        while True:
            end = self.buffer.find(HEADER_TERMINATOR)
            if end == -1:
                return False

            head = bytes(self.buffer[:end]).decode("iso-8859-1")
            del self.buffer[: end + len(HEADER_TERMINATOR)]

            lines = head.split("\r\n")
            version, status_code, reason = parse_status_line(lines[0])
            if 100 <= status_code < 200 and status_code != 101:
                logger.debug("interim_response_skipped", status_code=status_code)
                continue

            self.http_version = version
            self.status_code = status_code
            self.reason = reason
            self.headers = parse_header_lines(lines[1:])
            self.headers_parsed = True
            self._select_framing()
            return True

    def _select_framing(self) -> None:
        transfer_encoding = self.headers.get("transfer-encoding", "").lower()
        length = self.headers.get("content-length")

        if self.method == "HEAD" or self.status_code in (101, 204, 304):
            self.framing = BodyFraming.NONE
            self.complete = True
        elif "chunked" in transfer_encoding:
            self.is_chunked = True
            self.framing = BodyFraming.CHUNKED
        elif length is not None:
            # Repeated identical values ("5, 5") are tolerated
            values = {value.strip() for value in length.split(",")}
            if len(values) != 1 or not next(iter(values)).isdigit():
                raise InvalidResponseError(
                    "Invalid Content-Length header",
                    details={"content_length": length},
                )
            self.content_length = int(values.pop())
            self.framing = BodyFraming.CONTENT_LENGTH
            if self.content_length == 0:
                self.complete = True
        else:
            self.framing = BodyFraming.UNTIL_CLOSE

    def _consume_body(self, data: bytes) -> None:
        if self.framing == BodyFraming.CONTENT_LENGTH:
            self._body += data
            if len(self._body) >= self.content_length:
                self.surplus = bytes(self._body[self.content_length:])
                del self._body[self.content_length:]
                self.complete = True
        elif self.framing == BodyFraming.CHUNKED:
            self._raw_chunked += data
            self._chunk_buffer += data
            self._decode_chunks()
            if self.complete:
                self.surplus = bytes(self._chunk_buffer)
                if self.surplus:
                    del self._raw_chunked[-len(self.surplus):]
                self._chunk_buffer.clear()
        else:
            self._body += data

    def _decode_chunks(self) -> None:
        """size-line -> data -> CRLF -> next size-line ... -> 0 -> trailers -> CRLF"""
        buf = self._chunk_buffer
        while True:
            if self._chunk_state == ChunkState.SIZE:
                eol = buf.find(CRLF)
                if eol == -1:
                    return
                size_text = bytes(buf[:eol]).split(b";", 1)[0].strip()
                del buf[: eol + len(CRLF)]
                if not size_text or not set(size_text) <= HEX_DIGITS:
                    raise InvalidResponseError(
                        "Invalid chunk size line",
                        details={"size_line": size_text[:32].decode("iso-8859-1")},
                    )
                size = int(size_text, 16)
                if size == 0:
                    self._chunk_state = ChunkState.TRAILER
                else:
                    self._chunk_remaining = size
                    self._chunk_state = ChunkState.DATA

            elif self._chunk_state == ChunkState.DATA:
                if not buf:
                    return
                piece = buf[: self._chunk_remaining]
                self._body += piece
                del buf[: len(piece)]
                self._chunk_remaining -= len(piece)
                if self._chunk_remaining == 0:
                    self._chunk_state = ChunkState.DATA_CRLF

            elif self._chunk_state == ChunkState.DATA_CRLF:
                if len(buf) < len(CRLF):
                    return
                if buf[: len(CRLF)] != CRLF:
                    raise InvalidResponseError("Missing CRLF after chunk data")
                del buf[: len(CRLF)]
                self._chunk_state = ChunkState.SIZE

            elif self._chunk_state == ChunkState.TRAILER:
                eol = buf.find(CRLF)
                if eol == -1:
                    return
                line = bytes(buf[:eol])
                del buf[: eol + len(CRLF)]
                if not line:
                    self._chunk_state = ChunkState.DONE
                    self.complete = True
                    return
                logger.debug("chunked_trailer_ignored", trailer=line[:64].decode("iso-8859-1"))

            else:
                return


class HttpRelay:
    """
    Sends HTTP requests over an open TunnelConnection.

    One request at a time: the relay offers no framing to tell interleaved
    responses apart, so callers serialize use of a tunnel.
    """

    def __init__(
        self,
        tunnel: TunnelConnection,
        decode_chunked: Optional[bool] = None,
        max_response_bytes: Optional[int] = None,
    ):
        self.tunnel = tunnel
        self.decode_chunked = decode_chunked
        self.max_response_bytes = max_response_bytes

    async def send_request(
        self,
        request: HttpRequestSpec,
        timeout_ms: Optional[int] = None,
    ) -> HttpResponse:
        """
        Send ``request`` and wait for the complete response.

        Raises:
            NotConnectedError: Tunnel is not open
            TunnelBrokenError: Socket failed or closed before the response completed
            ResponseTimeoutError: No complete response within ``timeout_ms``
            TunnelCancelledError: Tunnel closed by its owner while waiting
            InvalidResponseError: Destination sent something that is not HTTP
        """
        tunnel = self.tunnel
        if tunnel.state != TunnelState.OPEN:
            raise NotConnectedError(
                f"Tunnel to {tunnel.target.authority} is not open",
                current_state=tunnel.state.value,
            )

        timeout_sec = (timeout_ms or settings.response_timeout_ms) / 1000.0
        payload = encode_request(request, default_host=tunnel.target.authority)
        await tunnel.write(payload)
        logger.debug(
            "http_request_sent",
            method=request.method,
            path=request.path,
            target=tunnel.target.authority,
            size=len(payload),
        )

        assembler = ResponseAssembler(
            method=request.method,
            decode_chunked=self.decode_chunked,
            max_bytes=self.max_response_bytes,
        )
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout_sec

        try:
            while True:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError()
                chunk = await tunnel.read(timeout_sec=remaining)
                if not chunk:
                    if assembler.feed_eof():
                        break
                    raise TunnelBrokenError(
                        "Connection closed before the response was complete",
                        details={
                            "target": tunnel.target.authority,
                            "received": assembler.received,
                            "headers_parsed": assembler.headers_parsed,
                        },
                    )
                if assembler.feed(chunk):
                    break
        except asyncio.TimeoutError:
            await tunnel.close()
            logger.warning(
                "http_response_timeout",
                target=tunnel.target.authority,
                timeout_sec=timeout_sec,
                received=assembler.received,
            )
            raise ResponseTimeoutError(
                f"No complete response from {tunnel.target.authority} within {timeout_sec:.1f}s",
                details={"timeout_sec": timeout_sec, "received": assembler.received},
            )
        except InvalidResponseError:
            await tunnel.close()
            raise

        if assembler.surplus:
            logger.warning(
                "unexpected_bytes_after_response",
                size=len(assembler.surplus),
                preview=assembler.surplus[:32].hex(),
            )

        response = assembler.build()
        logger.info(
            "http_response_received",
            target=tunnel.target.authority,
            status_code=response.status_code,
            body_size=len(response.body),
            framing=assembler.framing.value,
        )
        return response
