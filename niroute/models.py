"""
Core data models
"""
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator

from niroute.config import settings


class TunnelState(str, Enum):
    """Tunnel connection lifecycle state"""

    IDLE = "idle"
    CONNECTING = "connecting"
    HANDSHAKING = "handshaking"
    OPEN = "open"
    CLOSED = "closed"
    FAILED = "failed"


class RouteReplyStatus(str, Enum):
    """Outcome of a route request"""

    ESTABLISHED = "established"
    PENDING = "pending"  # No reply within the grace window
    REJECTED = "rejected"


@dataclass(frozen=True)
class RouteReply:
    """Decoded router reply to a route request."""

    status: RouteReplyStatus
    code: Optional[int] = None
    message: Optional[str] = None
    detail: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status != RouteReplyStatus.REJECTED


class RouteHop(BaseModel):
    """One /H/host[/S/port] segment of a route string"""

    model_config = ConfigDict(frozen=True)

    host: str = Field(min_length=1)
    port: int = Field(default_factory=lambda: settings.default_router_port, ge=1, le=65535)


class RouteDescriptor(BaseModel):
    """Parsed route string. The first hop is the router the tunnel dials."""

    model_config = ConfigDict(frozen=True)

    hops: Tuple[RouteHop, ...] = Field(min_length=1)

    @property
    def router_host(self) -> str:
        return self.hops[0].host

    @property
    def router_port(self) -> int:
        return self.hops[0].port

    @property
    def is_multi_hop(self) -> bool:
        return len(self.hops) > 1


class TunnelTarget(BaseModel):
    """Destination reached through the router"""

    model_config = ConfigDict(frozen=True)

    target_host: str = Field(min_length=1)
    target_port: int = Field(ge=1, le=65535)
    use_tls: bool = False

    @property
    def authority(self) -> str:
        return f"{self.target_host}:{self.target_port}"


class TunnelTimeouts(BaseModel):
    """Timeouts in milliseconds for the three suspension phases"""

    model_config = ConfigDict(frozen=True)

    connect_ms: int = Field(default_factory=lambda: settings.connect_timeout_ms, gt=0)
    handshake_grace_ms: int = Field(default_factory=lambda: settings.handshake_grace_ms, gt=0)
    response_ms: int = Field(default_factory=lambda: settings.response_timeout_ms, gt=0)


class HttpRequestSpec(BaseModel):
    """HTTP/1.1 request to send through the tunnel"""

    method: str = "GET"
    path: str = "/"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: Optional[bytes] = None

    @field_validator("method")
    @classmethod
    def _method_is_token(cls, value: str) -> str:
        if not value or any(c.isspace() for c in value):
            raise ValueError(f"invalid HTTP method: {value!r}")
        return value

    @field_validator("path")
    @classmethod
    def _path_has_no_whitespace(cls, value: str) -> str:
        if not value or any(c.isspace() for c in value):
            raise ValueError(f"invalid request target: {value!r}")
        return value

    @field_validator("headers")
    @classmethod
    def _headers_fit_on_one_line(cls, value: Dict[str, str]) -> Dict[str, str]:
        for key, item in value.items():
            if not key or key.strip() != key or any(c in key for c in ":\r\n"):
                raise ValueError(f"invalid header name: {key!r}")
            if "\r" in item or "\n" in item:
                raise ValueError(f"header {key!r} contains a line break")
        return value

    def has_header(self, name: str) -> bool:
        lowered = name.lower()
        return any(key.lower() == lowered for key in self.headers)


class HttpResponse(BaseModel):
    """Complete HTTP response reassembled from the tunnel"""

    model_config = ConfigDict(frozen=True)

    status_code: int
    reason: str = ""
    http_version: str = "1.1"
    headers: Dict[str, str] = Field(default_factory=dict)
    body: bytes = b""

    @property
    def ok(self) -> bool:
        return 200 <= self.status_code < 300

    @property
    def charset(self) -> str:
        content_type = self.headers.get("content-type", "")
        for param in content_type.split(";")[1:]:
            key, _, value = param.partition("=")
            if key.strip().lower() == "charset" and value.strip():
                return value.strip().strip('"')
        return "utf-8"

    @property
    def text(self) -> str:
        try:
            return self.body.decode(self.charset, errors="replace")
        except LookupError:
            return self.body.decode("utf-8", errors="replace")
