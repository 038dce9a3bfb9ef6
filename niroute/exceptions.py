"""
Custom Exception Hierarchy for the router tunnel

Provides structured exceptions so callers can render actionable messages.
All custom exceptions inherit from RouterTunnelError and carry a ``details``
dict with at least the ``phase`` in which the failure happened.
"""
from typing import Optional


class RouterTunnelError(Exception):
    """
    Base exception for all router tunnel errors.

    All custom exceptions inherit from this class to allow
    catching every tunnel failure with a single except clause.
    """
    phase = "unknown"

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        self.details.setdefault("phase", self.phase)


# Route descriptor errors

class InvalidRouteFormatError(RouterTunnelError):
    """
    Route descriptor could not be parsed.

    Raised before any I/O is attempted, e.g. when no /H/ segment is present
    or a /S/ value is not a usable port.
    """
    phase = "parse"


# Router connection and handshake errors

class RouterConnectError(RouterTunnelError):
    """TCP connect to the router (or the TLS upgrade over the tunnel) failed."""
    phase = "connect"


class RouterConnectTimeoutError(RouterConnectError):
    """Connect to the router timed out."""
    pass


class RouterRejectedError(RouterTunnelError):
    """
    Router answered the route request with an explicit error.

    ``code`` is the router's numeric response code, ``reason`` the decoded
    human-readable description and ``detail`` any error text the router sent.
    """
    phase = "handshake"

    def __init__(self, code: int, reason: str, detail: Optional[str] = None):
        message = f"Router rejected route: {reason} (code {code})"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, {"code": code, "reason": reason, "detail": detail})
        self.code = code
        self.reason = reason
        self.detail = detail


class MalformedReplyError(RouterTunnelError):
    """Router reply too short to classify."""
    phase = "handshake"


# Tunnel usage errors

class NotConnectedError(RouterTunnelError):
    """Operation attempted on a tunnel that is not open."""
    phase = "request"

    def __init__(self, message: str, current_state: str):
        super().__init__(message, {"current_state": current_state})
        self.current_state = current_state


class TunnelBrokenError(RouterTunnelError):
    """Socket errored or closed unexpectedly."""
    phase = "response"


class ResponseTimeoutError(RouterTunnelError):
    """No complete response within the response timeout."""
    phase = "response"


class TunnelCancelledError(RouterTunnelError):
    """Tunnel was closed by its owner while an operation was outstanding."""
    pass


# HTTP errors

class InvalidResponseError(RouterTunnelError):
    """Destination sent bytes that are not a valid HTTP/1.x response."""
    phase = "response"
