"""
End-to-end tests for tunneled HTTP requests.

A loopback FakeRouter plays both the router and the destination behind it.
"""
import asyncio
from unittest.mock import AsyncMock

import pytest

from niroute.engine.lifecycle import open_tunnel, perform_tunneled_request, resolve_route
from niroute.engine.route_packet import encode_route_packet
from niroute.exceptions import (
    InvalidRouteFormatError,
    NotConnectedError,
    ResponseTimeoutError,
    RouterRejectedError,
    TunnelBrokenError,
)
from niroute.models import HttpRequestSpec, RouteDescriptor, TunnelState, TunnelTarget, TunnelTimeouts
from tests.fake_router import FakeRouter, route_reply

TARGET = TunnelTarget(target_host="10.0.0.5", target_port=8000)
FAST = TunnelTimeouts(connect_ms=1000, handshake_grace_ms=150, response_ms=1000)
HELLO_PARTS = [b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nHEL", b"LO"]


class TestPerformTunneledRequest:
    """One-shot request: connect, handshake, relay, close."""

    @pytest.mark.asyncio
    async def test_request_through_router(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS, part_delay=0.02) as router:
            response = await perform_tunneled_request(
                "/H/203.0.113.9/S/3299",
                TARGET,
                HttpRequestSpec(method="GET", path="/ping"),
                FAST,
                open_connection=router.open_connection,
            )

        assert response.status_code == 200
        assert response.body == b"HELLO"
        assert response.ok is True
        assert router.route_packets == [encode_route_packet("10.0.0.5", 8000)]

        request = router.requests[0]
        assert request.startswith(b"GET /ping HTTP/1.1\r\n")
        assert b"Host: 10.0.0.5:8000\r\n" in request
        assert b"Connection: close\r\n" in request

    @pytest.mark.asyncio
    async def test_caller_connection_header_kept(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS) as router:
            await perform_tunneled_request(
                router.route,
                TARGET,
                HttpRequestSpec(headers={"Connection": "keep-alive"}),
                FAST,
            )

        assert b"Connection: keep-alive\r\n" in router.requests[0]
        assert b"close" not in router.requests[0]

    @pytest.mark.asyncio
    async def test_post_with_body(self):
        async with FakeRouter(reply=route_reply(0), response_parts=[b"HTTP/1.1 201 Created\r\nContent-Length: 0\r\n\r\n"]) as router:
            response = await perform_tunneled_request(
                router.route,
                TARGET,
                HttpRequestSpec(method="POST", path="/items", body=b'{"a": 1}'),
                FAST,
            )

        assert response.status_code == 201
        assert response.reason == "Created"
        assert router.requests[0].startswith(b"POST /items HTTP/1.1\r\n")
        assert router.requests[0].endswith(b'Content-Length: 8\r\n\r\n{"a": 1}')

    @pytest.mark.asyncio
    async def test_silent_router_still_relays(self):
        async with FakeRouter(reply=None, response_parts=HELLO_PARTS) as router:
            response = await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), FAST)

        assert response.body == b"HELLO"

    @pytest.mark.asyncio
    async def test_chunked_response(self):
        parts = [
            b"HTTP/1.1 200 OK\r\nTransfer-Encoding: chunked\r\n\r\n5\r\nHELLO\r\n",
            b"6\r\n WORLD\r\n0\r\n\r\n",
        ]
        async with FakeRouter(reply=route_reply(0), response_parts=parts, part_delay=0.02) as router:
            response = await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), FAST)

        assert response.body == b"HELLO WORLD"

    @pytest.mark.asyncio
    async def test_body_until_close(self):
        parts = [b"HTTP/1.0 200 OK\r\nContent-Type: text/plain\r\n\r\nstream", b"ed"]
        async with FakeRouter(reply=route_reply(0), response_parts=parts, close_after_response=True) as router:
            response = await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), FAST)

        assert response.http_version == "1.0"
        assert response.text == "streamed"


class TestFailures:

    @pytest.mark.asyncio
    async def test_router_rejects_route(self):
        async with FakeRouter(reply=route_reply(81)) as router:
            with pytest.raises(RouterRejectedError) as exc_info:
                await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), FAST)

        assert exc_info.value.code == 81
        assert exc_info.value.reason == "connection refused"
        assert router.requests == []

    @pytest.mark.asyncio
    async def test_invalid_route_fails_without_io(self):
        opener = AsyncMock()

        with pytest.raises(InvalidRouteFormatError):
            await perform_tunneled_request(
                "router.example.com",
                TARGET,
                HttpRequestSpec(),
                FAST,
                open_connection=opener,
            )

        opener.assert_not_called()

    @pytest.mark.asyncio
    async def test_multi_hop_rejected_by_default(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS) as router:
            with pytest.raises(InvalidRouteFormatError):
                await perform_tunneled_request(
                    f"{router.route}/H/inner.example/S/3298",
                    TARGET,
                    HttpRequestSpec(),
                    FAST,
                )

        assert router.route_packets == []

    @pytest.mark.asyncio
    async def test_multi_hop_dials_first_hop_when_allowed(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS) as router:
            response = await perform_tunneled_request(
                f"{router.route}/H/inner.example/S/3298",
                TARGET,
                HttpRequestSpec(),
                FAST,
                allow_multi_hop=True,
            )

        assert response.body == b"HELLO"
        assert len(router.route_packets) == 1

    @pytest.mark.asyncio
    async def test_response_timeout(self):
        timeouts = TunnelTimeouts(connect_ms=1000, handshake_grace_ms=100, response_ms=100)
        async with FakeRouter(reply=route_reply(0)) as router:
            with pytest.raises(ResponseTimeoutError) as exc_info:
                await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), timeouts)

        assert exc_info.value.details["phase"] == "response"

    @pytest.mark.asyncio
    async def test_peer_closes_mid_body(self):
        parts = [b"HTTP/1.1 200 OK\r\nContent-Length: 10\r\n\r\nabc"]
        async with FakeRouter(reply=route_reply(0), response_parts=parts, close_after_response=True) as router:
            with pytest.raises(TunnelBrokenError):
                await perform_tunneled_request(router.route, TARGET, HttpRequestSpec(), FAST)


class TestLongLivedTunnel:
    """Several requests over one route handshake."""

    @pytest.mark.asyncio
    async def test_sequential_requests_share_one_handshake(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS) as router:
            async with open_tunnel(router.route, TARGET, FAST) as tunnel:
                first = await tunnel.request(HttpRequestSpec(path="/a"))
                second = await tunnel.request(HttpRequestSpec(path="/b"))
                assert tunnel.state == TunnelState.OPEN

            assert tunnel.state == TunnelState.CLOSED

        assert first.body == second.body == b"HELLO"
        assert len(router.route_packets) == 1
        assert router.requests[0].startswith(b"GET /a HTTP/1.1\r\n")
        assert router.requests[1].startswith(b"GET /b HTTP/1.1\r\n")
        assert b"Connection: close" not in router.requests[0]

    @pytest.mark.asyncio
    async def test_concurrent_callers_are_serialized(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS, part_delay=0.01) as router:
            async with open_tunnel(router.route, TARGET, FAST) as tunnel:
                responses = await asyncio.gather(
                    tunnel.request(HttpRequestSpec(path="/a")),
                    tunnel.request(HttpRequestSpec(path="/b")),
                )

        assert [r.body for r in responses] == [b"HELLO", b"HELLO"]
        assert len(router.requests) == 2

    @pytest.mark.asyncio
    async def test_failed_request_closes_tunnel(self):
        timeouts = TunnelTimeouts(connect_ms=1000, handshake_grace_ms=100, response_ms=100)
        async with FakeRouter(reply=route_reply(0)) as router:
            async with open_tunnel(router.route, TARGET, timeouts) as tunnel:
                with pytest.raises(ResponseTimeoutError):
                    await tunnel.request(HttpRequestSpec())

                assert tunnel.state == TunnelState.CLOSED
                with pytest.raises(NotConnectedError):
                    await tunnel.request(HttpRequestSpec())

    @pytest.mark.asyncio
    async def test_stats_after_request(self):
        async with FakeRouter(reply=route_reply(0), response_parts=HELLO_PARTS) as router:
            async with open_tunnel(router.route, TARGET, FAST) as tunnel:
                await tunnel.request(HttpRequestSpec())
                stats = tunnel.get_stats()

        assert stats["reply"] == "established"
        assert stats["send_count"] == 2
        assert stats["target"] == "10.0.0.5:8000"


class TestIndependentTunnels:

    @pytest.mark.asyncio
    async def test_concurrent_tunnels_do_not_interfere(self):
        first_parts = [b"HTTP/1.1 200 OK\r\nContent-Length: 5\r\n\r\nfirst"]
        second_parts = [b"HTTP/1.1 404 Not Found\r\nContent-Length: 6\r\n\r\nsecond"]
        async with FakeRouter(reply=route_reply(0), response_parts=first_parts) as one:
            async with FakeRouter(reply=route_reply(0), response_parts=second_parts) as two:
                first, second = await asyncio.gather(
                    perform_tunneled_request(one.route, TARGET, HttpRequestSpec(), FAST),
                    perform_tunneled_request(
                        two.route,
                        TunnelTarget(target_host="10.0.0.6", target_port=9000),
                        HttpRequestSpec(),
                        FAST,
                    ),
                )

        assert first.body == b"first"
        assert second.status_code == 404
        assert second.ok is False
        assert two.route_packets == [encode_route_packet("10.0.0.6", 9000)]


class TestResolveRoute:

    def test_descriptor_passes_through(self):
        descriptor = resolve_route("/H/router/S/3298")

        assert isinstance(descriptor, RouteDescriptor)
        assert resolve_route(descriptor) is descriptor
