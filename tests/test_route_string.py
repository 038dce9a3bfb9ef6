"""
Tests for the route string parser.
"""
import pytest

from niroute.engine.route_string import parse_route_string
from niroute.exceptions import InvalidRouteFormatError


class TestSingleHop:
    """Plain /H/host[/S/port] descriptors."""

    @pytest.mark.parametrize(
        "route, host, port",
        [
            ("/H/203.0.113.9/S/3299", "203.0.113.9", 3299),
            ("/H/router.example.com/S/3298", "router.example.com", 3298),
            ("/H/10.1.1.1/S/1", "10.1.1.1", 1),
            ("/H/10.1.1.1/S/65535", "10.1.1.1", 65535),
        ],
    )
    def test_host_and_port(self, route, host, port):
        descriptor = parse_route_string(route)

        assert descriptor.router_host == host
        assert descriptor.router_port == port
        assert descriptor.is_multi_hop is False

    def test_port_defaults_to_3299(self):
        descriptor = parse_route_string("/H/54.75.63.76")

        assert descriptor.router_host == "54.75.63.76"
        assert descriptor.router_port == 3299

    def test_default_port_override(self):
        descriptor = parse_route_string("/H/router", default_port=3298)
        assert descriptor.router_port == 3298

    def test_trailing_slash_and_lowercase_letters(self):
        descriptor = parse_route_string("/h/router/s/3299/")

        assert descriptor.router_host == "router"
        assert descriptor.router_port == 3299

    def test_password_segment_is_skipped(self):
        descriptor = parse_route_string("/H/router/S/3299/W/secret")

        assert descriptor.router_host == "router"
        assert descriptor.router_port == 3299
        assert len(descriptor.hops) == 1

    def test_descriptor_is_immutable(self):
        descriptor = parse_route_string("/H/router")

        with pytest.raises(Exception):
            descriptor.hops = ()


class TestMultiHop:
    """Chained descriptors keep every hop; the first is the router."""

    def test_first_hop_is_router(self):
        descriptor = parse_route_string("/H/gw.example/S/3299/H/inner.example/S/3298/H/10.0.0.5")

        assert descriptor.router_host == "gw.example"
        assert descriptor.router_port == 3299
        assert descriptor.is_multi_hop is True
        assert [(hop.host, hop.port) for hop in descriptor.hops] == [
            ("gw.example", 3299),
            ("inner.example", 3298),
            ("10.0.0.5", 3299),
        ]

    def test_service_belongs_to_preceding_host(self):
        descriptor = parse_route_string("/H/first/H/second/S/4000")

        assert descriptor.hops[0].port == 3299
        assert descriptor.hops[1].port == 4000


class TestInvalidRoutes:
    """Descriptors that must fail before any I/O."""

    @pytest.mark.parametrize(
        "route",
        [
            "",
            "router.example.com",
            "/S/3299",
            "/W/secret",
            "/H/",
        ],
    )
    def test_missing_host(self, route):
        with pytest.raises(InvalidRouteFormatError) as exc_info:
            parse_route_string(route)

        assert exc_info.value.details["phase"] == "parse"

    @pytest.mark.parametrize("route", ["/H/router/S/sapdp99", "/H/router/S/0", "/H/router/S/70000"])
    def test_unusable_port(self, route):
        with pytest.raises(InvalidRouteFormatError):
            parse_route_string(route)
