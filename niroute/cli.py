"""
Command-line client

Sends one HTTP request to a destination behind a router and prints the
response:

    niroute-request --route /H/203.0.113.9/S/3299 \\
        --target-host 10.0.0.5 --target-port 8000 --path /sap/bc/ping --user DEVELOPER
"""
import argparse
import asyncio
import base64
import getpass
import logging
import sys
from typing import Dict, List, Optional

from niroute.engine.lifecycle import perform_tunneled_request
from niroute.engine.tunnel import build_ssl_context
from niroute.exceptions import RouterTunnelError
from niroute.logging import setup_logging
from niroute.models import HttpRequestSpec, HttpResponse, TunnelTarget, TunnelTimeouts


def parse_header(raw: str) -> tuple:
    """Split a ``Key: Value`` argument."""
    key, sep, value = raw.partition(":")
    if not sep or not key.strip():
        raise argparse.ArgumentTypeError(f"header must look like 'Key: Value', got {raw!r}")
    return key.strip(), value.strip()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="HTTP request through a route-request router")
    parser.add_argument(
        "--route",
        required=True,
        help="Router route string, e.g. /H/router.example/S/3299",
    )
    parser.add_argument(
        "--target-host",
        required=True,
        help="Destination host as seen from the router",
    )
    parser.add_argument(
        "--target-port",
        type=int,
        required=True,
        help="Destination port",
    )
    parser.add_argument(
        "--tls",
        action="store_true",
        help="Speak HTTPS to the destination through the tunnel",
    )
    parser.add_argument(
        "--insecure",
        action="store_true",
        help="Skip TLS certificate verification",
    )
    parser.add_argument(
        "-X", "--method",
        default="GET",
        help="HTTP method",
    )
    parser.add_argument(
        "--path",
        default="/",
        help="Request path",
    )
    parser.add_argument(
        "-H", "--header",
        action="append",
        type=parse_header,
        default=[],
        help="Extra request header 'Key: Value' (repeatable)",
    )
    parser.add_argument(
        "--data",
        help="Request body",
    )
    parser.add_argument(
        "--user",
        help="Username for HTTP Basic authorization (password is prompted)",
    )
    parser.add_argument(
        "--connect-timeout",
        type=int,
        help="Router connect timeout (ms)",
    )
    parser.add_argument(
        "--grace",
        type=int,
        help="How long to wait for a route reply before assuming success (ms)",
    )
    parser.add_argument(
        "--timeout",
        type=int,
        help="Response timeout (ms)",
    )
    parser.add_argument(
        "--allow-multi-hop",
        action="store_true",
        help="Dial the first hop of a chained route string instead of rejecting it",
    )
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Debug logging",
    )
    return parser


def build_request(args: argparse.Namespace, password: Optional[str] = None) -> HttpRequestSpec:
    headers: Dict[str, str] = dict(args.header)
    if args.user:
        token = base64.b64encode(f"{args.user}:{password or ''}".encode("utf-8")).decode("ascii")
        headers["Authorization"] = f"Basic {token}"
    body = args.data.encode("utf-8") if args.data is not None else None
    return HttpRequestSpec(method=args.method, path=args.path, headers=headers, body=body)


def build_timeouts(args: argparse.Namespace) -> TunnelTimeouts:
    overrides = {
        "connect_ms": args.connect_timeout,
        "handshake_grace_ms": args.grace,
        "response_ms": args.timeout,
    }
    return TunnelTimeouts(**{key: value for key, value in overrides.items() if value is not None})


def render_response(response: HttpResponse) -> str:
    lines: List[str] = [f"HTTP/{response.http_version} {response.status_code} {response.reason}".rstrip()]
    lines.extend(f"{key}: {value}" for key, value in response.headers.items())
    lines.append("")
    lines.append(response.text)
    return "\n".join(lines)


async def main(argv: Optional[List[str]] = None) -> int:
    """Main entry point"""
    args = build_parser().parse_args(argv)
    setup_logging("cli", level=logging.DEBUG if args.verbose else logging.WARNING, log_to_file=False)

    password = getpass.getpass(f"Password for {args.user}: ") if args.user else None

    try:
        target = TunnelTarget(
            target_host=args.target_host,
            target_port=args.target_port,
            use_tls=args.tls,
        )
        request = build_request(args, password)
        timeouts = build_timeouts(args)
    except ValueError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    ssl_context = build_ssl_context(verify=not args.insecure) if args.tls else None

    try:
        response = await perform_tunneled_request(
            args.route,
            target,
            request,
            timeouts,
            ssl_context=ssl_context,
            allow_multi_hop=args.allow_multi_hop or None,
        )
    except RouterTunnelError as e:
        print(f"error: {e.message}", file=sys.stderr)
        for key, value in e.details.items():
            if value is not None:
                print(f"  {key}: {value}", file=sys.stderr)
        return 1

    print(render_response(response))
    return 0


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
