"""Command-line entrypoint for running the symbol cache proxy."""

from __future__ import annotations

import argparse
from typing import Any, Optional, Sequence

import uvicorn

from ..common.settings import SymbolProxySettings
from .app import create_app


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Caching reverse proxy for debug symbol servers")
    parser.add_argument("--host", help="Address to bind (default from SYMCACHE_BIND_HOST)")
    parser.add_argument("--port", type=int, help="Port to bind (default from SYMCACHE_BIND_PORT)")
    parser.add_argument("--cache-root", help="Directory holding cached symbols")
    parser.add_argument(
        "--upstream",
        action="append",
        dest="upstreams",
        help="Upstream symbol server as URL or name=URL; repeat in priority order",
    )
    parser.add_argument("--log-level", help="Log level (DEBUG, INFO, WARNING, ...)")
    return parser.parse_args(argv)


def build_settings(args: argparse.Namespace) -> SymbolProxySettings:
    overrides: dict[str, Any] = {}
    if args.host:
        overrides["bind_host"] = args.host
    if args.port is not None:
        overrides["bind_port"] = args.port
    if args.cache_root:
        overrides["cache_root"] = args.cache_root
    if args.upstreams:
        overrides["upstreams"] = args.upstreams
    if args.log_level:
        overrides["log_level"] = args.log_level
    return SymbolProxySettings(**overrides)


def main(argv: Optional[Sequence[str]] = None) -> None:
    settings = build_settings(parse_args(argv))
    app = create_app(settings)
    uvicorn.run(app, host=settings.bind_host, port=settings.bind_port, log_config=None)


if __name__ == "__main__":
    main()
