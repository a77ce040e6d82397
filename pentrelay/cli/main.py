#!/usr/bin/env python3
"""Command line entry point: `pentrelay serve`."""

import argparse
import dataclasses
import sys
from typing import List, Optional

from pentrelay import __version__
from pentrelay.base.config import RelayConfig, set_config


def run_server(args):
    """Start the websocket gateway under uvicorn."""
    if args.debug:
        set_config(dataclasses.replace(RelayConfig.from_env(), debug=True))

    # Imported late: the app reads the config (CORS origins) at import time
    from pentrelay.server import api

    api.serve(port=args.port, host=args.host)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pentrelay", description="Pentest relay gateway")
    parser.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Available commands")

    # Serve Command
    serve_parser = subparsers.add_parser("serve", help="Start the websocket gateway")
    serve_parser.add_argument("--host", help="Bind address (default: RELAY_API_HOST or 127.0.0.1)")
    serve_parser.add_argument("--port", type=int, help="Listen port (default: RELAY_API_PORT, PORT or 3001)")
    serve_parser.add_argument("--debug", action="store_true", help="Enable debug logging")
    serve_parser.set_defaults(func=run_server)

    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if hasattr(args, "func"):
        args.func(args)
        return 0
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
