"""CLI entry point for the Google Calendar MCP server."""

from __future__ import annotations

import argparse
import asyncio
import sys

import uvicorn
from dotenv import load_dotenv
from loguru import logger


def build_parser() -> argparse.ArgumentParser:
    from .config import DEFAULT_HOST, DEFAULT_PORT

    parser = argparse.ArgumentParser(
        prog="python -m gcal_mcp",
        description="Run the Google Calendar MCP server or manage its authorization.",
    )
    subparsers = parser.add_subparsers(dest="command")

    serve_parser = subparsers.add_parser("serve", help="Start the MCP server (default).")
    serve_parser.add_argument(
        "--host",
        default=DEFAULT_HOST,
        help=f"Host interface to bind (default: {DEFAULT_HOST}).",
    )
    serve_parser.add_argument(
        "--port",
        type=int,
        default=DEFAULT_PORT,
        help=f"TCP port to listen on (default: {DEFAULT_PORT}).",
    )

    subparsers.add_parser(
        "authorize",
        help="Run the interactive OAuth flow to grant Google Calendar access.",
    )
    subparsers.add_parser("logout", help="Delete the stored Google tokens.")

    return parser


def configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level)


async def serve(host: str, port: int) -> None:
    from .auth import build_oauth_manager
    from .server import create_app

    manager = build_oauth_manager()
    manager.store.start_sweeper()
    server = uvicorn.Server(
        uvicorn.Config(create_app(manager), host=host, port=port, log_level="info")
    )
    try:
        await server.serve()
    finally:
        await manager.shutdown()


def main(argv: list[str] | None = None) -> None:
    # Environment must be loaded before config reads it.
    load_dotenv(override=True)

    from .authorize import run_authorization, run_logout
    from .config import DEFAULT_HOST, DEFAULT_PORT, LOG_LEVEL

    configure_logging(LOG_LEVEL)
    parser = build_parser()
    args = parser.parse_args(argv)

    command = args.command or "serve"

    if command == "authorize":
        asyncio.run(run_authorization())
        return
    if command == "logout":
        asyncio.run(run_logout())
        return

    asyncio.run(
        serve(getattr(args, "host", DEFAULT_HOST), getattr(args, "port", DEFAULT_PORT))
    )


if __name__ == "__main__":
    main()
