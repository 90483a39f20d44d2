"""Command-line helpers to complete or revoke the Google OAuth grant."""

from __future__ import annotations

import asyncio

from loguru import logger

from .auth import AuthSettings, build_oauth_manager, check_client_secret


async def run_authorization(settings: AuthSettings | None = None) -> None:
    """Run one authorization session to completion from the terminal."""
    settings = settings or AuthSettings()
    check_client_secret(settings)
    manager = build_oauth_manager(settings)
    try:
        await manager.initiate_authorization()
        logger.info(f"Tokens stored in {manager.store.path}")
    finally:
        await manager.shutdown()


async def run_logout(settings: AuthSettings | None = None) -> None:
    manager = build_oauth_manager(settings)
    try:
        manager.clear_tokens()
    finally:
        await manager.shutdown()


def main() -> None:
    asyncio.run(run_authorization())


if __name__ == "__main__":
    main()
