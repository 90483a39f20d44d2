from __future__ import annotations

import pytest

from gcal_mcp.__main__ import build_parser
from gcal_mcp.auth import AuthSettings, CredentialConfigurationError, build_oauth_manager
from gcal_mcp.authorize import run_authorization, run_logout


@pytest.fixture
def settings(tmp_path) -> AuthSettings:
    return AuthSettings(
        client_secret=tmp_path / "google_secret.json",
        config_dir=tmp_path / "config",
        encryption_key=None,
    )


def test_parser_defaults_to_serve() -> None:
    args = build_parser().parse_args([])
    assert args.command is None

    args = build_parser().parse_args(["serve", "--port", "9100"])
    assert (args.command, args.port) == ("serve", 9100)


async def test_authorize_requires_client_secret(settings) -> None:
    with pytest.raises(CredentialConfigurationError, match="google_secret.json"):
        await run_authorization(settings)


async def test_logout_removes_stored_tokens(settings) -> None:
    manager = build_oauth_manager(settings)
    manager.store.store_tokens("access", None, "refresh")
    await manager.shutdown()

    await run_logout(settings)

    reopened = build_oauth_manager(settings)
    try:
        assert not reopened.has_stored_credentials()
    finally:
        await reopened.shutdown()
    assert (settings.config_dir / "encryption-key.txt").exists()
