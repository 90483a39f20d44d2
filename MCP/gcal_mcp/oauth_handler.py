"""PKCE authorization URLs and code exchange for the Google OAuth flow."""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Iterable

from google_auth_oauthlib.flow import Flow
from loguru import logger

from .token_store import CredentialStore, TokenEncryptionError

PENDING_STATE_TTL = timedelta(minutes=10)


class CredentialConfigurationError(RuntimeError):
    """Raised when the client credentials file is missing or malformed."""


def ensure_file_exists(path: Path, error_cls: type[Exception]) -> None:
    if not path.exists():
        raise error_cls(f"Missing file: {path}. Please ensure the path is correct.")


def ttl_from_expiry(expiry: datetime | None) -> timedelta | None:
    """Convert a google-auth expiry (naive UTC) into a remaining lifetime."""
    if expiry is None:
        return None
    if expiry.tzinfo is None:
        expiry = expiry.replace(tzinfo=timezone.utc)
    remaining = expiry - datetime.now(timezone.utc)
    return remaining if remaining > timedelta(0) else None


@dataclass(frozen=True, slots=True)
class ExchangeResult:
    success: bool
    message: str


@dataclass(slots=True)
class _PendingFlow:
    identity: str
    flow: Flow
    manual: bool
    created_at: float


class OAuthHandler:
    """Generates authorization URLs and redeems the returned codes into the store."""

    def __init__(
        self,
        client_secret: Path,
        scopes: Iterable[str],
        store: CredentialStore,
    ) -> None:
        self._client_secret = client_secret
        self._scopes = list(scopes)
        self._store = store
        self._pending: dict[str, _PendingFlow] = {}

    def generate_auth_url(
        self, identity: str, redirect_uri: str, manual: bool = False
    ) -> tuple[str, str]:
        """
        Build a consent URL for ``identity`` and remember its flow by ``state``.

        Raises:
            CredentialConfigurationError: If the client secret cannot be found.
        """
        ensure_file_exists(self._client_secret, CredentialConfigurationError)
        self._discard_stale()

        flow = Flow.from_client_secrets_file(
            str(self._client_secret),
            scopes=self._scopes,
            redirect_uri=redirect_uri,
            autogenerate_code_verifier=True,
        )
        auth_url, state = flow.authorization_url(
            access_type="offline",
            prompt="consent",
            include_granted_scopes="true",
        )
        self._pending[state] = _PendingFlow(
            identity=identity, flow=flow, manual=manual, created_at=time.monotonic()
        )
        logger.debug(f"Generated {'manual ' if manual else ''}authorization URL for {identity}")
        return auth_url, state

    async def exchange_code_for_tokens(self, code: str, state: str) -> ExchangeResult:
        """Redeem ``code`` for the flow started with ``state`` and store the tokens."""
        self._discard_stale()
        pending = self._pending.pop(state, None)
        if pending is None:
            logger.warning("Rejected authorization callback with unknown or expired state")
            return ExchangeResult(False, "Invalid or expired authorization state.")

        try:
            await asyncio.to_thread(pending.flow.fetch_token, code=code)
        except Exception as exc:  # noqa: BLE001
            logger.error(f"Failed to exchange authorization code: {exc}")
            return ExchangeResult(False, f"Failed to exchange authorization code: {exc}")

        credentials = pending.flow.credentials
        if not credentials.token:
            return ExchangeResult(False, "Google did not return an access token.")

        try:
            self._store.store_tokens(
                access_token=credentials.token,
                access_ttl=ttl_from_expiry(credentials.expiry),
                refresh_token=credentials.refresh_token,
            )
        except TokenEncryptionError as exc:
            return ExchangeResult(False, f"Failed to store tokens: {exc}")

        if not credentials.refresh_token:
            logger.warning("Google did not return a refresh token; re-authorization will be needed")
        logger.info(f"Authorization code exchanged for {pending.identity}")
        return ExchangeResult(True, "Authentication successful.")

    def _discard_stale(self) -> None:
        cutoff = time.monotonic() - PENDING_STATE_TTL.total_seconds()
        for state in [s for s, p in self._pending.items() if p.created_at < cutoff]:
            del self._pending[state]
