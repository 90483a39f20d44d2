"""Encrypted, file-backed storage for OAuth access and refresh tokens."""

from __future__ import annotations

import asyncio
import json
import os
import tempfile
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Callable, Mapping

from loguru import logger

from .crypto import CryptoEngine, DecryptionError

ACCESS_TOKEN_TTL = timedelta(hours=1)
REFRESH_TOKEN_TTL = timedelta(days=30)
SWEEP_INTERVAL = timedelta(hours=1)

# Legacy stores kept the access token under "<identity>_access".
_LEGACY_ACCESS_SUFFIX = "_access"


class TokenEncryptionError(RuntimeError):
    """Raised when tokens cannot be encrypted or persisted."""


@dataclass(frozen=True, slots=True)
class TokenRecord:
    """An encrypted token and its absolute expiry in epoch milliseconds."""

    value: str
    expires_at: int

    def is_expired(self, now_ms: int) -> bool:
        return self.expires_at <= now_ms

    def to_dict(self) -> dict[str, Any]:
        return {"value": self.value, "expiresAt": self.expires_at}

    @classmethod
    def from_dict(cls, data: Any) -> TokenRecord | None:
        if not isinstance(data, Mapping):
            return None
        value = data.get("value")
        expires_at = data.get("expiresAt")
        if not isinstance(value, str) or not isinstance(expires_at, (int, float)):
            return None
        return cls(value=value, expires_at=int(expires_at))


@dataclass(frozen=True, slots=True)
class IdentityTokenSet:
    access_token: TokenRecord | None = None
    refresh_token: TokenRecord | None = None

    @property
    def is_empty(self) -> bool:
        return self.access_token is None and self.refresh_token is None

    def merge(self, other: IdentityTokenSet) -> IdentityTokenSet:
        """Return a copy where every record present in ``other`` replaces ours."""
        return IdentityTokenSet(
            access_token=other.access_token or self.access_token,
            refresh_token=other.refresh_token or self.refresh_token,
        )

    def without_expired(self, now_ms: int) -> IdentityTokenSet:
        return IdentityTokenSet(
            access_token=None
            if self.access_token and self.access_token.is_expired(now_ms)
            else self.access_token,
            refresh_token=None
            if self.refresh_token and self.refresh_token.is_expired(now_ms)
            else self.refresh_token,
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {}
        if self.access_token:
            payload["accessToken"] = self.access_token.to_dict()
        if self.refresh_token:
            payload["refreshToken"] = self.refresh_token.to_dict()
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> IdentityTokenSet:
        return cls(
            access_token=TokenRecord.from_dict(data.get("accessToken")),
            refresh_token=TokenRecord.from_dict(data.get("refreshToken")),
        )


@dataclass(frozen=True, slots=True)
class StoredTokens:
    """Plaintext tokens returned to callers; either may be ``None``."""

    access_token: str | None = None
    refresh_token: str | None = None
    access_expires_at: datetime | None = None


class CredentialStore:
    """
    Keeps encrypted tokens for one identity in memory and in a JSON file.

    Every mutating call rewrites the whole file. Expired records are dropped
    lazily on read and by :meth:`sweep_expired`, which also runs once at load
    time and hourly once :meth:`start_sweeper` has been called.
    """

    def __init__(
        self,
        path: Path,
        crypto: CryptoEngine,
        *,
        identity: str,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._path = path
        self._crypto = crypto
        self._identity = identity
        self._clock = clock
        self._tokens: dict[str, IdentityTokenSet] = {}
        self._sweeper: asyncio.Task[None] | None = None
        self._load()

    @property
    def path(self) -> Path:
        return self._path

    @property
    def identity(self) -> str:
        return self._identity

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    def store_tokens(
        self,
        access_token: str | None = None,
        access_ttl: timedelta | None = None,
        refresh_token: str | None = None,
        refresh_ttl: timedelta = REFRESH_TOKEN_TTL,
    ) -> None:
        """
        Encrypt and persist the supplied tokens, keeping any kind not supplied.

        Raises:
            TokenEncryptionError: If encryption or writing the file fails. The
                in-memory state is left exactly as it was.
        """
        now_ms = self._now_ms()
        try:
            update = IdentityTokenSet(
                access_token=self._seal(access_token, access_ttl or ACCESS_TOKEN_TTL, now_ms)
                if access_token
                else None,
                refresh_token=self._seal(refresh_token, refresh_ttl, now_ms)
                if refresh_token
                else None,
            )
            existing = self._tokens.get(self._identity, IdentityTokenSet())
            snapshot = dict(self._tokens)
            snapshot[self._identity] = existing.merge(update)
            self._write(snapshot)
        except Exception as exc:
            logger.error(f"Failed to encrypt and store tokens for {self._identity}: {exc}")
            raise TokenEncryptionError("Token encryption failed") from exc

        self._tokens = snapshot
        if update.access_token:
            logger.debug(
                f"Access token stored for {self._identity}, "
                f"expires {_format_ms(update.access_token.expires_at)}"
            )
        if update.refresh_token:
            logger.debug(
                f"Refresh token stored for {self._identity}, "
                f"expires {_format_ms(update.refresh_token.expires_at)}"
            )

    def get_tokens(self) -> StoredTokens:
        """Return the unexpired tokens for the identity, decrypting each one."""
        current = self._tokens.get(self._identity)
        if current is None:
            logger.debug(f"No tokens found for {self._identity}")
            return StoredTokens()

        now_ms = self._now_ms()
        remaining = current.without_expired(now_ms)
        if remaining.access_token is None and current.access_token is not None:
            logger.debug(f"Access token expired for {self._identity}")
        if remaining.refresh_token is None and current.refresh_token is not None:
            logger.debug(f"Refresh token expired for {self._identity}")

        if remaining.is_empty:
            del self._tokens[self._identity]
            self._persist()
            return StoredTokens()
        self._tokens[self._identity] = remaining

        access_token = self._open(remaining.access_token)
        return StoredTokens(
            access_token=access_token,
            refresh_token=self._open(remaining.refresh_token),
            access_expires_at=_ms_to_datetime(remaining.access_token.expires_at)
            if access_token is not None and remaining.access_token
            else None,
        )

    def remove_tokens(self) -> None:
        self._tokens.pop(self._identity, None)
        logger.debug(f"Tokens removed for {self._identity}")
        self._persist()

    def sweep_expired(self) -> int:
        """Drop expired records for every identity; return how many identities changed."""
        now_ms = self._now_ms()
        changed = 0
        for identity, tokens in list(self._tokens.items()):
            remaining = tokens.without_expired(now_ms)
            if remaining.is_empty:
                del self._tokens[identity]
                changed += 1
            elif remaining != tokens:
                self._tokens[identity] = remaining
                changed += 1

        if changed:
            self._persist()
            logger.info(f"Cleaned up expired tokens for {changed} identities")
        return changed

    def start_sweeper(self, interval: timedelta = SWEEP_INTERVAL) -> None:
        """Run :meth:`sweep_expired` every ``interval`` on the running event loop."""
        if self._sweeper is not None and not self._sweeper.done():
            return
        self._sweeper = asyncio.get_running_loop().create_task(
            self._sweep_periodically(interval.total_seconds())
        )

    async def _sweep_periodically(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            self.sweep_expired()

    async def shutdown(self) -> None:
        sweeper, self._sweeper = self._sweeper, None
        if sweeper is None:
            return
        sweeper.cancel()
        try:
            await sweeper
        except asyncio.CancelledError:
            pass
        logger.debug("Token sweeper stopped")

    def _seal(self, token: str, ttl: timedelta, now_ms: int) -> TokenRecord:
        return TokenRecord(
            value=self._crypto.encrypt(token),
            expires_at=now_ms + int(ttl.total_seconds() * 1000),
        )

    def _open(self, record: TokenRecord | None) -> str | None:
        if record is None:
            return None
        try:
            return self._crypto.decrypt(record.value)
        except DecryptionError as exc:
            logger.error(f"Failed to decrypt token for {self._identity}: {exc}")
            return None

    def _persist(self) -> None:
        try:
            self._write(self._tokens)
        except OSError as exc:
            logger.error(f"Failed to save tokens to {self._path}: {exc}")

    def _write(self, tokens: Mapping[str, IdentityTokenSet]) -> None:
        payload = {identity: entry.to_dict() for identity, entry in tokens.items()}
        self._path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self._path.parent, prefix=".tokens-", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2)
            os.replace(tmp_name, self._path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise
        logger.debug(f"Tokens saved to {self._path}")

    def _load(self) -> None:
        if not self._path.exists():
            logger.debug("No tokens file found, starting with empty tokens")
            return

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.error(f"Failed to load tokens from {self._path}: {exc}")
            return
        if not isinstance(data, dict):
            logger.error(f"Ignoring tokens file {self._path}: expected a JSON object")
            return

        if isinstance(data.get("tokens"), list):
            self._tokens = migrate_legacy_tokens(data)
            self._persist()
            logger.info("Migrated tokens file to the per-identity format")
        else:
            for identity, entry in data.items():
                if not isinstance(entry, dict):
                    continue
                tokens = IdentityTokenSet.from_dict(entry)
                if not tokens.is_empty:
                    self._tokens[identity] = tokens

        self.sweep_expired()
        logger.info(f"Loaded tokens for {len(self._tokens)} identities from file")


def migrate_legacy_tokens(data: Mapping[str, Any]) -> dict[str, IdentityTokenSet]:
    """
    Convert the legacy two-list store into per-identity token sets.

    The legacy file holds ``tokens`` and ``expirations`` as lists of
    ``[key, value]`` pairs, where ``key`` is the identity for the refresh token
    and ``<identity>_access`` for the access token. Identities without a token
    that has both a value and an expiry are skipped.
    """
    legacy_tokens = dict(_pairs(data.get("tokens")))
    legacy_expirations = dict(_pairs(data.get("expirations")))

    identities = dict.fromkeys(
        key[: -len(_LEGACY_ACCESS_SUFFIX)] if key.endswith(_LEGACY_ACCESS_SUFFIX) else key
        for key in legacy_tokens
    )

    migrated: dict[str, IdentityTokenSet] = {}
    for identity in identities:
        access_key = f"{identity}{_LEGACY_ACCESS_SUFFIX}"
        tokens = IdentityTokenSet(
            access_token=_legacy_record(legacy_tokens.get(access_key), legacy_expirations.get(access_key)),
            refresh_token=_legacy_record(legacy_tokens.get(identity), legacy_expirations.get(identity)),
        )
        if not tokens.is_empty:
            migrated[identity] = tokens
    return migrated


def _pairs(value: Any) -> list[tuple[str, Any]]:
    if not isinstance(value, list):
        return []
    return [
        (item[0], item[1])
        for item in value
        if isinstance(item, (list, tuple)) and len(item) == 2 and isinstance(item[0], str)
    ]


def _legacy_record(value: Any, expires_at: Any) -> TokenRecord | None:
    if not value or not isinstance(value, str) or not isinstance(expires_at, (int, float)):
        return None
    if not expires_at:
        return None
    return TokenRecord(value=value, expires_at=int(expires_at))


def _ms_to_datetime(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _format_ms(value: int) -> str:
    return _ms_to_datetime(value).isoformat()

