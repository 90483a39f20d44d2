"""Tests for the encrypted on-disk credential store."""

from __future__ import annotations

import asyncio
import json
from datetime import timedelta
from unittest.mock import patch

import pytest

from gcal_mcp.crypto import CryptoEngine
from gcal_mcp.token_store import (
    IdentityTokenSet,
    TokenEncryptionError,
    TokenRecord,
    migrate_legacy_tokens,
)

IDENTITY = "default-user"
THIRTY_DAYS = timedelta(days=30)


def _read(path) -> dict:
    return json.loads(path.read_text(encoding="utf-8"))


class TestStoreAndGet:
    def test_store_then_get_returns_plaintext(self, store) -> None:
        store.store_tokens("access-1", timedelta(hours=1), "refresh-1")

        tokens = store.get_tokens()

        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert tokens.access_expires_at is not None

    def test_unknown_identity_reads_as_empty(self, store) -> None:
        tokens = store.get_tokens()

        assert tokens.access_token is None
        assert tokens.refresh_token is None

    def test_file_never_holds_plaintext(self, store, tokens_path) -> None:
        store.store_tokens("access-plain", None, "refresh-plain")

        raw = tokens_path.read_text(encoding="utf-8")
        assert "access-plain" not in raw
        assert "refresh-plain" not in raw
        entry = _read(tokens_path)[IDENTITY]
        assert entry["accessToken"]["value"].count(":") == 2
        assert isinstance(entry["refreshToken"]["expiresAt"], int)

    def test_default_ttls(self, store, tokens_path, clock) -> None:
        store.store_tokens("access", None, "refresh")

        entry = _read(tokens_path)[IDENTITY]
        now_ms = int(clock() * 1000)
        assert entry["accessToken"]["expiresAt"] == now_ms + 3600 * 1000
        assert entry["refreshToken"]["expiresAt"] == now_ms + 30 * 24 * 3600 * 1000

    def test_tokens_survive_reload(self, store, make_store) -> None:
        store.store_tokens("access", None, "refresh")

        reloaded = make_store().get_tokens()

        assert reloaded.access_token == "access"
        assert reloaded.refresh_token == "refresh"


class TestExpiry:
    def test_access_expires_independently_of_refresh(self, store, clock) -> None:
        store.store_tokens("access", timedelta(seconds=1), "refresh", THIRTY_DAYS)
        assert store.get_tokens().access_token == "access"

        clock.advance(1.1)

        tokens = store.get_tokens()
        assert tokens.access_token is None
        assert tokens.refresh_token == "refresh"

    def test_both_expired_removes_identity(self, store, clock, tokens_path) -> None:
        store.store_tokens("access", timedelta(seconds=1), "refresh", timedelta(seconds=2))

        clock.advance(2.1)

        tokens = store.get_tokens()
        assert tokens.access_token is None
        assert tokens.refresh_token is None
        assert IDENTITY not in _read(tokens_path)
        assert store.sweep_expired() == 0

    def test_sweep_drops_expired_records(self, store, clock, tokens_path) -> None:
        store.store_tokens("access", timedelta(seconds=1), "refresh", THIRTY_DAYS)
        clock.advance(5)

        assert store.sweep_expired() == 1

        entry = _read(tokens_path)[IDENTITY]
        assert "accessToken" not in entry
        assert "refreshToken" in entry

    def test_sweep_with_no_identities(self, store, tokens_path) -> None:
        assert store.sweep_expired() == 0
        assert not tokens_path.exists()

    def test_expired_records_dropped_at_load(self, store, make_store, clock, tokens_path) -> None:
        store.store_tokens("access", timedelta(seconds=1), "refresh", timedelta(seconds=1))
        clock.advance(10)

        make_store()

        assert _read(tokens_path) == {}


class TestMerge:
    def test_partial_stores_accumulate(self, store) -> None:
        store.store_tokens(access_token="access-only")
        store.store_tokens(refresh_token="refresh-only")

        tokens = store.get_tokens()
        assert tokens.access_token == "access-only"
        assert tokens.refresh_token == "refresh-only"

    def test_access_update_keeps_refresh(self, store) -> None:
        store.store_tokens("access-1", None, "refresh-1")
        store.store_tokens(access_token="access-2")

        tokens = store.get_tokens()
        assert tokens.access_token == "access-2"
        assert tokens.refresh_token == "refresh-1"

    def test_identity_token_set_merge(self) -> None:
        old = IdentityTokenSet(TokenRecord("a1", 1), TokenRecord("r1", 2))
        new = IdentityTokenSet(access_token=TokenRecord("a2", 3))

        merged = old.merge(new)

        assert merged.access_token == TokenRecord("a2", 3)
        assert merged.refresh_token == TokenRecord("r1", 2)


class TestRemove:
    def test_remove_clears_both_kinds(self, store, tokens_path) -> None:
        store.store_tokens("access", None, "refresh")

        store.remove_tokens()

        tokens = store.get_tokens()
        assert tokens.access_token is None
        assert tokens.refresh_token is None
        assert _read(tokens_path) == {}

    def test_remove_is_idempotent(self, store) -> None:
        store.remove_tokens()
        store.remove_tokens()

        assert store.get_tokens().access_token is None


class TestFailures:
    def test_corrupt_record_reads_as_absent(self, store, make_store, tokens_path) -> None:
        store.store_tokens("access", None, "refresh")
        data = _read(tokens_path)
        data[IDENTITY]["accessToken"]["value"] = "00:00:00"
        tokens_path.write_text(json.dumps(data), encoding="utf-8")

        tokens = make_store().get_tokens()

        assert tokens.access_token is None
        assert tokens.refresh_token == "refresh"

    def test_encryption_failure_raises_and_keeps_state(self, store) -> None:
        store.store_tokens("access-1", None, "refresh-1")

        with patch.object(CryptoEngine, "encrypt", side_effect=ValueError("boom")):
            with pytest.raises(TokenEncryptionError):
                store.store_tokens("access-2")

        assert store.get_tokens().access_token == "access-1"

    def test_write_failure_keeps_previous_state(self, store, tokens_path) -> None:
        store.store_tokens("access-1", None, "refresh-1")
        before = tokens_path.read_text(encoding="utf-8")

        with patch("gcal_mcp.token_store.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(TokenEncryptionError):
                store.store_tokens("access-2", None, "refresh-2")

        assert tokens_path.read_text(encoding="utf-8") == before
        tokens = store.get_tokens()
        assert tokens.access_token == "access-1"
        assert tokens.refresh_token == "refresh-1"
        assert [p.name for p in tokens_path.parent.iterdir()] == ["tokens.json"]

    def test_unreadable_file_starts_empty(self, make_store, tokens_path) -> None:
        tokens_path.parent.mkdir(parents=True)
        tokens_path.write_text("{not json", encoding="utf-8")

        assert make_store().get_tokens().access_token is None


class TestLegacyMigration:
    def test_migrates_and_rewrites_file(self, crypto, make_store, tokens_path, clock) -> None:
        expiry = int((clock() + 3600) * 1000)
        legacy = {
            "tokens": [
                [IDENTITY, crypto.encrypt("legacy-refresh")],
                [f"{IDENTITY}_access", crypto.encrypt("legacy-access")],
            ],
            "expirations": [
                [IDENTITY, expiry],
                [f"{IDENTITY}_access", expiry],
            ],
        }
        tokens_path.parent.mkdir(parents=True)
        tokens_path.write_text(json.dumps(legacy), encoding="utf-8")

        tokens = make_store().get_tokens()

        assert tokens.access_token == "legacy-access"
        assert tokens.refresh_token == "legacy-refresh"
        data = _read(tokens_path)
        assert "tokens" not in data
        assert "expirations" not in data
        assert set(data[IDENTITY]) == {"accessToken", "refreshToken"}

    def test_skips_identities_without_recoverable_tokens(self) -> None:
        migrated = migrate_legacy_tokens(
            {
                "tokens": [["orphan", "blob"], ["partial_access", "blob-a"]],
                "expirations": [["partial_access", 123]],
            }
        )

        assert list(migrated) == ["partial"]
        assert migrated["partial"].access_token == TokenRecord("blob-a", 123)
        assert migrated["partial"].refresh_token is None


class TestSweeper:
    async def test_sweeper_runs_periodically(self, store, clock) -> None:
        store.store_tokens("access", timedelta(seconds=1), "refresh", timedelta(seconds=1))
        clock.advance(5)

        store.start_sweeper(timedelta(milliseconds=10))
        await asyncio.sleep(0.05)
        await store.shutdown()

        assert store.sweep_expired() == 0
        assert store.get_tokens().refresh_token is None

    async def test_shutdown_without_sweeper(self, store) -> None:
        await store.shutdown()
