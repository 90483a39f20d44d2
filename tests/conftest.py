from __future__ import annotations

import os
from pathlib import Path

import pytest

from gcal_mcp.crypto import CryptoEngine
from gcal_mcp.token_store import CredentialStore

IDENTITY = "default-user"


class FakeClock:
    """Manually advanced clock returning seconds since the epoch."""

    def __init__(self, start: float = 1_700_000_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def key() -> bytes:
    return os.urandom(32)


@pytest.fixture
def crypto(key: bytes) -> CryptoEngine:
    return CryptoEngine(key)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def tokens_path(tmp_path: Path) -> Path:
    return tmp_path / "config" / "tokens.json"


@pytest.fixture
def make_store(tokens_path: Path, crypto: CryptoEngine, clock: FakeClock):
    def _make(path: Path | None = None) -> CredentialStore:
        return CredentialStore(path or tokens_path, crypto, identity=IDENTITY, clock=clock)

    return _make


@pytest.fixture
def store(make_store) -> CredentialStore:
    return make_store()
