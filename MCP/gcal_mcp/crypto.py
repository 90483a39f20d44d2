"""AES-256-GCM encryption for tokens persisted by the credential store."""

from __future__ import annotations

import os
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from loguru import logger

KEY_LENGTH_BYTES = 32  # 256 bits

# 16-byte IVs keep blobs written by earlier releases decryptable.
IV_LENGTH_BYTES = 16
TAG_LENGTH_BYTES = 16


class DecryptionError(RuntimeError):
    """Raised when a blob is malformed or fails authentication."""


class KeyResolutionError(RuntimeError):
    """Raised when an externally supplied key is not 64 hex characters."""


def _parse_hex_key(value: str) -> bytes | None:
    value = value.strip()
    if len(value) != KEY_LENGTH_BYTES * 2:
        return None
    try:
        return bytes.fromhex(value)
    except ValueError:
        return None


def resolve_encryption_key(key_file: Path, override: str | None = None) -> bytes:
    """
    Return the process-wide encryption key.

    Resolution order: the ``override`` hex string, then a key previously
    written to ``key_file``, then a fresh random key which is persisted to
    ``key_file`` with owner-only permissions for future runs.

    Raises:
        KeyResolutionError: If ``override`` is given but is not a valid key.
    """
    if override:
        key = _parse_hex_key(override)
        if key is None:
            raise KeyResolutionError(
                "TOKEN_ENCRYPTION_KEY must be 64 hexadecimal characters (32 bytes)."
            )
        logger.info("Using encryption key from environment variable")
        return key

    if key_file.exists():
        try:
            key = _parse_hex_key(key_file.read_text(encoding="utf-8"))
        except OSError as exc:
            logger.warning(f"Failed to read encryption key from {key_file}, generating new one: {exc}")
        else:
            if key is not None:
                logger.info("Loaded encryption key from file")
                return key
            logger.warning("Invalid encryption key in file, generating new one")

    key = os.urandom(KEY_LENGTH_BYTES)
    try:
        key_file.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(key_file, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
        with os.fdopen(fd, "w", encoding="utf-8") as handle:
            handle.write(key.hex())
        logger.info(f"Generated new encryption key and saved to {key_file}")
    except OSError as exc:
        # Tokens stored with this key will not survive a restart.
        logger.error(f"Failed to save encryption key to {key_file}: {exc}")
    return key


class CryptoEngine:
    """Encrypts strings into ``iv:tag:ciphertext`` hex blobs and back."""

    def __init__(self, key: bytes) -> None:
        if len(key) != KEY_LENGTH_BYTES:
            raise ValueError(f"Encryption key must be {KEY_LENGTH_BYTES} bytes.")
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(IV_LENGTH_BYTES)
        sealed = self._aesgcm.encrypt(iv, plaintext.encode("utf-8"), None)
        # AESGCM appends the tag to the ciphertext.
        ciphertext, tag = sealed[:-TAG_LENGTH_BYTES], sealed[-TAG_LENGTH_BYTES:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, blob: str) -> str:
        """
        Decrypt a blob produced by :meth:`encrypt`.

        Raises:
            DecryptionError: If the blob is malformed, was produced with another
                key, or has been tampered with.
        """
        parts = blob.split(":")
        if len(parts) != 3:
            raise DecryptionError("Encrypted blob must have exactly three components.")
        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as exc:
            raise DecryptionError("Encrypted blob is not valid hex.") from exc
        if len(iv) != IV_LENGTH_BYTES or len(tag) != TAG_LENGTH_BYTES:
            raise DecryptionError("Encrypted blob has an invalid IV or tag length.")

        try:
            plaintext = self._aesgcm.decrypt(iv, ciphertext + tag, None)
        except InvalidTag as exc:
            raise DecryptionError("Encrypted blob failed authentication.") from exc
        try:
            return plaintext.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise DecryptionError("Decrypted token is not valid UTF-8.") from exc
