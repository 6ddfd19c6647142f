"""AES-256-GCM encryption for credentials stored at rest.

Ciphertext format: ``base64(iv):base64(data):base64(tag)``.
The key comes from ``ALPSCI_ENCRYPTION_KEY`` (64 hex characters).
Generate one with ``openssl rand -hex 32``.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

_ENV_KEY = "ALPSCI_ENCRYPTION_KEY"
_IV_LENGTH = 16
_TAG_LENGTH = 16


class DecryptionError(ValueError):
    """Raised when a ciphertext is malformed or fails authentication."""


def _get_key() -> bytes:
    key = os.environ.get(_ENV_KEY)
    if not key:
        raise RuntimeError(
            f"{_ENV_KEY} environment variable is not set. Generate with: openssl rand -hex 32"
        )
    if len(key) != 64:
        raise RuntimeError(f"{_ENV_KEY} must be 64 hex characters (32 bytes)")
    try:
        return bytes.fromhex(key)
    except ValueError as exc:
        raise RuntimeError(f"{_ENV_KEY} must be 64 hex characters (32 bytes)") from exc


def encrypt(plaintext: str) -> str:
    """Encrypt *plaintext* and return the ``iv:data:tag`` string."""
    aes = AESGCM(_get_key())
    iv = os.urandom(_IV_LENGTH)
    sealed = aes.encrypt(iv, plaintext.encode("utf-8"), None)
    data, tag = sealed[:-_TAG_LENGTH], sealed[-_TAG_LENGTH:]
    return ":".join(base64.b64encode(part).decode("ascii") for part in (iv, data, tag))


def decrypt(ciphertext: str) -> str:
    """Decrypt a string produced by :func:`encrypt`.

    Raises :class:`DecryptionError` for malformed or tampered input and
    ``RuntimeError`` when the key is missing or invalid.
    """
    parts = ciphertext.split(":")
    if len(parts) != 3:
        raise DecryptionError("invalid ciphertext format, expected iv:data:tag")

    key = _get_key()
    try:
        iv, data, tag = (base64.b64decode(part, validate=True) for part in parts)
        plaintext = AESGCM(key).decrypt(iv, data + tag, None)
    except (binascii.Error, InvalidTag, ValueError) as exc:
        raise DecryptionError(f"decryption failed: {type(exc).__name__}") from exc
    return plaintext.decode("utf-8")
