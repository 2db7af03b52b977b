"""
Token encryption for stored OAuth credentials.

AES-256-GCM with a key derived as SHA-256 of ``ENCRYPTION_SECRET``.
Ciphertexts are stored as ``"<iv hex>:<auth tag hex>:<ciphertext hex>"``.
"""

import hashlib
import logging
import os
from typing import Optional

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

import config

logger = logging.getLogger(__name__)

_IV_BYTES = 12
_TAG_BYTES = 16


class TokenDecryptionError(ValueError):
    """Stored token could not be decrypted (bad format, wrong key, or tampered)."""


def _derive_key(secret: Optional[str]) -> bytes:
    secret = secret if secret is not None else config.ENCRYPTION_SECRET
    if not secret:
        raise RuntimeError("ENCRYPTION_SECRET is not configured")
    return hashlib.sha256(secret.encode("utf-8")).digest()


def encrypt_token(plaintext: str, secret: Optional[str] = None) -> str:
    """Encrypt *plaintext* and return the ``iv:tag:ciphertext`` hex string."""
    iv = os.urandom(_IV_BYTES)
    sealed = AESGCM(_derive_key(secret)).encrypt(iv, plaintext.encode("utf-8"), None)
    # cryptography appends the tag; store it as its own segment
    ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
    return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"


def decrypt_token(value: str, secret: Optional[str] = None) -> str:
    """Reverse of ``encrypt_token``.  Raises ``TokenDecryptionError`` on failure."""
    parts = (value or "").split(":")
    if len(parts) != 3:
        raise TokenDecryptionError("Invalid encrypted token format")
    try:
        iv, tag, ciphertext = (bytes.fromhex(p) for p in parts)
    except ValueError as e:
        raise TokenDecryptionError("Encrypted token is not valid hex") from e
    if len(iv) != _IV_BYTES or len(tag) != _TAG_BYTES:
        raise TokenDecryptionError("Invalid encrypted token format")

    try:
        plaintext = AESGCM(_derive_key(secret)).decrypt(iv, ciphertext + tag, None)
    except InvalidTag as e:
        logger.warning("Token decryption failed: authentication tag mismatch")
        raise TokenDecryptionError("Failed to decrypt token") from e
    return plaintext.decode("utf-8")
