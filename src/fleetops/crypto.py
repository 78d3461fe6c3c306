"""Symmetric encryption for stored host secrets.

Secrets are stored as ``iv:tag:ciphertext`` with each part hex encoded,
encrypted with AES-256-GCM under a 32 character key. The core only needs
:meth:`SecretCipher.decrypt`; :meth:`SecretCipher.encrypt` exists for
tooling and tests that need to produce stored values.
"""

import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

from .exceptions import ConfigurationError, DecryptionError

KEY_LENGTH = 32
IV_LENGTH = 16
TAG_LENGTH = 16


class SecretCipher:
    """AES-256-GCM codec for secret fields.

    Example:
        >>> cipher = SecretCipher("0123456789abcdef0123456789abcdef")
        >>> token = cipher.encrypt("s3cret")
        >>> cipher.decrypt(token)
        's3cret'
    """

    def __init__(self, key: str) -> None:
        if not key or len(key) != KEY_LENGTH:
            raise ConfigurationError(
                f"Encryption key must be exactly {KEY_LENGTH} characters long"
            )
        raw = key.encode("utf-8")
        if len(raw) != KEY_LENGTH:
            raise ConfigurationError("Encryption key must be ASCII")
        self._aead = AESGCM(raw)

    def encrypt(self, plaintext: str) -> str:
        """Encrypt a string into the stored ``iv:tag:ciphertext`` format."""
        iv = os.urandom(IV_LENGTH)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-TAG_LENGTH], sealed[-TAG_LENGTH:]
        return f"{iv.hex()}:{tag.hex()}:{ciphertext.hex()}"

    def decrypt(self, token: str) -> str:
        """Decrypt a stored ``iv:tag:ciphertext`` value.

        Raises:
            DecryptionError: If the value is malformed or fails authentication
        """
        parts = token.split(":")
        if len(parts) != 3:
            raise DecryptionError("Invalid encrypted text format")

        try:
            iv, tag, ciphertext = (bytes.fromhex(part) for part in parts)
        except ValueError as e:
            raise DecryptionError(f"Invalid encrypted text encoding: {e}") from e

        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except (InvalidTag, ValueError) as e:
            raise DecryptionError("Secret failed authentication; wrong key or corrupted value") from e

        return plaintext.decode("utf-8")
