"""Encryption at rest for provider access tokens.

AES-256-GCM with a random 12-byte nonce per value. The stored blob is
base64(nonce + ciphertext + tag), so two encryptions of the same token never
compare equal. A blob sealed under another key fails authentication instead of
decrypting to garbage.
"""

from __future__ import annotations

import base64
import binascii
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM

NONCE_SIZE = 12
KEY_SIZE = 32


class CredentialVaultError(Exception):
    pass


class CredentialDecryptionError(CredentialVaultError):
    pass


def generate_key_hex() -> str:
    return os.urandom(KEY_SIZE).hex()


class CredentialVault:
    def __init__(self, key_hex: str) -> None:
        """Load the process-wide key.

        Raises:
            CredentialVaultError: If the key is missing or not 32 bytes of hex.
        """
        if not key_hex:
            raise CredentialVaultError(
                "CREDENTIAL_ENCRYPTION_KEY not configured. Generate with: openssl rand -hex 32"
            )
        try:
            key = bytes.fromhex(key_hex)
        except ValueError as exc:
            raise CredentialVaultError("CREDENTIAL_ENCRYPTION_KEY must be hex encoded") from exc
        if len(key) != KEY_SIZE:
            raise CredentialVaultError(
                "CREDENTIAL_ENCRYPTION_KEY must be 32 bytes hex (64 hex chars)"
            )
        self._aesgcm = AESGCM(key)

    def encrypt(self, plaintext: str) -> str:
        nonce = os.urandom(NONCE_SIZE)
        ciphertext = self._aesgcm.encrypt(nonce, plaintext.encode("utf-8"), None)
        return base64.b64encode(nonce + ciphertext).decode("ascii")

    def decrypt(self, blob: str) -> str:
        """Decrypt a blob produced by :meth:`encrypt`.

        Raises:
            CredentialDecryptionError: On malformed input, tampering, or a key mismatch.
        """
        try:
            data = base64.b64decode(blob.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError, AttributeError) as exc:
            raise CredentialDecryptionError("encrypted credential is not valid base64") from exc
        if len(data) <= NONCE_SIZE:
            raise CredentialDecryptionError("encrypted credential is truncated")
        nonce, ciphertext = data[:NONCE_SIZE], data[NONCE_SIZE:]
        try:
            plaintext = self._aesgcm.decrypt(nonce, ciphertext, None)
        except InvalidTag as exc:
            raise CredentialDecryptionError(
                "encrypted credential failed authentication (wrong key or tampered)"
            ) from exc
        return plaintext.decode("utf-8")
