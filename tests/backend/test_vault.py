from __future__ import annotations

import base64

import pytest

from backend.app.services.vault import (
    CredentialDecryptionError,
    CredentialVault,
    CredentialVaultError,
    generate_key_hex,
)
from tests.backend.helpers import TEST_ENCRYPTION_KEY


@pytest.mark.parametrize("plaintext", ["EAAG-token", "", "tökén with ünicode", "x" * 4096])
def test_encrypt_round_trip_uses_fresh_nonce(plaintext: str) -> None:
    vault = CredentialVault(TEST_ENCRYPTION_KEY)

    first = vault.encrypt(plaintext)
    second = vault.encrypt(plaintext)

    assert first != second
    assert vault.decrypt(first) == plaintext
    assert vault.decrypt(second) == plaintext


def test_blob_layout_is_nonce_then_ciphertext_and_tag() -> None:
    blob = CredentialVault(TEST_ENCRYPTION_KEY).encrypt("abc")

    raw = base64.b64decode(blob)

    assert len(raw) == 12 + 3 + 16


def test_other_key_cannot_decrypt() -> None:
    blob = CredentialVault(TEST_ENCRYPTION_KEY).encrypt("secret")

    with pytest.raises(CredentialDecryptionError):
        CredentialVault(generate_key_hex()).decrypt(blob)


def test_tampered_blob_fails_authentication() -> None:
    vault = CredentialVault(TEST_ENCRYPTION_KEY)
    raw = bytearray(base64.b64decode(vault.encrypt("secret")))
    raw[-1] ^= 0x01

    with pytest.raises(CredentialDecryptionError):
        vault.decrypt(base64.b64encode(bytes(raw)).decode("ascii"))


@pytest.mark.parametrize("blob", ["not base64!", base64.b64encode(b"short").decode("ascii")])
def test_malformed_blob_is_rejected(blob: str) -> None:
    with pytest.raises(CredentialDecryptionError):
        CredentialVault(TEST_ENCRYPTION_KEY).decrypt(blob)


@pytest.mark.parametrize("key", ["", "zz" * 32, "ab" * 16])
def test_bad_key_configuration_is_rejected(key: str) -> None:
    with pytest.raises(CredentialVaultError):
        CredentialVault(key)


def test_generated_keys_are_usable() -> None:
    key = generate_key_hex()

    assert len(key) == 64
    assert CredentialVault(key).decrypt(CredentialVault(key).encrypt("ok")) == "ok"
