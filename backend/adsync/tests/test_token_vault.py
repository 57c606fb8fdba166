"""Unit tests for the Fernet token vault."""

import pytest
from cryptography.fernet import Fernet

from adsync.security import (
    EncryptionUnavailableError,
    TokenDecryptionError,
    TokenVault,
)


def test_store_then_reveal_returns_original_token():
    vault = TokenVault(Fernet.generate_key().decode())

    sealed = vault.store("ws-1", "EAAB-secret")

    assert sealed.encrypted is True
    assert sealed.value != "EAAB-secret"
    assert vault.reveal(sealed.value, encrypted=True) == "EAAB-secret"


def test_reveal_with_other_key_raises_decryption_error():
    sealed = TokenVault(Fernet.generate_key().decode()).store("ws-1", "EAAB-secret")
    other = TokenVault(Fernet.generate_key().decode())

    with pytest.raises(TokenDecryptionError):
        other.reveal(sealed.value)


def test_tampered_ciphertext_raises_decryption_error():
    vault = TokenVault(Fernet.generate_key().decode())
    sealed = vault.store("ws-1", "EAAB-secret")

    with pytest.raises(TokenDecryptionError):
        vault.reveal(sealed.value[:-4] + "AAAA")


@pytest.mark.parametrize("key", [None, "", "not-a-key", "c2hvcnQ="])
def test_missing_or_malformed_key_disables_encryption(key):
    vault = TokenVault(key)

    assert vault.encryption_available is False
    with pytest.raises(EncryptionUnavailableError):
        vault.store("ws-1", "EAAB-secret")


def test_plaintext_storage_requires_explicit_opt_in():
    """WHAT: Without a key, plaintext storage only happens when allowed
    WHY: A misconfigured deployment must not silently persist raw tokens
    """
    vault = TokenVault(None)

    sealed = vault.store("ws-1", "EAAB-secret", allow_plaintext=True)

    assert sealed.encrypted is False
    assert vault.reveal(sealed.value, encrypted=False) == "EAAB-secret"


def test_encrypted_value_cannot_be_revealed_without_key():
    sealed = TokenVault(Fernet.generate_key().decode()).store("ws-1", "EAAB-secret")

    with pytest.raises(EncryptionUnavailableError):
        TokenVault(None).reveal(sealed.value, encrypted=True)


def test_empty_token_rejected():
    vault = TokenVault(Fernet.generate_key().decode())

    with pytest.raises(ValueError):
        vault.store("ws-1", "")
    with pytest.raises(ValueError):
        vault.reveal("")
