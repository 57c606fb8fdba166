"""Provider token encryption.

WHAT:
    TokenVault seals Meta access tokens with Fernet before they are
    persisted and reveals them when a sync needs to call the Graph API.

WHY:
    - Raw tokens must never land in the database or logs.
    - When no key is configured the caller gets EncryptionUnavailableError.
      Plaintext storage only happens when the caller passes
      allow_plaintext=True, and every such write is logged as a warning.

REFERENCES:
    - adsync/services/token_service.py (persists SealedToken on tokens rows)
    - backend/generate_keys.py (key generation)
"""

import base64
import binascii
import logging
import os
from dataclasses import dataclass
from functools import lru_cache
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

logger = logging.getLogger(__name__)


class EncryptionUnavailableError(RuntimeError):
    """Raised when no usable TOKEN_ENCRYPTION_KEY is configured."""


class TokenDecryptionError(ValueError):
    """Raised when stored ciphertext cannot be decrypted with the current key."""


@dataclass(frozen=True)
class SealedToken:
    """Storage form of a token. `encrypted` is False only for explicit plaintext."""

    value: str
    encrypted: bool


class TokenVault:
    """Symmetric encryption wrapper around Fernet for provider tokens.

    Usage:
        vault = get_token_vault()
        sealed = vault.store(workspace_id, raw_token)
        raw = vault.reveal(sealed.value, encrypted=sealed.encrypted)
    """

    def __init__(self, key: Optional[str]):
        self._cipher: Optional[Fernet] = None
        self.unavailable_reason: Optional[str] = None

        if not key:
            self.unavailable_reason = "TOKEN_ENCRYPTION_KEY is not set"
            return

        try:
            # Validate key length by decoding without keeping the key material around.
            if len(base64.urlsafe_b64decode(key.encode("utf-8"))) != 32:
                raise ValueError("key must decode to 32 bytes")
            self._cipher = Fernet(key)
        except (ValueError, TypeError, binascii.Error) as exc:
            self.unavailable_reason = (
                "TOKEN_ENCRYPTION_KEY must be a URL-safe base64-encoded 32-byte string "
                f"({exc})"
            )

    @property
    def encryption_available(self) -> bool:
        return self._cipher is not None

    def store(
        self,
        tenant: object,
        raw_token: str,
        *,
        context: str = "meta:access",
        allow_plaintext: bool = False,
    ) -> SealedToken:
        """Seal a token for storage.

        Args:
            tenant: Workspace id, used for log context only.
            raw_token: Plaintext access token.
            context: Friendly label for logs (provider/account).
            allow_plaintext: Accept plaintext storage when no key is configured.

        Raises:
            ValueError: Empty token.
            EncryptionUnavailableError: No key and plaintext was not allowed.
        """
        if not raw_token:
            raise ValueError("Cannot store empty token.")

        if self._cipher is None:
            if not allow_plaintext:
                raise EncryptionUnavailableError(self.unavailable_reason or "encryption unavailable")
            logger.warning(
                "[TOKEN_VAULT] Storing PLAINTEXT token for workspace=%s %s (%s)",
                tenant, context, self.unavailable_reason,
            )
            return SealedToken(value=raw_token, encrypted=False)

        ciphertext = self._cipher.encrypt(raw_token.encode("utf-8")).decode("utf-8")
        logger.info(
            "[TOKEN_VAULT] Token encrypted for workspace=%s %s (length=%d)",
            tenant, context, len(raw_token),
        )
        return SealedToken(value=ciphertext, encrypted=True)

    def reveal(self, stored_value: str, *, encrypted: bool = True, context: str = "meta:access") -> str:
        """Return the plaintext token for a stored value.

        Raises:
            ValueError: Empty stored value.
            EncryptionUnavailableError: Value is encrypted but no key is configured.
            TokenDecryptionError: Value was tampered with or sealed under another key.
        """
        if not stored_value:
            raise ValueError("Cannot reveal empty token.")

        if not encrypted:
            logger.warning("[TOKEN_VAULT] Using plaintext-stored token for %s", context)
            return stored_value

        if self._cipher is None:
            raise EncryptionUnavailableError(self.unavailable_reason or "encryption unavailable")

        try:
            plaintext = self._cipher.decrypt(stored_value.encode("utf-8")).decode("utf-8")
        except InvalidToken as exc:
            logger.error("[TOKEN_VAULT] Invalid ciphertext for %s", context)
            raise TokenDecryptionError("Unable to decrypt stored token.") from exc

        logger.debug("[TOKEN_VAULT] Token decrypted for %s (length=%d)", context, len(plaintext))
        return plaintext


@lru_cache()
def get_token_vault() -> TokenVault:
    """Process-wide vault built from TOKEN_ENCRYPTION_KEY (loads .env if unset)."""
    key = os.getenv("TOKEN_ENCRYPTION_KEY")
    if not key:
        from adsync.utils.env import load_env_file
        load_env_file()
        key = os.getenv("TOKEN_ENCRYPTION_KEY")
    vault = TokenVault(key)
    if not vault.encryption_available:
        logger.warning("[TOKEN_VAULT] Encryption unavailable: %s", vault.unavailable_reason)
    return vault
