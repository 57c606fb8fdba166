"""Token service for exchanging, sealing and persisting Meta credentials.

WHAT:
    - OAuth code-for-token exchange
    - Short-lived to long-lived token exchange (falls back to the short-lived
      token flagged as reduced validity when Meta refuses)
    - Persisting sealed tokens on a connection and revealing them for syncs
    - Refreshing a connection's long-lived token

WHY:
    - Keeps encryption and token bookkeeping out of routers and sync code.
    - Callers always know whether a stored token is encrypted and whether it
      is a full 60-day token.

REFERENCES:
    - adsync/security.py (TokenVault)
    - https://developers.facebook.com/docs/facebook-login/guides/access-tokens/get-long-lived
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional, Sequence

from sqlalchemy.orm import Session

from adsync.models import Connection, ConnectionStatusEnum, Token
from adsync.security import SealedToken, TokenVault
from adsync.services import persistence
from adsync.services.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError

logger = logging.getLogger(__name__)

# Meta's long-lived token lifetime (~60 days) when expires_in is omitted
DEFAULT_LONG_LIVED_TTL_SECONDS = 5183944
DEFAULT_SHORT_LIVED_TTL_SECONDS = 3600


class TokenExchangeError(Exception):
    """Raised when Meta refuses to issue a token."""


class MissingTokenError(Exception):
    """Raised when a connection has no stored token."""


@dataclass
class TokenExchange:
    access_token: str
    expires_at: Optional[datetime]
    reduced_validity: bool = False
    error: Optional[str] = None


@dataclass
class TokenRefreshResult:
    success: bool
    expires_at: Optional[datetime] = None
    requires_reconnect: bool = False
    error: Optional[str] = None


def _app_credentials(app_id: Optional[str], app_secret: Optional[str]):
    from adsync.deps import get_settings

    settings = get_settings()
    return app_id or settings.META_APP_ID, app_secret or settings.META_APP_SECRET


def exchange_code_for_token(
    code: str,
    redirect_uri: str,
    *,
    client: Optional[MetaGraphClient] = None,
    app_id: Optional[str] = None,
    app_secret: Optional[str] = None,
    now: Optional[datetime] = None,
) -> TokenExchange:
    """Exchange an OAuth authorization code for a (short-lived) user token.

    Raises:
        TokenExchangeError: App credentials missing or Meta rejected the code.
    """
    app_id, app_secret = _app_credentials(app_id, app_secret)
    if not app_id or not app_secret:
        raise TokenExchangeError("META_APP_ID / META_APP_SECRET are not configured")

    owns_client = client is None
    client = client or MetaGraphClient()
    try:
        data = client.post_form(
            "oauth/access_token",
            {"client_id": app_id, "client_secret": app_secret, "redirect_uri": redirect_uri, "code": code},
        )
    except MetaGraphError as exc:
        logger.error("[TOKEN] Code exchange failed: %s", exc)
        raise TokenExchangeError(f"Code exchange failed: {exc.message}") from exc
    finally:
        if owns_client:
            client.close()

    if not data.get("access_token"):
        raise TokenExchangeError("Meta did not return an access token")

    now = now or datetime.utcnow()
    ttl = data.get("expires_in") or DEFAULT_SHORT_LIVED_TTL_SECONDS
    return TokenExchange(access_token=data["access_token"], expires_at=now + timedelta(seconds=int(ttl)))


def exchange_short_lived_for_long_lived(
    short_lived_token: str,
    *,
    client: Optional[MetaGraphClient] = None,
    app_id: Optional[str] = None,
    app_secret: Optional[str] = None,
    short_lived_expires_in: Optional[int] = None,
    now: Optional[datetime] = None,
) -> TokenExchange:
    """Trade a short-lived user token for a ~60 day token.

    On failure the short-lived token is returned with reduced_validity=True
    and its own (short) expiry, so the caller can still store it knowingly.
    """
    now = now or datetime.utcnow()
    app_id, app_secret = _app_credentials(app_id, app_secret)

    def _fallback(reason: str) -> TokenExchange:
        logger.warning("[TOKEN] Long-lived exchange failed, keeping short-lived token: %s", reason)
        ttl = short_lived_expires_in or DEFAULT_SHORT_LIVED_TTL_SECONDS
        return TokenExchange(
            access_token=short_lived_token,
            expires_at=now + timedelta(seconds=int(ttl)),
            reduced_validity=True,
            error=reason,
        )

    if not app_id or not app_secret:
        return _fallback("META_APP_ID / META_APP_SECRET are not configured")

    owns_client = client is None
    client = client or MetaGraphClient()
    try:
        data = client.post_form(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": short_lived_token,
            },
        )
    except MetaGraphError as exc:
        return _fallback(str(exc))
    finally:
        if owns_client:
            client.close()

    if not data.get("access_token"):
        return _fallback("Meta did not return an access token")

    ttl = data.get("expires_in") or DEFAULT_LONG_LIVED_TTL_SECONDS
    expires_at = now + timedelta(seconds=int(ttl))
    logger.info("[TOKEN] Long-lived token obtained, expires %s (%d days)", expires_at.isoformat(), int(ttl) // 86400)
    return TokenExchange(access_token=data["access_token"], expires_at=expires_at)


def store_connection_token(
    db: Session,
    connection: Connection,
    vault: TokenVault,
    *,
    access_token: str,
    expires_at: Optional[datetime] = None,
    reduced_validity: bool = False,
    scopes: Optional[Sequence[str]] = None,
    allow_plaintext: bool = False,
) -> Token:
    """Seal and persist the access token referenced by `connection`.

    Raises:
        EncryptionUnavailableError: No key configured and plaintext not allowed.
    """
    label = f"{connection.provider.value}:{connection.id}:access"
    sealed: SealedToken = vault.store(
        connection.workspace_id, access_token, context=label, allow_plaintext=allow_plaintext,
    )

    token = connection.token
    if token is None:
        token = Token(provider=connection.provider)
        db.add(token)
        connection.token = token

    token.access_token_enc = sealed.value
    token.token_encrypted = sealed.encrypted
    token.expires_at = expires_at
    token.reduced_validity = reduced_validity
    token.scope = ",".join(scopes) if scopes else token.scope
    db.flush()

    logger.info(
        "[TOKEN] Stored token for connection %s (encrypted=%s, reduced_validity=%s)",
        connection.id, sealed.encrypted, reduced_validity,
    )
    return token


def get_access_token(connection: Connection, vault: TokenVault) -> str:
    """Reveal the plaintext token of a connection.

    Raises:
        MissingTokenError: No token stored.
        TokenDecryptionError / EncryptionUnavailableError: From the vault.
    """
    token = connection.token
    if token is None or not token.access_token_enc:
        raise MissingTokenError(f"Connection {connection.id} has no stored token")
    return vault.reveal(
        token.access_token_enc,
        encrypted=token.token_encrypted,
        context=f"{connection.provider.value}:{connection.id}:access",
    )


def refresh_connection_token(
    db: Session,
    connection: Connection,
    vault: TokenVault,
    *,
    client: Optional[MetaGraphClient] = None,
    app_id: Optional[str] = None,
    app_secret: Optional[str] = None,
) -> TokenRefreshResult:
    """Re-exchange a connection's token for a fresh long-lived token.

    A code-190 rejection means the user must reconnect: the connection is
    moved to `error` and `requires_reconnect` is reported.
    """
    current = get_access_token(connection, vault)
    app_id, app_secret = _app_credentials(app_id, app_secret)
    if not app_id or not app_secret:
        return TokenRefreshResult(success=False, error="META_APP_ID / META_APP_SECRET are not configured")

    owns_client = client is None
    client = client or MetaGraphClient()
    try:
        data = client.post_form(
            "oauth/access_token",
            {
                "grant_type": "fb_exchange_token",
                "client_id": app_id,
                "client_secret": app_secret,
                "fb_exchange_token": current,
            },
        )
    except MetaAuthError as exc:
        logger.error("[TOKEN] Refresh rejected for connection %s: %s", connection.id, exc)
        if exc.requires_reconnect:
            connection.status = ConnectionStatusEnum.error
            connection.last_error = f"Token invalid, reconnect required: {exc.message}"
            persistence.commit(db)
        return TokenRefreshResult(success=False, requires_reconnect=exc.requires_reconnect, error=exc.message)
    except MetaGraphError as exc:
        logger.error("[TOKEN] Refresh failed for connection %s: %s", connection.id, exc)
        return TokenRefreshResult(success=False, error=exc.message)
    finally:
        if owns_client:
            client.close()

    if not data.get("access_token"):
        return TokenRefreshResult(success=False, error="Meta did not return an access token")

    ttl = data.get("expires_in") or DEFAULT_LONG_LIVED_TTL_SECONDS
    expires_at = datetime.utcnow() + timedelta(seconds=int(ttl))
    store_connection_token(
        db, connection, vault,
        access_token=data["access_token"],
        expires_at=expires_at,
        reduced_validity=False,
        allow_plaintext=not connection.token.token_encrypted,
    )
    connection.status = ConnectionStatusEnum.connected
    connection.auth_failure_count = 0
    connection.last_error = None
    persistence.commit(db)
    return TokenRefreshResult(success=True, expires_at=expires_at)
