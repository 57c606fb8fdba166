"""Connection service for Meta credentials and ad account discovery.

WHAT:
    - Validates a user token against Meta (identity, permissions, ad accounts)
    - Creates/updates the Connection, its ad accounts and the access table
    - Default-connection switching, safe deletion and auth failure bookkeeping

WHY:
    - An ad account may be readable through several connections, but exactly
      one is the primary reader. That pointer must survive re-validation of
      other connections, otherwise a second login would silently steal accounts.
    - Deleting a connection that still backs an account would orphan its syncs.

REFERENCES:
    - adsync/services/token_service.py (token sealing)
    - https://developers.facebook.com/docs/marketing-api/reference/ad-account
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import (
    AdAccount,
    Connection,
    ConnectionAccountAccess,
    ConnectionStatusEnum,
    ProviderEnum,
)
from adsync.security import TokenVault
from adsync.services import persistence, token_service
from adsync.services.meta_graph_client import MetaGraphClient, MetaGraphError

logger = logging.getLogger(__name__)

REQUIRED_SCOPES = ("ads_read", "business_management")

# https://developers.facebook.com/docs/marketing-api/reference/ad-account (account_status)
ACCOUNT_STATUS = {
    1: "ACTIVE",
    2: "DISABLED",
    3: "UNSETTLED",
    7: "PENDING_RISK_REVIEW",
    8: "PENDING_SETTLEMENT",
    9: "IN_GRACE_PERIOD",
    100: "PENDING_CLOSURE",
    101: "CLOSED",
    201: "ANY_ACTIVE",
    202: "ANY_CLOSED",
}


class ConnectionValidationError(Exception):
    """Token is unusable: identity lookup failed or required scopes missing."""


class ConnectionInUseError(Exception):
    """Connection is still the primary reader of at least one ad account."""


@dataclass
class ValidationResult:
    connection: Connection
    accounts: List[AdAccount] = field(default_factory=list)
    granted_scopes: List[str] = field(default_factory=list)
    missing_scopes: List[str] = field(default_factory=list)


def account_status_label(raw) -> Optional[str]:
    if raw is None:
        return None
    try:
        return ACCOUNT_STATUS.get(int(raw), str(raw))
    except (TypeError, ValueError):
        return str(raw)


def _strip_act(account_id: str) -> str:
    return account_id[4:] if account_id.startswith("act_") else account_id


def _upsert_account(
    db: Session, workspace_id: UUID, connection: Connection, data: Dict, *, rebind: bool
) -> AdAccount:
    external_id = _strip_act(str(data["id"]))
    account = (
        db.query(AdAccount)
        .filter(AdAccount.workspace_id == workspace_id, AdAccount.external_id == external_id)
        .first()
    )
    if account is None:
        account = AdAccount(workspace_id=workspace_id, external_id=external_id)
        db.add(account)

    account.name = data.get("name") or account.name
    account.currency = data.get("currency") or account.currency
    account.timezone = data.get("timezone_name") or account.timezone
    account.account_status = account_status_label(data.get("account_status"))

    if account.primary_connection_id is None or rebind:
        if account.primary_connection_id not in (None, connection.id):
            logger.info(
                "[CONNECTIONS] Rebinding account %s primary connection %s -> %s",
                external_id, account.primary_connection_id, connection.id,
            )
        account.primary_connection_id = connection.id
    db.flush()

    access = (
        db.query(ConnectionAccountAccess)
        .filter(
            ConnectionAccountAccess.connection_id == connection.id,
            ConnectionAccountAccess.ad_account_id == account.id,
        )
        .first()
    )
    if access is None:
        db.add(ConnectionAccountAccess(connection_id=connection.id, ad_account_id=account.id))
    return account


def validate_connection(
    db: Session,
    vault: TokenVault,
    workspace_id: UUID,
    access_token: str,
    *,
    business_manager_id: Optional[str] = None,
    name: Optional[str] = None,
    expires_at: Optional[datetime] = None,
    reduced_validity: bool = False,
    rebind: bool = False,
    allow_plaintext: bool = False,
    client: Optional[MetaGraphClient] = None,
) -> ValidationResult:
    """Validate a token and record the connection plus every ad account it can read.

    Args:
        rebind: Move the primary pointer of already-bound accounts to this connection.

    Raises:
        ConnectionValidationError: Identity lookup failed or required scopes missing.
        EncryptionUnavailableError: No key configured and plaintext not allowed.
    """
    owns_client = client is None
    client = client or MetaGraphClient(access_token=access_token)
    try:
        try:
            me = client.get("me", {"fields": "id,name"})
            permissions = client.fetch_all("me/permissions")
        except MetaGraphError as exc:
            logger.warning("[CONNECTIONS] Token validation failed for workspace %s: %s", workspace_id, exc)
            raise ConnectionValidationError(f"Token validation failed: {exc.message}") from exc

        granted = sorted(p["permission"] for p in permissions if p.get("status") == "granted" and p.get("permission"))
        missing = [scope for scope in REQUIRED_SCOPES if scope not in granted]
        if missing:
            raise ConnectionValidationError(f"Missing required permissions: {', '.join(missing)}")

        try:
            accounts_data = client.fetch_all(
                "me/adaccounts", {"fields": "id,name,account_status,currency,timezone_name", "limit": 100},
            )
        except MetaGraphError as exc:
            raise ConnectionValidationError(f"Could not list ad accounts: {exc.message}") from exc
    finally:
        if owns_client:
            client.close()

    connection = (
        db.query(Connection)
        .filter(
            Connection.workspace_id == workspace_id,
            Connection.provider == ProviderEnum.meta,
            Connection.meta_user_id == str(me.get("id")),
        )
        .first()
    )
    if connection is None:
        connection = Connection(workspace_id=workspace_id, provider=ProviderEnum.meta, meta_user_id=str(me.get("id")))
        db.add(connection)
        has_default = (
            db.query(Connection)
            .filter(
                Connection.workspace_id == workspace_id,
                Connection.provider == ProviderEnum.meta,
                Connection.is_default.is_(True),
            )
            .first()
        )
        connection.is_default = has_default is None
        db.flush()

    connection.name = name or connection.name or me.get("name")
    connection.business_manager_id = business_manager_id or connection.business_manager_id
    connection.status = ConnectionStatusEnum.connected
    connection.granted_scopes = granted
    connection.last_validated_at = datetime.utcnow()
    connection.auth_failure_count = 0
    connection.last_error = None

    token_service.store_connection_token(
        db, connection, vault,
        access_token=access_token,
        expires_at=expires_at,
        reduced_validity=reduced_validity,
        scopes=granted,
        allow_plaintext=allow_plaintext,
    )

    accounts = [
        _upsert_account(db, workspace_id, connection, data, rebind=rebind)
        for data in accounts_data
        if data.get("id")
    ]
    persistence.commit(db)

    logger.info(
        "[CONNECTIONS] Connection %s validated for workspace %s: %d ad accounts",
        connection.id, workspace_id, len(accounts),
    )
    return ValidationResult(connection=connection, accounts=accounts, granted_scopes=granted)


def get_connection(db: Session, workspace_id: UUID, connection_id: UUID) -> Optional[Connection]:
    return (
        db.query(Connection)
        .filter(Connection.id == connection_id, Connection.workspace_id == workspace_id)
        .first()
    )


def set_default_connection(db: Session, connection: Connection) -> Connection:
    """Make `connection` the workspace default for its provider.

    The previous default is cleared and flushed first so the partial unique
    index never sees two defaults.
    """
    (
        db.query(Connection)
        .filter(
            Connection.workspace_id == connection.workspace_id,
            Connection.provider == connection.provider,
            Connection.id != connection.id,
            Connection.is_default.is_(True),
        )
        .update({Connection.is_default: False}, synchronize_session="fetch")
    )
    db.flush()
    connection.is_default = True
    persistence.commit(db)
    logger.info("[CONNECTIONS] Connection %s is now default for workspace %s", connection.id, connection.workspace_id)
    return connection


def delete_connection(db: Session, connection: Connection) -> None:
    """Delete a connection that no ad account uses as its primary reader.

    Raises:
        ConnectionInUseError: Accounts still bound to it.
    """
    bound = (
        db.query(AdAccount)
        .filter(AdAccount.primary_connection_id == connection.id)
        .all()
    )
    if bound:
        ids = ", ".join(account.external_id for account in bound[:5])
        raise ConnectionInUseError(
            f"Connection {connection.id} is primary for {len(bound)} ad account(s): {ids}"
        )

    token = connection.token
    db.delete(connection)
    db.flush()
    if token is not None:
        still_used = db.query(Connection).filter(Connection.token_id == token.id).count()
        if not still_used:
            db.delete(token)
    persistence.commit(db)
    logger.info("[CONNECTIONS] Deleted connection %s", connection.id)


def record_auth_failure(db: Session, connection: Connection, message: str) -> bool:
    """Count an authentication failure; returns True when the connection flipped to error."""
    from adsync.deps import get_settings

    threshold = max(1, get_settings().META_AUTH_FAILURE_THRESHOLD)
    connection.auth_failure_count = (connection.auth_failure_count or 0) + 1
    connection.last_error = message[:2000]
    flipped = False
    if connection.auth_failure_count >= threshold and connection.status != ConnectionStatusEnum.error:
        connection.status = ConnectionStatusEnum.error
        flipped = True
        logger.error(
            "[CONNECTIONS] Connection %s marked as error after %d auth failures: %s",
            connection.id, connection.auth_failure_count, message,
        )
    persistence.commit(db)
    return flipped


def reset_auth_failures(db: Session, connection: Connection) -> None:
    if not connection.auth_failure_count and connection.last_error is None:
        return
    connection.auth_failure_count = 0
    connection.last_error = None
    persistence.commit(db)


def get_account(db: Session, workspace_id: UUID, account_id: str) -> Optional[AdAccount]:
    """Look up an ad account by external id (with or without `act_`)."""
    return (
        db.query(AdAccount)
        .filter(AdAccount.workspace_id == workspace_id, AdAccount.external_id == _strip_act(str(account_id)))
        .first()
    )


def client_for_account(account: AdAccount, vault: TokenVault) -> MetaGraphClient:
    """Graph client authenticated with the account's primary connection.

    Raises:
        ConnectionValidationError: No connected primary connection.
        MissingTokenError / TokenDecryptionError: Token cannot be revealed.
    """
    connection = account.primary_connection
    if connection is None or connection.status != ConnectionStatusEnum.connected:
        raise ConnectionValidationError(f"Ad account {account.external_id} has no connected Meta connection")
    return MetaGraphClient(access_token=token_service.get_access_token(connection, vault))
