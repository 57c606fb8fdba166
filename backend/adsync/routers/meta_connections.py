"""Meta connection management endpoints.

WHAT:
    Validate a user token (or OAuth code), refresh a stored token, switch the
    default connection and delete unbound connections.

REFERENCES:
    - adsync/services/connection_service.py
    - adsync/services/token_service.py
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, Response, status
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import require_internal_key
from adsync.models import Connection
from adsync.routers.meta_sync import get_workspace_or_404
from adsync.schemas import (
    AdAccountOut,
    CodeExchangeRequest,
    ConnectionOut,
    ConnectionValidateRequest,
    ConnectionValidateResponse,
    TokenRefreshResponse,
)
from adsync.security import EncryptionUnavailableError, TokenDecryptionError, get_token_vault
from adsync.services import connection_service, token_service
from adsync.services.connection_service import (
    ConnectionInUseError,
    ConnectionValidationError,
    ValidationResult,
)
from adsync.services.token_service import MissingTokenError, TokenExchangeError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/meta/connections",
    tags=["Meta Connections"],
    dependencies=[Depends(require_internal_key)],
)


def connection_out(connection: Connection) -> ConnectionOut:
    token = connection.token
    return ConnectionOut(
        id=connection.id,
        name=connection.name,
        status=connection.status.value,
        is_default=bool(connection.is_default),
        granted_scopes=connection.granted_scopes or [],
        last_validated_at=connection.last_validated_at,
        token_expires_at=token.expires_at if token else None,
        reduced_validity=bool(token.reduced_validity) if token else False,
        token_encrypted=bool(token.token_encrypted) if token else True,
    )


def _validation_response(result: ValidationResult) -> ConnectionValidateResponse:
    return ConnectionValidateResponse(
        connection=connection_out(result.connection),
        ad_accounts=[
            AdAccountOut(
                id=account.id,
                account_id=account.external_id,
                name=account.name,
                currency=account.currency,
                timezone=account.timezone,
                account_status=account.account_status,
                primary_connection_id=account.primary_connection_id,
            )
            for account in result.accounts
        ],
    )


def _connection_or_404(db: Session, workspace_id: UUID, connection_id: UUID) -> Connection:
    connection = connection_service.get_connection(db, workspace_id, connection_id)
    if connection is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail="Connection not found")
    return connection


def _validate(db: Session, workspace_id: UUID, exchange: token_service.TokenExchange, **kwargs) -> ConnectionValidateResponse:
    try:
        result = connection_service.validate_connection(
            db,
            get_token_vault(),
            workspace_id,
            exchange.access_token,
            expires_at=exchange.expires_at,
            reduced_validity=exchange.reduced_validity,
            **kwargs,
        )
    except ConnectionValidationError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc))
    except EncryptionUnavailableError as exc:
        raise HTTPException(status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(exc))
    return _validation_response(result)


@router.post("/validate", response_model=ConnectionValidateResponse)
def validate_connection(
    workspace_id: UUID,
    request: ConnectionValidateRequest,
    db: Session = Depends(get_db),
) -> ConnectionValidateResponse:
    """Validate a user token and record its ad accounts."""
    get_workspace_or_404(db, workspace_id)
    if request.exchange_long_lived:
        exchange = token_service.exchange_short_lived_for_long_lived(request.access_token)
    else:
        exchange = token_service.TokenExchange(
            access_token=request.access_token,
            expires_at=None,
            reduced_validity=True,
        )
    return _validate(
        db,
        workspace_id,
        exchange,
        business_manager_id=request.business_manager_id,
        name=request.name,
        rebind=request.rebind,
        allow_plaintext=request.allow_plaintext,
    )


@router.post("/exchange-code", response_model=ConnectionValidateResponse)
def exchange_code(
    workspace_id: UUID,
    request: CodeExchangeRequest,
    db: Session = Depends(get_db),
) -> ConnectionValidateResponse:
    """OAuth callback: code -> short-lived -> long-lived token -> validated connection."""
    get_workspace_or_404(db, workspace_id)
    try:
        short_lived = token_service.exchange_code_for_token(request.code, request.redirect_uri)
    except TokenExchangeError as exc:
        raise HTTPException(status.HTTP_400_BAD_REQUEST, detail=str(exc))

    exchange = token_service.exchange_short_lived_for_long_lived(short_lived.access_token)
    return _validate(
        db,
        workspace_id,
        exchange,
        business_manager_id=request.business_manager_id,
        allow_plaintext=request.allow_plaintext,
    )


@router.post("/{connection_id}/refresh", response_model=TokenRefreshResponse)
def refresh_token(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
) -> TokenRefreshResponse:
    """Trade the stored token for a fresh long-lived token."""
    connection = _connection_or_404(db, workspace_id, connection_id)
    try:
        result = token_service.refresh_connection_token(db, connection, get_token_vault())
    except (MissingTokenError, TokenDecryptionError) as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    return TokenRefreshResponse(
        success=result.success,
        expires_at=result.expires_at,
        requires_reconnect=result.requires_reconnect,
        error=result.error,
    )


@router.post("/{connection_id}/default", response_model=ConnectionOut)
def set_default(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
) -> ConnectionOut:
    connection = _connection_or_404(db, workspace_id, connection_id)
    return connection_out(connection_service.set_default_connection(db, connection))


@router.delete("/{connection_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_connection(
    workspace_id: UUID,
    connection_id: UUID,
    db: Session = Depends(get_db),
) -> Response:
    """Delete a connection that no ad account uses as its primary reader."""
    connection = _connection_or_404(db, workspace_id, connection_id)
    try:
        connection_service.delete_connection(db, connection)
    except ConnectionInUseError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    return Response(status_code=status.HTTP_204_NO_CONTENT)
