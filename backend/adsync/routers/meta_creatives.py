"""Meta creative resolution endpoints.

WHAT:
    Resolve one ad's creative, resolve a batch of ads, or cache a media URL.

WHY:
    Typed service errors map onto HTTP status codes here so callers can tell
    "reconnect needed" (401) from "ad gone" (404) from "upstream flaky" (502).
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import get_settings, require_internal_key
from adsync.models import AdAccount
from adsync.routers.meta_sync import get_workspace_or_404
from adsync.schemas import (
    CacheMediaRequest,
    CacheMediaResponse,
    CreativeBatchRequest,
    CreativeBatchResponse,
    CreativeOut,
    CreativeResolveRequest,
)
from adsync.security import TokenDecryptionError, get_token_vault
from adsync.services import connection_service, creative_service
from adsync.services.media_cache import MediaCache, MediaCacheError
from adsync.services.meta_graph_client import (
    MetaAuthError,
    MetaGraphClient,
    MetaGraphError,
    MetaNotFoundError,
    MetaPermissionError,
    MetaTransientError,
)
from adsync.services.token_service import MissingTokenError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/meta/creatives",
    tags=["Meta Creatives"],
    dependencies=[Depends(require_internal_key)],
)


def http_error_for(exc: MetaGraphError) -> HTTPException:
    if isinstance(exc, MetaAuthError):
        return HTTPException(status.HTTP_401_UNAUTHORIZED, detail=f"Meta authentication failed: {exc.message}")
    if isinstance(exc, MetaPermissionError):
        return HTTPException(status.HTTP_403_FORBIDDEN, detail=exc.message)
    if isinstance(exc, MetaNotFoundError):
        return HTTPException(status.HTTP_404_NOT_FOUND, detail=exc.message)
    if isinstance(exc, MetaTransientError):
        return HTTPException(status.HTTP_502_BAD_GATEWAY, detail=f"Meta API unavailable: {exc.message}")
    return HTTPException(status.HTTP_400_BAD_REQUEST, detail=exc.message)


def _account_and_client(db: Session, workspace_id: UUID, account_id: str) -> tuple[AdAccount, MetaGraphClient]:
    account = connection_service.get_account(db, workspace_id, account_id)
    if account is None:
        raise HTTPException(status.HTTP_404_NOT_FOUND, detail=f"Ad account {account_id} not found")
    try:
        client = connection_service.client_for_account(account, get_token_vault())
    except connection_service.ConnectionValidationError as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=str(exc))
    except (MissingTokenError, TokenDecryptionError) as exc:
        raise HTTPException(status.HTTP_409_CONFLICT, detail=f"Stored token unusable: {exc}")
    return account, client


def _media_cache() -> MediaCache | None:
    settings = get_settings()
    return MediaCache.from_settings(settings) if settings.MEDIA_CACHE_ENABLED else None


@router.post("/resolve", response_model=CreativeOut)
def resolve_creative(
    workspace_id: UUID,
    request: CreativeResolveRequest,
    db: Session = Depends(get_db),
) -> CreativeOut:
    """Resolve and store the creative of one ad (always refetches)."""
    get_workspace_or_404(db, workspace_id)
    account, client = _account_and_client(db, workspace_id, request.account_id)
    media_cache = _media_cache()
    try:
        values = creative_service.resolve_creative(
            db,
            workspace_id=workspace_id,
            ad_account=account,
            ad_id=request.ad_id,
            client=client,
            media_cache=media_cache,
            enrich=request.enrich,
        )
    except MetaAuthError as exc:
        connection_service.record_auth_failure(db, account.primary_connection, exc.message)
        raise http_error_for(exc)
    except MetaGraphError as exc:
        raise http_error_for(exc)
    finally:
        client.close()
        if media_cache is not None:
            media_cache.close()
    return CreativeOut.from_values(values)


@router.post("/resolve-batch", response_model=CreativeBatchResponse)
def resolve_creatives_batch(
    workspace_id: UUID,
    request: CreativeBatchRequest,
    db: Session = Depends(get_db),
) -> CreativeBatchResponse:
    """Resolve many ads; per-ad failures are reported in `errors`."""
    get_workspace_or_404(db, workspace_id)
    account, client = _account_and_client(db, workspace_id, request.account_id)
    media_cache = _media_cache()
    try:
        result = creative_service.resolve_creatives_batch(
            db,
            workspace_id=workspace_id,
            ad_account=account,
            ad_ids=request.ad_ids,
            client=client,
            force=request.force,
            media_cache=media_cache,
        )
    except MetaAuthError as exc:
        connection_service.record_auth_failure(db, account.primary_connection, exc.message)
        raise http_error_for(exc)
    finally:
        client.close()
        if media_cache is not None:
            media_cache.close()

    return CreativeBatchResponse(
        records={ad_id: CreativeOut.from_values(values) for ad_id, values in result.records.items()},
        errors=result.errors,
        skipped=result.skipped,
        persistence_errors=result.persistence_errors,
        resolved=result.resolved,
    )


@router.post("/cache-media", response_model=CacheMediaResponse)
def cache_media(
    workspace_id: UUID,
    request: CacheMediaRequest,
    db: Session = Depends(get_db),
) -> CacheMediaResponse:
    """Download a media URL into the durable cache."""
    get_workspace_or_404(db, workspace_id)
    media_cache = MediaCache.from_settings(get_settings())
    try:
        cached = media_cache.cache(workspace_id, request.ad_id, request.media_type, request.source_url)
    except MediaCacheError as exc:
        logger.warning("[MEDIA_CACHE] Caching failed for ad %s: %s", request.ad_id, exc)
        raise HTTPException(status.HTTP_502_BAD_GATEWAY, detail=str(exc))
    finally:
        media_cache.close()
    return CacheMediaResponse(url=cached.url, size_bytes=cached.size_bytes)
