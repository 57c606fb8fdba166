"""Meta insights synchronization endpoints.

WHAT:
    Thin HTTP wrappers for the sync services: run a sync inline, enqueue it on
    the arq queue, refresh the entity catalog and report sync health.

WHY:
    - Routers handle auth + request parsing only.
    - Business logic reused by both HTTP calls and background workers.

REFERENCES:
    - adsync/services/insights_sync_service.py
    - adsync/workers/arq_worker.py (process_sync_job)
"""

from __future__ import annotations

import logging
from uuid import UUID

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from adsync.database import get_db
from adsync.deps import get_settings, require_internal_key
from adsync.models import Workspace
from adsync.schemas import (
    AccountSyncOut,
    EnqueueResponse,
    EntitySyncAccountOut,
    EntitySyncRequest,
    EntitySyncResponse,
    JobSummaryOut,
    SyncRequest,
    SyncStatusResponse,
)
from adsync.security import TokenDecryptionError, get_token_vault
from adsync.services import connection_service
from adsync.services.entity_sync_service import sync_account_entities
from adsync.services.insights_sync_service import JobSummary, run_sync, select_accounts
from adsync.services.media_cache import MediaCache
from adsync.services.meta_graph_client import MetaAuthError
from adsync.services.sync_status_service import get_sync_status
from adsync.services.token_service import MissingTokenError

logger = logging.getLogger(__name__)

router = APIRouter(
    prefix="/workspaces/{workspace_id}/meta",
    tags=["Meta Sync"],
    dependencies=[Depends(require_internal_key)],
)


def get_workspace_or_404(db: Session, workspace_id: UUID) -> Workspace:
    workspace = db.get(Workspace, workspace_id)
    if workspace is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Workspace not found")
    return workspace


def summary_to_response(summary: JobSummary) -> JobSummaryOut:
    return JobSummaryOut(
        mode=summary.mode,
        success=summary.success,
        partial=summary.partial,
        accounts_synced=summary.accounts_synced,
        accounts_failed=summary.accounts_failed,
        accounts_skipped=summary.accounts_skipped,
        total_rows=summary.total_rows,
        results=[
            AccountSyncOut(
                account_id=r.account_id,
                job_id=r.job_id,
                status=r.status,
                date_from=r.date_from,
                date_to=r.date_to,
                rows_synced=r.rows_synced,
                skipped_rows=r.skipped_rows,
                counts=r.counts,
                errors=r.errors,
                warnings=r.warnings,
            )
            for r in summary.results
        ],
        errors=summary.errors,
    )


@router.post("/sync", response_model=JobSummaryOut)
def sync_insights(
    workspace_id: UUID,
    request: SyncRequest,
    db: Session = Depends(get_db),
) -> JobSummaryOut:
    """Run an insights sync inline and return the per-account summary."""
    get_workspace_or_404(db, workspace_id)
    logger.info(
        "[META_SYNC] HTTP sync requested: workspace=%s mode=%s accounts=%s",
        workspace_id, request.mode.value, request.account_ids or "all",
    )

    settings = get_settings()
    media_cache = MediaCache.from_settings(settings) if settings.MEDIA_CACHE_ENABLED and request.sync_creatives else None
    try:
        summary = run_sync(
            db,
            workspace_id,
            mode=request.mode,
            account_ids=request.account_ids,
            levels=request.levels,
            date_range=(request.date_from, request.date_to) if request.date_from else None,
            backfill_days=request.backfill_days,
            sync_creatives=request.sync_creatives,
            sync_entities=request.sync_entities,
            force_creatives=request.force_creatives,
            media_cache=media_cache,
        )
    finally:
        if media_cache is not None:
            media_cache.close()
    return summary_to_response(summary)


@router.post("/sync/enqueue", response_model=EnqueueResponse, status_code=status.HTTP_202_ACCEPTED)
async def enqueue_sync(
    workspace_id: UUID,
    request: SyncRequest,
    db: Session = Depends(get_db),
) -> EnqueueResponse:
    """Queue a sync on the arq worker."""
    from adsync.workers.arq_enqueue import enqueue_sync_job

    get_workspace_or_404(db, workspace_id)
    enqueued = await enqueue_sync_job(
        workspace_id=str(workspace_id),
        mode=request.mode.value,
        account_ids=request.account_ids,
        levels=[level.value for level in request.levels],
        date_from=request.date_from.isoformat() if request.date_from else None,
        date_to=request.date_to.isoformat() if request.date_to else None,
        backfill_days=request.backfill_days,
        sync_creatives=request.sync_creatives,
        sync_entities=request.sync_entities,
    )
    if enqueued["job_id"] is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="An identical sync is already queued")
    return EnqueueResponse(job_id=enqueued["job_id"], status=enqueued["status"])


@router.get("/sync/status", response_model=SyncStatusResponse)
def sync_status(workspace_id: UUID, db: Session = Depends(get_db)) -> SyncStatusResponse:
    """Connection, freshness, watermarks, recent jobs and health verdict."""
    get_workspace_or_404(db, workspace_id)
    return SyncStatusResponse(**get_sync_status(db, workspace_id))


@router.post("/entities/sync", response_model=EntitySyncResponse)
def sync_entities(
    workspace_id: UUID,
    request: EntitySyncRequest,
    db: Session = Depends(get_db),
) -> EntitySyncResponse:
    """Refresh the campaign/adset/ad catalog of the selected accounts."""
    get_workspace_or_404(db, workspace_id)
    vault = get_token_vault()
    response = EntitySyncResponse(results=[])

    for account in select_accounts(db, workspace_id, request.account_ids):
        try:
            client = connection_service.client_for_account(account, vault)
        except (connection_service.ConnectionValidationError, MissingTokenError, TokenDecryptionError) as exc:
            response.errors.append(f"Account {account.external_id}: {exc}")
            continue

        try:
            result = sync_account_entities(db, client, workspace_id, account, force=request.force)
        except MetaAuthError as exc:
            connection_service.record_auth_failure(db, account.primary_connection, exc.message)
            response.errors.append(f"Account {account.external_id}: authentication failed: {exc.message}")
            continue
        finally:
            client.close()

        response.results.append(EntitySyncAccountOut(
            account_id=account.external_id,
            skipped=result.skipped,
            counts=result.counts,
            errors=result.errors,
        ))
    return response
