"""ARQ worker for Meta insights sync jobs.

WHAT:
    Async job processor using ARQ. Runs the blocking sync service in a thread
    (`asyncio.to_thread`) and schedules daily + intraday syncs via cron.

WHY:
    - One arq worker process handles both HTTP-enqueued and scheduled syncs
    - Sync services are synchronous (SQLAlchemy Session + httpx Client), so each
      job opens its own session inside the worker thread
    - Deterministic job ids stop overlapping cron ticks from queueing duplicates

USAGE:
    # Start worker (from backend/):
    arq adsync.workers.arq_worker.WorkerSettings
    # or
    python -m adsync.workers.start_worker

REFERENCES:
    - adsync/services/insights_sync_service.py (run_sync)
    - adsync/workers/arq_enqueue.py (enqueue_sync_job)
"""

from __future__ import annotations

import asyncio
import logging
from datetime import date, datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from arq import cron

from adsync.telemetry import capture_exception
from adsync.workers.arq_enqueue import enqueue_sync_job, get_redis_settings

logger = logging.getLogger(__name__)


# =============================================================================
# JOB FUNCTIONS
# =============================================================================

def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def run_sync_blocking(
    workspace_id: str,
    mode: str = "intraday",
    account_ids: Optional[List[str]] = None,
    levels: Optional[List[str]] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    backfill_days: int = 7,
    sync_creatives: bool = False,
    sync_entities: bool = False,
) -> Dict[str, Any]:
    """Run one workspace sync with its own session; returns a JSON-able summary.

    Runs inside `asyncio.to_thread`, so the session is created here rather
    than in the event loop thread.
    """
    from adsync.database import get_sync_session
    from adsync.deps import get_settings
    from adsync.models import LevelEnum, SyncJobTypeEnum
    from adsync.services.insights_sync_service import run_sync
    from adsync.services.media_cache import MediaCache

    start = _parse_date(date_from)
    end = _parse_date(date_to)
    settings = get_settings()
    media_cache = MediaCache.from_settings(settings) if settings.MEDIA_CACHE_ENABLED and sync_creatives else None

    try:
        with get_sync_session() as db:
            summary = run_sync(
                db,
                UUID(workspace_id),
                mode=SyncJobTypeEnum(mode),
                account_ids=account_ids,
                levels=[LevelEnum(level) for level in levels] if levels else None,
                date_range=(start, end) if start and end else None,
                backfill_days=backfill_days,
                sync_creatives=sync_creatives,
                sync_entities=sync_entities,
                media_cache=media_cache,
            )
    finally:
        if media_cache is not None:
            media_cache.close()

    return {
        "success": summary.success,
        "partial": summary.partial,
        "mode": mode,
        "accounts_synced": summary.accounts_synced,
        "accounts_failed": summary.accounts_failed,
        "accounts_skipped": summary.accounts_skipped,
        "total_rows": summary.total_rows,
        "errors": summary.errors,
    }


async def process_sync_job(
    ctx: Dict[str, Any],
    workspace_id: str,
    mode: str = "intraday",
    account_ids: Optional[List[str]] = None,
    levels: Optional[List[str]] = None,
    date_from: Optional[str] = None,
    date_to: Optional[str] = None,
    backfill_days: int = 7,
    sync_creatives: bool = False,
    sync_entities: bool = False,
) -> Dict[str, Any]:
    """Process one workspace sync job.

    Args:
        ctx: ARQ context (contains redis pool)
        workspace_id: UUID string of the workspace
        mode: daily | intraday | backfill

    Returns:
        Dict with sync results
    """
    logger.info("[ARQ] Starting %s sync for workspace %s", mode, workspace_id)
    try:
        result = await asyncio.to_thread(
            run_sync_blocking,
            workspace_id,
            mode,
            account_ids,
            levels,
            date_from,
            date_to,
            backfill_days,
            sync_creatives,
            sync_entities,
        )
    except Exception as e:
        logger.exception("[ARQ] Sync failed for workspace %s: %s", workspace_id, e)
        capture_exception(e, extra={
            "operation": "process_sync_job",
            "workspace_id": workspace_id,
            "mode": mode,
        })
        return {"success": False, "error": str(e)}

    logger.info(
        "[ARQ] Completed %s sync for workspace %s: %d synced, %d failed, %d rows",
        mode, workspace_id, result["accounts_synced"], result["accounts_failed"], result["total_rows"],
    )
    return result


# =============================================================================
# SCHEDULED JOBS (cron)
# =============================================================================

def workspaces_due_for_sync() -> List[str]:
    """Workspaces with at least one sync-enabled account bound to a connected connection."""
    from adsync.database import get_sync_session
    from adsync.models import AdAccount, Connection, ConnectionStatusEnum, SyncWatermark

    with get_sync_session() as db:
        rows = (
            db.query(AdAccount.workspace_id)
            .join(Connection, AdAccount.primary_connection_id == Connection.id)
            .outerjoin(
                SyncWatermark,
                (SyncWatermark.ad_account_id == AdAccount.id)
                & (SyncWatermark.workspace_id == AdAccount.workspace_id),
            )
            .filter(Connection.status == ConnectionStatusEnum.connected)
            .filter((SyncWatermark.id.is_(None)) | (SyncWatermark.sync_enabled.is_(True)))
            .distinct()
            .all()
        )
    return [str(row[0]) for row in rows]


async def _enqueue_scheduled(ctx: Dict[str, Any], mode: str, slot: str, **options) -> Dict[str, Any]:
    workspace_ids = await asyncio.to_thread(workspaces_due_for_sync)
    logger.info("[ARQ] Scheduled %s sync: %d workspaces", mode, len(workspace_ids))

    results = await asyncio.gather(*[
        enqueue_sync_job(
            workspace_id,
            mode,
            pool=ctx["redis"],
            job_id=f"meta-sync:{workspace_id}:{mode}:{slot}",
            **options,
        )
        for workspace_id in workspace_ids
    ])
    enqueued = sum(1 for r in results if r["job_id"])
    return {"enqueued": enqueued, "skipped": len(results) - enqueued}


async def scheduled_daily_sync(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Enqueue yesterday's finalization sync for every active workspace."""
    from adsync.deps import get_settings

    settings = get_settings()
    return await _enqueue_scheduled(
        ctx,
        "daily",
        datetime.utcnow().strftime("%Y%m%d"),
        sync_creatives=settings.SYNC_CREATIVES_ON_DAILY,
        sync_entities=True,
    )


async def scheduled_intraday_sync(ctx: Dict[str, Any]) -> Dict[str, Any]:
    """Enqueue today's refresh for every active workspace (every 15 minutes)."""
    now = datetime.utcnow()
    slot = now.strftime("%Y%m%d%H") + f"{now.minute // 15:02d}"
    return await _enqueue_scheduled(ctx, "intraday", slot)


# =============================================================================
# WORKER LIFECYCLE
# =============================================================================

async def startup(ctx: Dict[str, Any]) -> None:
    """Called when worker starts."""
    from adsync.telemetry import init_observability

    init_observability()
    logger.info("=" * 60)
    logger.info("[ARQ] Meta sync worker starting up")
    logger.info("=" * 60)
    ctx["startup_time"] = datetime.utcnow()
    ctx["jobs_processed"] = 0


async def shutdown(ctx: Dict[str, Any]) -> None:
    """Called when worker shuts down."""
    runtime = datetime.utcnow() - ctx.get("startup_time", datetime.utcnow())
    logger.info("=" * 60)
    logger.info(
        "[ARQ] Worker shutting down after %s, %d jobs processed",
        runtime, ctx.get("jobs_processed", 0),
    )
    logger.info("=" * 60)


async def on_job_end(ctx: Dict[str, Any]) -> None:
    ctx["jobs_processed"] = ctx.get("jobs_processed", 0) + 1


# =============================================================================
# WORKER SETTINGS
# =============================================================================

class WorkerSettings:
    """ARQ worker configuration.

    Run with: arq adsync.workers.arq_worker.WorkerSettings
    """

    functions = [process_sync_job, scheduled_daily_sync, scheduled_intraday_sync]

    cron_jobs = [
        # 03:00 UTC: finalize yesterday for every account
        cron(scheduled_daily_sync, hour={3}, minute={0}, run_at_startup=False),
        # Every 15 minutes: refresh today's numbers
        cron(scheduled_intraday_sync, minute={0, 15, 30, 45}, run_at_startup=False),
    ]

    redis_settings = get_redis_settings()
    queue_name = "arq:queue"

    on_startup = startup
    on_shutdown = shutdown
    after_job_end = on_job_end

    max_jobs = 10
    job_timeout = 1800  # backfills of large accounts
    keep_result = 3600
    max_tries = 1
    health_check_interval = 60
