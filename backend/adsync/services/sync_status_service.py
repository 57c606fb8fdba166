"""Sync health report for a workspace.

WHAT:
    Connection summary, per-account data freshness, watermarks, the most
    recent jobs and a single health verdict.

HEALTH:
    - disconnected: no connection in `connected` status
    - error: any watermark carries last_error
    - stale: any watermark without a success in the last 24h
    - healthy: otherwise
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func
from sqlalchemy.orm import Session

from adsync.models import (
    AdAccount,
    Connection,
    ConnectionStatusEnum,
    InsightDaily,
    ProviderEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncWatermark,
)

logger = logging.getLogger(__name__)

RECENT_JOBS_LIMIT = 20
STALE_AFTER = timedelta(hours=24)


def compute_health(
    connections: List[Connection], watermarks: List[SyncWatermark], now: Optional[datetime] = None
) -> str:
    now = now or datetime.utcnow()
    if not any(c.status == ConnectionStatusEnum.connected for c in connections):
        return "disconnected"
    if any(w.last_error for w in watermarks):
        return "error"
    if any(w.last_success_at is None or w.last_success_at < now - STALE_AFTER for w in watermarks):
        return "stale"
    return "healthy"


def _freshness(db: Session, workspace_id: UUID) -> Dict[UUID, Dict[str, Any]]:
    rows = (
        db.query(
            InsightDaily.ad_account_id,
            InsightDaily.level,
            func.count(InsightDaily.id),
            func.max(InsightDaily.date),
        )
        .filter(InsightDaily.workspace_id == workspace_id)
        .group_by(InsightDaily.ad_account_id, InsightDaily.level)
        .all()
    )
    freshness: Dict[UUID, Dict[str, Any]] = {}
    for account_id, level, count, latest in rows:
        entry = freshness.setdefault(
            account_id, {"total_rows": 0, "latest_date": None, "levels": {"campaign": 0, "adset": 0, "ad": 0}},
        )
        entry["total_rows"] += count
        entry["levels"][level.value] = count
        if latest and (entry["latest_date"] is None or latest > entry["latest_date"]):
            entry["latest_date"] = latest
    return freshness


def get_sync_status(db: Session, workspace_id: UUID, now: Optional[datetime] = None) -> Dict[str, Any]:
    connections = (
        db.query(Connection)
        .filter(Connection.workspace_id == workspace_id, Connection.provider == ProviderEnum.meta)
        .all()
    )
    accounts = (
        db.query(AdAccount)
        .filter(AdAccount.workspace_id == workspace_id)
        .order_by(AdAccount.external_id)
        .all()
    )
    watermarks = db.query(SyncWatermark).filter(SyncWatermark.workspace_id == workspace_id).all()
    jobs = (
        db.query(SyncJob)
        .filter(SyncJob.workspace_id == workspace_id)
        .order_by(SyncJob.started_at.desc())
        .limit(RECENT_JOBS_LIMIT)
        .all()
    )
    freshness = _freshness(db, workspace_id)
    watermark_by_account = {w.ad_account_id: w for w in watermarks}
    default = next((c for c in connections if c.is_default), connections[0] if connections else None)

    report = {
        "workspace_id": workspace_id,
        "health": compute_health(connections, watermarks, now),
        "connection": None,
        "connections": [
            {
                "id": c.id,
                "name": c.name,
                "status": c.status.value,
                "is_default": bool(c.is_default),
                "granted_scopes": c.granted_scopes or [],
                "last_validated_at": c.last_validated_at,
                "last_error": c.last_error,
            }
            for c in connections
        ],
        "ad_accounts": [],
        "recent_jobs": [
            {
                "id": job.id,
                "account_id": job.ad_account.external_id if job.ad_account else None,
                "job_type": job.job_type.value,
                "levels": job.levels,
                "status": job.status.value,
                "fetched_rows": job.fetched_rows,
                "total_records_synced": job.total_records_synced,
                "error_message": job.error_message,
                "date_from": job.date_from,
                "date_to": job.date_to,
                "started_at": job.started_at,
                "ended_at": job.ended_at,
                "duration_seconds": job.duration_seconds,
            }
            for job in jobs
        ],
        "totals": {
            "ad_accounts": len(accounts),
            "total_insights_rows": sum(entry["total_rows"] for entry in freshness.values()),
            "jobs_with_errors": sum(1 for job in jobs if job.status == SyncJobStatusEnum.failed),
        },
    }
    if default is not None:
        report["connection"] = next(c for c in report["connections"] if c["id"] == default.id)

    for account in accounts:
        watermark = watermark_by_account.get(account.id)
        report["ad_accounts"].append({
            "id": account.id,
            "account_id": account.external_id,
            "name": account.name,
            "currency": account.currency,
            "timezone": account.timezone,
            "account_status": account.account_status,
            "primary_connection_id": account.primary_connection_id,
            "freshness": freshness.get(account.id, {"total_rows": 0, "latest_date": None, "levels": {}}),
            "sync_state": {
                "last_daily_date_synced": watermark.last_daily_date_synced,
                "last_intraday_synced_at": watermark.last_intraday_synced_at,
                "last_success_at": watermark.last_success_at,
                "last_error": watermark.last_error,
                "sync_enabled": watermark.sync_enabled,
                "entities_synced_at": watermark.entities_synced_at,
            } if watermark else None,
        })

    logger.debug("[SYNC_STATUS] Workspace %s health=%s", workspace_id, report["health"])
    return report
