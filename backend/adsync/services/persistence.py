"""Persistence helpers for the Meta sync tables.

WHAT:
    Keyed upserts (insights, entities, creatives), the append-only raw
    insights log, sync job lifecycle and watermark updates.

WHY:
    - Re-running the same range must never duplicate rows: every normalized
      write is INSERT .. ON CONFLICT DO UPDATE on the table's natural key.
    - Works on PostgreSQL (production) and SQLite (tests), both of which
      support ON CONFLICT upserts.
    - Database failures surface as PersistenceError so services can report
      them next to the in-memory results instead of losing those results.

REFERENCES:
    - adsync/models.py (unique constraints used as conflict targets)
    - adsync/services/insights_sync_service.py
    - adsync/services/creative_service.py
"""

from __future__ import annotations

import logging
from datetime import date, datetime
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import UUID

from sqlalchemy import insert as generic_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from adsync.models import (
    AdCreative,
    InsightDaily,
    InsightRaw,
    LevelEnum,
    MetaEntity,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
    SyncWatermark,
)

logger = logging.getLogger(__name__)

INSIGHT_DAILY_KEY = ("workspace_id", "ad_account_id", "level", "entity_id", "date")
ENTITY_KEY = ("workspace_id", "ad_account_id", "entity_type", "entity_id")
CREATIVE_KEY = ("workspace_id", "ad_id")

# Columns a failed fetch is allowed to touch; resolved media/text stay intact.
CREATIVE_FAILURE_COLUMNS = ("error_message", "last_validated_at", "updated_at")


class PersistenceError(Exception):
    """Raised when a database write fails."""


class SyncJobStateError(Exception):
    """Raised on an illegal job transition (terminal jobs are immutable)."""


# =============================================================================
# GENERIC UPSERT
# =============================================================================

def _dialect_insert(db: Session):
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
    elif dialect == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
    else:
        raise PersistenceError(f"Keyed upsert is not supported on dialect '{dialect}'")
    return insert


def upsert(
    db: Session,
    model,
    values: Dict[str, Any],
    key: Sequence[str],
    *,
    extra_set: Optional[Dict[str, Any]] = None,
    update_columns: Optional[Iterable[str]] = None,
) -> None:
    """INSERT a row or UPDATE it in place when `key` already exists.

    Args:
        model: ORM class whose table carries a unique constraint on `key`.
        values: Column values for the insert.
        key: Conflict target columns.
        extra_set: Additional SET expressions for the update branch only.
        update_columns: Columns to overwrite on conflict (default: all non-key).
    """
    insert = _dialect_insert(db)
    stmt = insert(model.__table__).values(**values)
    columns = list(update_columns) if update_columns is not None else [c for c in values if c not in key]
    set_ = {column: stmt.excluded[column] for column in columns}
    set_.update(extra_set or {})

    stmt = stmt.on_conflict_do_update(index_elements=list(key), set_=set_)
    try:
        db.execute(stmt)
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[PERSISTENCE] Upsert into %s failed: %s", model.__tablename__, exc)
        raise PersistenceError(f"Upsert into {model.__tablename__} failed: {exc}") from exc


def commit(db: Session) -> None:
    try:
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        logger.error("[PERSISTENCE] Commit failed: %s", exc)
        raise PersistenceError(f"Commit failed: {exc}") from exc


# =============================================================================
# INSIGHTS
# =============================================================================

def insert_insight_raw(
    db: Session,
    *,
    workspace_id: UUID,
    ad_account_id: UUID,
    level: LevelEnum,
    entity_id: str,
    date_start: date,
    date_stop: Optional[date],
    payload: Dict[str, Any],
    sync_job_id: Optional[UUID] = None,
) -> None:
    """Append one raw insights row (never updated afterwards)."""
    try:
        db.execute(
            generic_insert(InsightRaw.__table__).values(
                workspace_id=workspace_id,
                ad_account_id=ad_account_id,
                sync_job_id=sync_job_id,
                level=level,
                entity_id=entity_id,
                date_start=date_start,
                date_stop=date_stop,
                payload=payload,
                fetched_at=datetime.utcnow(),
            )
        )
    except SQLAlchemyError as exc:
        db.rollback()
        raise PersistenceError(f"Raw insight insert failed: {exc}") from exc


def upsert_insight_daily(db: Session, values: Dict[str, Any]) -> None:
    """Upsert one normalized row keyed by (workspace, account, level, entity, date)."""
    values = {**values, "synced_at": datetime.utcnow()}
    upsert(db, InsightDaily, values, INSIGHT_DAILY_KEY)


# =============================================================================
# CATALOG
# =============================================================================

def upsert_entity(db: Session, values: Dict[str, Any]) -> None:
    values = {**values, "synced_at": datetime.utcnow()}
    upsert(db, MetaEntity, values, ENTITY_KEY)


# =============================================================================
# CREATIVES
# =============================================================================

def upsert_creative(db: Session, values: Dict[str, Any]) -> None:
    """Overwrite the creative for (workspace, ad) and count the attempt.

    Re-resolution replaces prior values; there is no history for this row.
    """
    now = datetime.utcnow()
    values = {**values, "updated_at": now, "fetch_attempts": 1}
    table = AdCreative.__table__
    columns = [c for c in values if c not in CREATIVE_KEY and c != "fetch_attempts"]
    upsert(
        db,
        AdCreative,
        values,
        CREATIVE_KEY,
        update_columns=columns,
        extra_set={"fetch_attempts": table.c.fetch_attempts + 1},
    )


def record_creative_fetch_failure(
    db: Session,
    *,
    workspace_id: UUID,
    ad_id: str,
    error_message: str,
    ad_account_id: Optional[UUID] = None,
) -> None:
    """Count a failed fetch without clobbering previously resolved fields."""
    now = datetime.utcnow()
    table = AdCreative.__table__
    values = {
        "workspace_id": workspace_id,
        "ad_account_id": ad_account_id,
        "ad_id": ad_id,
        "error_message": error_message[:2000],
        "last_validated_at": now,
        "updated_at": now,
        "fetch_attempts": 1,
    }
    upsert(
        db,
        AdCreative,
        values,
        CREATIVE_KEY,
        update_columns=CREATIVE_FAILURE_COLUMNS,
        extra_set={"fetch_attempts": table.c.fetch_attempts + 1},
    )


def get_creatives(db: Session, workspace_id: UUID, ad_ids: Sequence[str]) -> Dict[str, AdCreative]:
    if not ad_ids:
        return {}
    rows = (
        db.query(AdCreative)
        .filter(AdCreative.workspace_id == workspace_id, AdCreative.ad_id.in_(list(ad_ids)))
        .all()
    )
    return {row.ad_id: row for row in rows}


# =============================================================================
# JOBS
# =============================================================================

def create_job(
    db: Session,
    *,
    workspace_id: UUID,
    ad_account_id: UUID,
    job_type: SyncJobTypeEnum,
    date_from: date,
    date_to: date,
    levels: Sequence[LevelEnum],
) -> SyncJob:
    """Create a job row in `running` state and commit it immediately."""
    job = SyncJob(
        workspace_id=workspace_id,
        ad_account_id=ad_account_id,
        job_type=job_type,
        levels=",".join(level.value for level in levels),
        date_from=date_from,
        date_to=date_to,
        status=SyncJobStatusEnum.running,
        started_at=datetime.utcnow(),
    )
    db.add(job)
    commit(db)
    db.refresh(job)
    return job


def finalize_job(
    db: Session,
    job: SyncJob,
    *,
    errors: List[str],
    fetched_rows: int,
    total_records_synced: int,
    skipped_rows: int = 0,
    counts: Optional[Dict[str, int]] = None,
) -> SyncJob:
    """Move a running job to completed/failed and record its outcome.

    Raises:
        SyncJobStateError: The job already reached a terminal state.
    """
    if job.status != SyncJobStatusEnum.running:
        raise SyncJobStateError(f"Job {job.id} is already {job.status.value}")

    ended_at = datetime.utcnow()
    job.status = SyncJobStatusEnum.failed if errors else SyncJobStatusEnum.completed
    job.error_message = "; ".join(errors) if errors else None
    job.fetched_rows = fetched_rows
    job.total_records_synced = total_records_synced
    job.skipped_rows = skipped_rows
    job.counts = dict(counts or {})
    job.ended_at = ended_at
    job.duration_seconds = (ended_at - job.started_at).total_seconds() if job.started_at else None
    commit(db)
    return job


# =============================================================================
# WATERMARKS
# =============================================================================

def get_or_create_watermark(db: Session, workspace_id: UUID, ad_account_id: UUID) -> SyncWatermark:
    watermark = (
        db.query(SyncWatermark)
        .filter(SyncWatermark.workspace_id == workspace_id, SyncWatermark.ad_account_id == ad_account_id)
        .first()
    )
    if watermark is None:
        watermark = SyncWatermark(workspace_id=workspace_id, ad_account_id=ad_account_id, sync_enabled=True)
        db.add(watermark)
        db.flush()
    return watermark


def update_watermark(
    db: Session,
    watermark: SyncWatermark,
    *,
    mode: SyncJobTypeEnum,
    date_to: date,
    error: Optional[str] = None,
) -> SyncWatermark:
    """Record the outcome of a run on the account's cursor.

    - Success: last_success_at always; last_intraday_synced_at for intraday;
      last_daily_date_synced for daily, only ever moving forward.
    - Failure: last_error only; cursors stay where they were.
    """
    now = datetime.utcnow()
    if error:
        watermark.last_error = error[:2000]
    else:
        watermark.last_error = None
        watermark.last_success_at = now
        if mode == SyncJobTypeEnum.intraday:
            watermark.last_intraday_synced_at = now
        elif mode == SyncJobTypeEnum.daily:
            current = watermark.last_daily_date_synced
            if current is None or date_to > current:
                watermark.last_daily_date_synced = date_to
    watermark.updated_at = now
    commit(db)
    return watermark
