"""Tests for the workspace sync health report."""

from datetime import date, datetime, timedelta
from types import SimpleNamespace

from adsync.models import ConnectionStatusEnum, LevelEnum, SyncJobTypeEnum
from adsync.services import persistence
from adsync.services.sync_status_service import compute_health, get_sync_status

NOW = datetime(2025, 6, 1, 12, 0, 0)


def _conn(status=ConnectionStatusEnum.connected):
    return SimpleNamespace(status=status)


def _mark(last_success_at=NOW, last_error=None):
    return SimpleNamespace(last_success_at=last_success_at, last_error=last_error)


def test_health_verdicts():
    assert compute_health([], [], NOW) == "disconnected"
    assert compute_health([_conn(ConnectionStatusEnum.error)], [_mark()], NOW) == "disconnected"
    assert compute_health([_conn()], [_mark(last_error="ad: boom")], NOW) == "error"
    assert compute_health([_conn()], [_mark(last_success_at=None)], NOW) == "stale"
    assert compute_health([_conn()], [_mark(last_success_at=NOW - timedelta(hours=25))], NOW) == "stale"
    assert compute_health([_conn()], [_mark(last_success_at=NOW - timedelta(hours=2))], NOW) == "healthy"


def test_error_outranks_stale():
    marks = [_mark(last_success_at=None), _mark(last_error="campaign: timeout")]
    assert compute_health([_conn()], marks, NOW) == "error"


def test_status_report_shape(db, workspace, connection, account):
    persistence.upsert_insight_daily(db, {
        "workspace_id": workspace.id,
        "ad_account_id": account.id,
        "level": LevelEnum.ad,
        "entity_id": "ad-1",
        "date": date(2025, 5, 31),
    })
    persistence.upsert_insight_daily(db, {
        "workspace_id": workspace.id,
        "ad_account_id": account.id,
        "level": LevelEnum.campaign,
        "entity_id": "c-1",
        "date": date(2025, 5, 30),
    })
    job = persistence.create_job(
        db,
        workspace_id=workspace.id,
        ad_account_id=account.id,
        job_type=SyncJobTypeEnum.daily,
        date_from=date(2025, 5, 31),
        date_to=date(2025, 5, 31),
        levels=[LevelEnum.campaign, LevelEnum.ad],
    )
    persistence.finalize_job(db, job, errors=[], fetched_rows=2, total_records_synced=2)
    watermark = persistence.get_or_create_watermark(db, workspace.id, account.id)
    persistence.update_watermark(db, watermark, mode=SyncJobTypeEnum.daily, date_to=date(2025, 5, 31))

    report = get_sync_status(db, workspace.id)

    assert report["health"] == "healthy"
    assert report["connection"]["id"] == connection.id
    assert report["connection"]["is_default"] is True
    [entry] = report["ad_accounts"]
    assert entry["account_id"] == account.external_id
    assert entry["freshness"]["total_rows"] == 2
    assert entry["freshness"]["latest_date"] == date(2025, 5, 31)
    assert entry["freshness"]["levels"] == {"campaign": 1, "adset": 0, "ad": 1}
    assert entry["sync_state"]["last_daily_date_synced"] == date(2025, 5, 31)
    assert report["recent_jobs"][0]["status"] == "completed"
    assert report["recent_jobs"][0]["account_id"] == account.external_id
    assert report["totals"] == {"ad_accounts": 1, "total_insights_rows": 2, "jobs_with_errors": 0}


def test_account_without_watermark_has_no_sync_state(db, workspace, connection, account):
    report = get_sync_status(db, workspace.id)

    [entry] = report["ad_accounts"]
    assert entry["sync_state"] is None
    assert entry["freshness"]["total_rows"] == 0
    assert report["health"] == "healthy"


def test_report_is_workspace_scoped(db, workspace, other_workspace, connection_factory, account):
    connection_factory(target_workspace=other_workspace, meta_user_id="u-other")

    report = get_sync_status(db, other_workspace.id)

    assert report["ad_accounts"] == []
    assert len(report["connections"]) == 1
    assert report["totals"]["ad_accounts"] == 0


def test_no_connection_is_disconnected(db, workspace):
    report = get_sync_status(db, workspace.id)

    assert report["health"] == "disconnected"
    assert report["connection"] is None
