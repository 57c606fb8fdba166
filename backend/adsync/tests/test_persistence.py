"""Tests for keyed upserts, job transitions and watermark bookkeeping."""

from datetime import date
from decimal import Decimal

import pytest

from adsync.models import (
    AdCreative,
    FetchStatusEnum,
    InsightDaily,
    LevelEnum,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
)
from adsync.services import persistence
from adsync.services.persistence import SyncJobStateError


def _daily_values(workspace, account, **overrides):
    values = {
        "workspace_id": workspace.id,
        "ad_account_id": account.id,
        "level": LevelEnum.campaign,
        "entity_id": "c-1",
        "entity_name": "Spring Sale",
        "date": date(2025, 5, 1),
        "spend": Decimal("10.50"),
        "impressions": 1000,
        "clicks": 20,
    }
    values.update(overrides)
    return values


def test_insight_upsert_updates_in_place(db, workspace, account):
    persistence.upsert_insight_daily(db, _daily_values(workspace, account))
    persistence.upsert_insight_daily(db, _daily_values(workspace, account, spend=Decimal("12.00"), clicks=25))
    db.commit()

    rows = db.query(InsightDaily).all()
    assert len(rows) == 1
    assert rows[0].spend == Decimal("12.00")
    assert rows[0].clicks == 25


def test_insight_key_includes_level_and_date(db, workspace, account):
    persistence.upsert_insight_daily(db, _daily_values(workspace, account))
    persistence.upsert_insight_daily(db, _daily_values(workspace, account, level=LevelEnum.ad))
    persistence.upsert_insight_daily(db, _daily_values(workspace, account, date=date(2025, 5, 2)))
    db.commit()

    assert db.query(InsightDaily).count() == 3


def _job(db, workspace, account, mode=SyncJobTypeEnum.daily):
    return persistence.create_job(
        db,
        workspace_id=workspace.id,
        ad_account_id=account.id,
        job_type=mode,
        date_from=date(2025, 5, 1),
        date_to=date(2025, 5, 1),
        levels=[LevelEnum.campaign, LevelEnum.ad],
    )


def test_job_lifecycle(db, workspace, account):
    job = _job(db, workspace, account)
    assert job.status == SyncJobStatusEnum.running
    assert job.levels == "campaign,ad"

    persistence.finalize_job(db, job, errors=[], fetched_rows=4, total_records_synced=4, counts={"campaign": 2, "ad": 2})

    assert job.status == SyncJobStatusEnum.completed
    assert job.error_message is None
    assert job.counts == {"campaign": 2, "ad": 2}
    assert job.duration_seconds is not None


def test_failed_job_keeps_errors_and_is_terminal(db, workspace, account):
    job = _job(db, workspace, account)
    persistence.finalize_job(db, job, errors=["campaign: boom", "ad: boom"], fetched_rows=0, total_records_synced=0)

    assert job.status == SyncJobStatusEnum.failed
    assert job.error_message == "campaign: boom; ad: boom"
    with pytest.raises(SyncJobStateError):
        persistence.finalize_job(db, job, errors=[], fetched_rows=1, total_records_synced=1)


def test_daily_watermark_never_moves_backwards(db, workspace, account):
    watermark = persistence.get_or_create_watermark(db, workspace.id, account.id)

    persistence.update_watermark(db, watermark, mode=SyncJobTypeEnum.daily, date_to=date(2025, 5, 10))
    persistence.update_watermark(db, watermark, mode=SyncJobTypeEnum.daily, date_to=date(2025, 5, 3))

    assert watermark.last_daily_date_synced == date(2025, 5, 10)
    assert watermark.last_success_at is not None


def test_failed_run_records_error_without_moving_cursors(db, workspace, account):
    watermark = persistence.get_or_create_watermark(db, workspace.id, account.id)
    persistence.update_watermark(db, watermark, mode=SyncJobTypeEnum.intraday, date_to=date(2025, 5, 10))
    stamped = watermark.last_intraday_synced_at

    persistence.update_watermark(
        db, watermark, mode=SyncJobTypeEnum.intraday, date_to=date(2025, 5, 10), error="ad: rate limited",
    )

    assert watermark.last_error == "ad: rate limited"
    assert watermark.last_intraday_synced_at == stamped


def test_watermark_created_once(db, workspace, account):
    first = persistence.get_or_create_watermark(db, workspace.id, account.id)
    second = persistence.get_or_create_watermark(db, workspace.id, account.id)

    assert first.id == second.id
    assert first.sync_enabled is True


def test_creative_failure_does_not_clobber_resolved_fields(db, workspace, account):
    """WHAT: A later failed fetch for an ad that resolved before
    WHY: The last good media and copy must survive transient failures
    """
    persistence.upsert_creative(db, {
        "workspace_id": workspace.id,
        "ad_account_id": account.id,
        "ad_id": "ad-1",
        "image_url": "https://cdn.example.com/full.jpg",
        "title": "Summer drop",
        "fetch_status": FetchStatusEnum.success,
        "is_complete": True,
    })
    db.commit()

    persistence.record_creative_fetch_failure(
        db, workspace_id=workspace.id, ad_id="ad-1", error_message="Meta API unavailable",
    )
    db.commit()
    db.expire_all()

    creative = db.query(AdCreative).filter_by(ad_id="ad-1").one()
    assert creative.image_url == "https://cdn.example.com/full.jpg"
    assert creative.title == "Summer drop"
    assert creative.fetch_status == FetchStatusEnum.success
    assert creative.error_message == "Meta API unavailable"
    assert creative.fetch_attempts == 2


def test_creative_failure_for_unknown_ad_creates_failed_row(db, workspace):
    persistence.record_creative_fetch_failure(db, workspace_id=workspace.id, ad_id="ad-9", error_message="gone")
    db.commit()

    creative = db.query(AdCreative).filter_by(ad_id="ad-9").one()
    assert creative.fetch_status == FetchStatusEnum.failed
    assert creative.fetch_attempts == 1


def test_get_creatives_scoped_to_workspace(db, workspace, other_workspace):
    for ws in (workspace, other_workspace):
        persistence.upsert_creative(db, {"workspace_id": ws.id, "ad_id": "ad-1", "fetch_status": FetchStatusEnum.success})
    db.commit()

    found = persistence.get_creatives(db, workspace.id, ["ad-1", "ad-2"])

    assert list(found) == ["ad-1"]
    assert found["ad-1"].workspace_id == workspace.id
    assert persistence.get_creatives(db, workspace.id, []) == {}
