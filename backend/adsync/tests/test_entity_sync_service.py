"""Tests for the campaign/adset/ad catalog sync."""

from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from adsync.models import LevelEnum, MetaEntity
from adsync.services import persistence
from adsync.services.entity_sync_service import budget_from_minor_units, sync_account_entities
from adsync.services.meta_graph_client import MetaAuthError, MetaServerError

NOW = datetime(2025, 6, 1, 12, 0, 0)

CATALOG = {
    "campaigns": [
        {"id": "c-1", "name": "Spring Sale", "effective_status": "ACTIVE", "objective": "OUTCOME_SALES", "daily_budget": "5000"},
    ],
    "adsets": [
        {"id": "as-1", "name": "Lookalikes", "campaign_id": "c-1", "effective_status": "ACTIVE", "optimization_goal": "OFFSITE_CONVERSIONS"},
        {"id": "as-2", "name": "Retargeting", "campaign_id": "c-1", "effective_status": "PAUSED", "lifetime_budget": "120000"},
    ],
    "ads": [
        {"id": "ad-1", "name": "Carousel A", "campaign_id": "c-1", "adset_id": "as-1", "effective_status": "ACTIVE"},
        {"name": "no id, ignored"},
    ],
}


class _FakeCatalogClient:
    def __init__(self, catalog=None, failures=None):
        self.catalog = CATALOG if catalog is None else catalog
        self.failures = failures or {}
        self.paths = []

    def fetch_all(self, path, params=None, max_pages=None):
        self.paths.append(path)
        edge = path.rsplit("/", 1)[-1]
        if edge in self.failures:
            raise self.failures[edge]
        return self.catalog.get(edge, [])


def test_budget_from_minor_units():
    assert budget_from_minor_units("5000") == Decimal("50")
    assert budget_from_minor_units(None) is None
    assert budget_from_minor_units("") is None
    assert budget_from_minor_units("n/a") is None


def test_sync_upserts_all_edges(db, workspace, account):
    client = _FakeCatalogClient()

    result = sync_account_entities(db, client, workspace.id, account, now=NOW)

    assert result.success
    assert result.counts == {"campaigns": 1, "adsets": 2, "ads": 1}
    assert client.paths == [f"act_{account.external_id}/campaigns", f"act_{account.external_id}/adsets", f"act_{account.external_id}/ads"]

    campaign = db.query(MetaEntity).filter_by(entity_id="c-1").one()
    assert campaign.entity_type == LevelEnum.campaign
    assert campaign.daily_budget == Decimal("50.00")
    adset = db.query(MetaEntity).filter_by(entity_id="as-1").one()
    assert adset.extra_data == {"optimization_goal": "OFFSITE_CONVERSIONS"}
    assert db.query(MetaEntity).filter_by(entity_id="as-2").one().lifetime_budget == Decimal("1200.00")

    watermark = persistence.get_or_create_watermark(db, workspace.id, account.id)
    assert watermark.entities_synced_at == NOW


def test_resync_is_idempotent(db, workspace, account):
    sync_account_entities(db, _FakeCatalogClient(), workspace.id, account, now=NOW)
    sync_account_entities(db, _FakeCatalogClient(), workspace.id, account, force=True, now=NOW)

    assert db.query(MetaEntity).count() == 4


def test_recent_sync_is_skipped_unless_forced(db, workspace, account):
    sync_account_entities(db, _FakeCatalogClient(), workspace.id, account, now=NOW)

    client = _FakeCatalogClient()
    result = sync_account_entities(db, client, workspace.id, account, now=NOW + timedelta(hours=1))
    assert result.skipped is True
    assert client.paths == []

    result = sync_account_entities(db, client, workspace.id, account, force=True, now=NOW + timedelta(hours=1))
    assert result.skipped is False
    assert len(client.paths) == 3


def test_edge_failure_is_isolated_and_keeps_watermark(db, workspace, account):
    """WHAT: The adsets edge fails on Meta's side
    WHY: Campaigns and ads still land; the catalog timestamp stays unset so the next run retries
    """
    client = _FakeCatalogClient(failures={"adsets": MetaServerError("Service temporarily unavailable", code=2)})

    result = sync_account_entities(db, client, workspace.id, account, now=NOW)

    assert result.counts == {"campaigns": 1, "ads": 1}
    assert result.errors == ["adsets: Service temporarily unavailable"]
    watermark = persistence.get_or_create_watermark(db, workspace.id, account.id)
    assert watermark.entities_synced_at is None


def test_auth_failure_propagates(db, workspace, account):
    client = _FakeCatalogClient(failures={"campaigns": MetaAuthError("Session has expired", code=190, subcode=463)})

    with pytest.raises(MetaAuthError):
        sync_account_entities(db, client, workspace.id, account, now=NOW)
