"""Catalog sync for campaigns, ad sets and ads.

WHAT:
    Pages the account's campaigns, adsets and ads edges and upserts them into
    meta_entities keyed by (workspace, account, entity_type, entity_id).

WHY:
    - Insights rows only carry ids and names; reporting also needs status,
      objective and budgets.
    - The catalog changes slowly, so a fetch younger than ENTITY_SYNC_TTL_HOURS
      is reused unless the caller forces a refresh.

REFERENCES:
    - adsync/services/insights_sync_service.py (optional pre-step of run_sync)
    - https://developers.facebook.com/docs/marketing-api/reference/ad-campaign-group
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import AdAccount, LevelEnum
from adsync.services import persistence
from adsync.services.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError
from adsync.services.persistence import PersistenceError

logger = logging.getLogger(__name__)

ENTITY_EDGES = {
    LevelEnum.campaign: ("campaigns", "id,name,effective_status,objective,daily_budget,lifetime_budget"),
    LevelEnum.adset: (
        "adsets",
        "id,name,effective_status,campaign_id,daily_budget,lifetime_budget,optimization_goal",
    ),
    LevelEnum.ad: ("ads", "id,name,effective_status,campaign_id,adset_id"),
}
PAGE_LIMIT = 500


@dataclass
class EntitySyncResult:
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    skipped: bool = False

    @property
    def total(self) -> int:
        return sum(self.counts.values())

    @property
    def success(self) -> bool:
        return not self.errors


def budget_from_minor_units(value: Any) -> Optional[Decimal]:
    """Meta reports budgets in the currency's minor unit (cents)."""
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value)) / 100
    except InvalidOperation:
        return None


def entity_values(workspace_id: UUID, account: AdAccount, level: LevelEnum, row: Dict[str, Any]) -> Dict[str, Any]:
    values = {
        "workspace_id": workspace_id,
        "ad_account_id": account.id,
        "entity_type": level,
        "entity_id": str(row["id"]),
        "name": row.get("name"),
        "status": row.get("effective_status"),
        "objective": row.get("objective"),
        "daily_budget": budget_from_minor_units(row.get("daily_budget")),
        "lifetime_budget": budget_from_minor_units(row.get("lifetime_budget")),
        "campaign_id": row.get("campaign_id"),
        "adset_id": row.get("adset_id"),
        "extra_data": None,
    }
    if level == LevelEnum.adset and row.get("optimization_goal"):
        values["extra_data"] = {"optimization_goal": row["optimization_goal"]}
    return values


def sync_account_entities(
    db: Session,
    client: MetaGraphClient,
    workspace_id: UUID,
    account: AdAccount,
    *,
    force: bool = False,
    now: Optional[datetime] = None,
) -> EntitySyncResult:
    """Refresh the entity catalog of one ad account.

    Raises:
        MetaAuthError: The token stopped working (the caller decides what to flag).
    """
    from adsync.deps import get_settings

    now = now or datetime.utcnow()
    result = EntitySyncResult()
    watermark = persistence.get_or_create_watermark(db, workspace_id, account.id)

    ttl = timedelta(hours=get_settings().ENTITY_SYNC_TTL_HOURS)
    if not force and watermark.entities_synced_at and now - watermark.entities_synced_at < ttl:
        logger.info(
            "[ENTITY_SYNC] Account %s synced at %s, within %s; skipping",
            account.external_id, watermark.entities_synced_at.isoformat(), ttl,
        )
        result.skipped = True
        return result

    for level, (edge, fields) in ENTITY_EDGES.items():
        try:
            rows = client.fetch_all(f"{account.graph_id}/{edge}", {"fields": fields, "limit": PAGE_LIMIT})
        except MetaAuthError:
            raise
        except MetaGraphError as exc:
            logger.error("[ENTITY_SYNC] %s fetch failed for account %s: %s", edge, account.external_id, exc)
            result.errors.append(f"{edge}: {exc.message}")
            continue

        count = 0
        try:
            for row in rows:
                if not row.get("id"):
                    continue
                persistence.upsert_entity(db, entity_values(workspace_id, account, level, row))
                count += 1
            persistence.commit(db)
        except PersistenceError as exc:
            result.errors.append(f"{edge}: {exc}")
            continue
        result.counts[edge] = count

    if not result.errors:
        watermark.entities_synced_at = now
        persistence.commit(db)

    logger.info(
        "[ENTITY_SYNC] Account %s: %s (errors=%d)", account.external_id, result.counts, len(result.errors),
    )
    return result
