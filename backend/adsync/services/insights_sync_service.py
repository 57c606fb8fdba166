"""Incremental Meta insights sync.

WHAT:
    Runs one sync invocation (daily, intraday or backfill) over one or more ad
    accounts of a workspace:

        for each account (sequentially):
            create job (running)
            [optional] refresh entity catalog
            for each level: fetch every insights page -> raw row + normalized upsert
            [optional] resolve creatives for every ad id seen at the ad level
            finalize job (completed | failed), update watermark

WHY:
    - Accounts run one after another so a workspace shares one upstream
      rate-limit budget; a failing account never aborts its siblings.
    - Normalized rows are keyed upserts, so re-running a range is idempotent.
    - Date windows are computed in the ad account's timezone, which is how
      Meta buckets insights days.

REFERENCES:
    - adsync/services/persistence.py (upserts, job lifecycle, watermarks)
    - adsync/services/creative_service.py (creative batch resolution)
    - https://developers.facebook.com/docs/marketing-api/insights
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import (
    AdAccount,
    Connection,
    ConnectionStatusEnum,
    LevelEnum,
    SyncJob,
    SyncJobStatusEnum,
    SyncJobTypeEnum,
)
from adsync.security import EncryptionUnavailableError, TokenDecryptionError, TokenVault, get_token_vault
from adsync.services import connection_service, persistence
from adsync.services.creative_service import BatchResolutionResult, resolve_creatives_batch
from adsync.services.entity_sync_service import EntitySyncResult, sync_account_entities
from adsync.services.media_cache import MediaCache
from adsync.services.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError
from adsync.services.persistence import PersistenceError
from adsync.services.token_service import MissingTokenError, get_access_token
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

DEFAULT_LEVELS = (LevelEnum.campaign, LevelEnum.adset, LevelEnum.ad)
DEFAULT_BACKFILL_DAYS = 7
PAGE_LIMIT = 500

INSIGHT_FIELDS = ",".join([
    "campaign_id", "campaign_name", "adset_id", "adset_name", "ad_id", "ad_name",
    "date_start", "date_stop", "spend", "impressions", "reach", "clicks", "ctr", "cpc",
    "cpm", "frequency", "unique_clicks", "actions", "action_values", "account_currency",
])

# (id field, name field) per level
LEVEL_KEYS = {
    LevelEnum.campaign: ("campaign_id", "campaign_name"),
    LevelEnum.adset: ("adset_id", "adset_name"),
    LevelEnum.ad: ("ad_id", "ad_name"),
}

LEAD_ACTIONS = frozenset({"lead", "onsite_conversion.lead_grouped"})
CONVERSION_ACTIONS = frozenset({
    "lead",
    "purchase",
    "complete_registration",
    "offsite_conversion.fb_pixel_purchase",
    "onsite_conversion.purchase",
    "offsite_conversion.fb_pixel_lead",
})
CONVERSION_VALUE_ACTIONS = frozenset({
    "purchase",
    "offsite_conversion.fb_pixel_purchase",
    "onsite_conversion.purchase",
})
PURCHASE_VALUE_ACTIONS = frozenset({"purchase", "offsite_conversion.fb_pixel_purchase"})

ClientFactory = Callable[[str], MetaGraphClient]


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class AccountSyncResult:
    account_id: str
    ad_account_id: Optional[UUID] = None
    job_id: Optional[UUID] = None
    status: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    rows_synced: int = 0
    skipped_rows: int = 0
    counts: Dict[str, int] = field(default_factory=dict)
    errors: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)
    creatives: Optional[BatchResolutionResult] = None
    entities: Optional[EntitySyncResult] = None
    auth_failed: bool = False

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class JobSummary:
    """Outcome of one run_sync invocation.

    Reports synced and failed account counts side by side; a multi-account run
    is never reduced to one boolean.
    """

    mode: SyncJobTypeEnum
    accounts_synced: int = 0
    accounts_failed: int = 0
    accounts_skipped: int = 0
    total_rows: int = 0
    results: List[AccountSyncResult] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return self.accounts_failed == 0 and not self.errors

    @property
    def partial(self) -> bool:
        return self.accounts_synced > 0 and self.accounts_failed > 0

    def add(self, result: AccountSyncResult) -> None:
        self.results.append(result)
        self.total_rows += result.rows_synced
        if result.success:
            self.accounts_synced += 1
        else:
            self.accounts_failed += 1
            self.errors.extend(f"Account {result.account_id}: {error}" for error in result.errors)


# =============================================================================
# DATE WINDOWS
# =============================================================================

def account_today(timezone_name: Optional[str], now: Optional[datetime] = None) -> date:
    """Current calendar date in the account's timezone (UTC when unknown)."""
    from zoneinfo import ZoneInfo

    tz = timezone.utc
    if timezone_name:
        try:
            tz = ZoneInfo(timezone_name)
        except Exception:
            logger.warning("[META_SYNC] Invalid timezone '%s', falling back to UTC", timezone_name)
            tz = timezone.utc

    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(tz).date()


def account_date_range(
    mode: SyncJobTypeEnum,
    timezone_name: Optional[str] = None,
    backfill_days: int = DEFAULT_BACKFILL_DAYS,
    now: Optional[datetime] = None,
) -> Tuple[date, date]:
    """Date window for a sync mode.

    - daily: yesterday
    - intraday: today
    - backfill: today - backfill_days .. today
    """
    today = account_today(timezone_name, now)
    if mode == SyncJobTypeEnum.daily:
        yesterday = today - timedelta(days=1)
        return yesterday, yesterday
    if mode == SyncJobTypeEnum.intraday:
        return today, today
    if mode == SyncJobTypeEnum.backfill:
        return today - timedelta(days=max(0, backfill_days)), today
    raise ValueError(f"Unknown sync mode: {mode}")


# =============================================================================
# NORMALIZATION
# =============================================================================

def _float(value: Any) -> float:
    try:
        return float(value) if value not in (None, "") else 0.0
    except (TypeError, ValueError):
        return 0.0


def _int(value: Any) -> int:
    try:
        return int(float(value)) if value not in (None, "") else 0
    except (TypeError, ValueError):
        return 0


def _optional_float(value: Any) -> Optional[float]:
    if value in (None, ""):
        return None
    return _float(value)


def sum_actions(actions: Optional[Iterable[Dict[str, Any]]], action_types: frozenset) -> float:
    """Sum `value` over entries whose action_type is in `action_types`."""
    if not actions:
        return 0.0
    return sum(_float(action.get("value")) for action in actions if action.get("action_type") in action_types)


def _parse_date(value: Optional[str]) -> Optional[date]:
    return date.fromisoformat(value) if value else None


def normalize_insight_row(
    workspace_id: UUID, account: AdAccount, level: LevelEnum, row: Dict[str, Any]
) -> Optional[Dict[str, Any]]:
    """Map one insights row to meta_insights_daily values; None when it has no id for its level."""
    id_field, name_field = LEVEL_KEYS[level]
    entity_id = row.get(id_field)
    if not entity_id or not row.get("date_start"):
        return None

    actions = row.get("actions") or []
    action_values = row.get("action_values") or []
    return {
        "workspace_id": workspace_id,
        "ad_account_id": account.id,
        "level": level,
        "entity_id": str(entity_id),
        "entity_name": row.get(name_field),
        "date": _parse_date(row["date_start"]),
        "campaign_id": row.get("campaign_id"),
        "campaign_name": row.get("campaign_name"),
        "adset_id": row.get("adset_id"),
        "adset_name": row.get("adset_name"),
        "ad_id": row.get("ad_id"),
        "ad_name": row.get("ad_name"),
        "spend": _float(row.get("spend")),
        "impressions": _int(row.get("impressions")),
        "reach": _int(row.get("reach")),
        "clicks": _int(row.get("clicks")),
        "unique_clicks": _int(row.get("unique_clicks")),
        "ctr": _optional_float(row.get("ctr")),
        "cpc": _optional_float(row.get("cpc")),
        "cpm": _optional_float(row.get("cpm")),
        "frequency": _optional_float(row.get("frequency")),
        "leads": sum_actions(actions, LEAD_ACTIONS),
        "conversions": sum_actions(actions, CONVERSION_ACTIONS),
        "conversion_value": sum_actions(action_values, CONVERSION_VALUE_ACTIONS),
        "purchase_value": sum_actions(action_values, PURCHASE_VALUE_ACTIONS),
        "actions_json": actions,
        "action_values_json": action_values,
        "currency": row.get("account_currency") or account.currency,
    }


def insights_params(level: LevelEnum, date_from: date, date_to: date) -> Dict[str, Any]:
    return {
        "level": level.value,
        "fields": INSIGHT_FIELDS,
        "time_range": json.dumps({"since": date_from.isoformat(), "until": date_to.isoformat()}),
        "time_increment": 1,
        "limit": PAGE_LIMIT,
    }


# =============================================================================
# PER ACCOUNT
# =============================================================================

def _ingest_level(
    db: Session,
    client: MetaGraphClient,
    *,
    workspace_id: UUID,
    account: AdAccount,
    job_id: UUID,
    level: LevelEnum,
    date_from: date,
    date_to: date,
) -> Tuple[int, int, List[str]]:
    """Fetch every page for one level, then write raw + normalized rows.

    Returns:
        (rows_written, rows_skipped, ad_ids_seen)
    """
    rows = client.fetch_all(f"{account.graph_id}/insights", insights_params(level, date_from, date_to))

    written = 0
    skipped = 0
    ad_ids: List[str] = []
    for row in rows:
        values = normalize_insight_row(workspace_id, account, level, row)
        if values is None:
            skipped += 1
            continue

        persistence.insert_insight_raw(
            db,
            workspace_id=workspace_id,
            ad_account_id=account.id,
            sync_job_id=job_id,
            level=level,
            entity_id=values["entity_id"],
            date_start=values["date"],
            date_stop=_parse_date(row.get("date_stop")),
            payload=row,
        )
        persistence.upsert_insight_daily(db, values)
        written += 1
        if level == LevelEnum.ad:
            ad_ids.append(values["entity_id"])

    persistence.commit(db)
    return written, skipped, list(dict.fromkeys(ad_ids))


def sync_account(
    db: Session,
    client: MetaGraphClient,
    *,
    workspace_id: UUID,
    account: AdAccount,
    connection: Optional[Connection],
    mode: SyncJobTypeEnum,
    levels: Sequence[LevelEnum],
    date_from: date,
    date_to: date,
    sync_creatives: bool = False,
    sync_entities: bool = False,
    force_creatives: bool = False,
    media_cache: Optional[MediaCache] = None,
) -> AccountSyncResult:
    """Run one job for one ad account and return its outcome.

    Level failures are recorded and the remaining levels still run, except
    after an authentication failure, which stops the account.
    """
    result = AccountSyncResult(
        account_id=account.external_id, ad_account_id=account.id, date_from=date_from, date_to=date_to,
    )
    job = persistence.create_job(
        db,
        workspace_id=workspace_id,
        ad_account_id=account.id,
        job_type=mode,
        date_from=date_from,
        date_to=date_to,
        levels=levels,
    )
    result.job_id = job.id
    logger.info(
        "[META_SYNC] Job %s started: account=%s mode=%s range=%s..%s levels=%s",
        job.id, account.external_id, mode.value, date_from, date_to, job.levels,
    )

    def _auth_failure(exc: MetaAuthError, phase: str) -> None:
        result.auth_failed = True
        result.errors.append(f"{phase}: authentication failed: {exc.message}")
        if connection is not None:
            connection_service.record_auth_failure(db, connection, exc.message)

    if sync_entities:
        try:
            result.entities = sync_account_entities(db, client, workspace_id, account)
            result.counts["entities"] = result.entities.total
            result.warnings.extend(f"Entities {error}" for error in result.entities.errors)
        except MetaAuthError as exc:
            _auth_failure(exc, "Entities")

    ad_ids: List[str] = []
    fetched = 0
    for level in levels:
        if result.auth_failed:
            break
        try:
            written, skipped, level_ad_ids = _ingest_level(
                db, client,
                workspace_id=workspace_id, account=account, job_id=job.id,
                level=level, date_from=date_from, date_to=date_to,
            )
        except MetaAuthError as exc:
            _auth_failure(exc, f"Level {level.value}")
            continue
        except (MetaGraphError, PersistenceError) as exc:
            logger.error("[META_SYNC] Level %s failed for account %s: %s", level.value, account.external_id, exc)
            result.errors.append(f"Level {level.value} error: {exc}")
            continue

        result.counts[level.value] = written
        result.rows_synced += written
        result.skipped_rows += skipped
        fetched += written + skipped
        ad_ids.extend(level_ad_ids)
        logger.info(
            "[META_SYNC] Account %s level %s: %d rows upserted, %d skipped",
            account.external_id, level.value, written, skipped,
        )

    if sync_creatives and ad_ids and not result.auth_failed:
        try:
            result.creatives = resolve_creatives_batch(
                db,
                workspace_id=workspace_id,
                ad_account=account,
                ad_ids=ad_ids,
                client=client,
                force=force_creatives,
                media_cache=media_cache,
            )
            result.counts["creatives"] = result.creatives.resolved
            if result.creatives.errors:
                result.counts["creative_errors"] = len(result.creatives.errors)
                result.warnings.append(f"{len(result.creatives.errors)} creatives could not be resolved")
        except MetaAuthError as exc:
            _auth_failure(exc, "Creatives")

    persistence.finalize_job(
        db,
        job,
        errors=result.errors,
        fetched_rows=fetched,
        total_records_synced=result.rows_synced,
        skipped_rows=result.skipped_rows,
        counts=result.counts,
    )
    result.status = job.status.value

    watermark = persistence.get_or_create_watermark(db, workspace_id, account.id)
    persistence.update_watermark(
        db, watermark, mode=mode, date_to=date_to, error="; ".join(result.errors) or None,
    )

    if not result.auth_failed and connection is not None:
        connection_service.reset_auth_failures(db, connection)

    logger.info(
        "[META_SYNC] Job %s %s: %d rows in %.1fs%s",
        job.id, job.status.value, result.rows_synced, job.duration_seconds or 0.0,
        f" ({len(result.errors)} errors)" if result.errors else "",
    )
    return result


# =============================================================================
# INVOCATION
# =============================================================================

def _strip_act(account_id: str) -> str:
    account_id = str(account_id)
    return account_id[4:] if account_id.startswith("act_") else account_id


def select_accounts(
    db: Session, workspace_id: UUID, account_ids: Optional[Sequence[str]] = None
) -> List[AdAccount]:
    query = db.query(AdAccount).filter(AdAccount.workspace_id == workspace_id)
    if account_ids:
        query = query.filter(AdAccount.external_id.in_([_strip_act(a) for a in account_ids]))
    return query.order_by(AdAccount.external_id).all()


def _fail_running_jobs(db: Session, workspace_id: UUID, account: AdAccount, message: str) -> None:
    db.rollback()
    running = (
        db.query(SyncJob)
        .filter(
            SyncJob.workspace_id == workspace_id,
            SyncJob.ad_account_id == account.id,
            SyncJob.status == SyncJobStatusEnum.running,
        )
        .all()
    )
    for job in running:
        persistence.finalize_job(db, job, errors=[message], fetched_rows=0, total_records_synced=0)


def _record_account_error(
    db: Session, workspace_id: UUID, account: AdAccount, mode: SyncJobTypeEnum, date_to: date, message: str
) -> None:
    """Put a run-level failure on the account's watermark (cursors stay put)."""
    try:
        watermark = persistence.get_or_create_watermark(db, workspace_id, account.id)
        persistence.update_watermark(db, watermark, mode=mode, date_to=date_to, error=message)
    except PersistenceError:
        logger.error("[META_SYNC] Could not record error on watermark for account %s", account.external_id)


def run_sync(
    db: Session,
    workspace_id: UUID,
    *,
    mode: SyncJobTypeEnum = SyncJobTypeEnum.intraday,
    account_ids: Optional[Sequence[str]] = None,
    levels: Optional[Sequence[LevelEnum]] = None,
    date_range: Optional[Tuple[date, date]] = None,
    backfill_days: int = DEFAULT_BACKFILL_DAYS,
    sync_creatives: bool = False,
    sync_entities: bool = False,
    force_creatives: bool = False,
    client_factory: Optional[ClientFactory] = None,
    vault: Optional[TokenVault] = None,
    media_cache: Optional[MediaCache] = None,
    now: Optional[datetime] = None,
) -> JobSummary:
    """Sync insights for the selected ad accounts of a workspace.

    Args:
        account_ids: External account ids (with or without `act_`); all when omitted.
        date_range: Explicit (since, until); otherwise derived from `mode` in
            each account's timezone.
        client_factory: Builds a Graph client for an access token.

    Returns:
        JobSummary with one AccountSyncResult per processed account.
    """
    mode = SyncJobTypeEnum(mode)
    levels = [LevelEnum(level) for level in (levels or DEFAULT_LEVELS)]
    vault = vault or get_token_vault()
    client_factory = client_factory or (lambda token: MetaGraphClient(access_token=token))
    summary = JobSummary(mode=mode)

    accounts = select_accounts(db, workspace_id, account_ids)
    if account_ids:
        found = {account.external_id for account in accounts}
        for missing in sorted({_strip_act(a) for a in account_ids} - found):
            summary.errors.append(f"Account {missing}: not found in workspace")

    logger.info(
        "[META_SYNC] run_sync workspace=%s mode=%s accounts=%d levels=%s creatives=%s",
        workspace_id, mode.value, len(accounts), [level.value for level in levels], sync_creatives,
    )

    for account in accounts:
        watermark = persistence.get_or_create_watermark(db, workspace_id, account.id)
        if not watermark.sync_enabled and not account_ids:
            summary.accounts_skipped += 1
            logger.info("[META_SYNC] Account %s has sync disabled, skipping", account.external_id)
            continue

        if date_range:
            date_from, date_to = date_range
        else:
            date_from, date_to = account_date_range(mode, account.timezone, backfill_days, now)

        result = AccountSyncResult(account_id=account.external_id, ad_account_id=account.id)
        connection = account.primary_connection
        if connection is None or connection.status != ConnectionStatusEnum.connected:
            result.errors.append("No connected Meta connection is bound to this account")
            _record_account_error(db, workspace_id, account, mode, date_to, result.errors[-1])
            summary.add(result)
            continue

        try:
            token = get_access_token(connection, vault)
        except (MissingTokenError, TokenDecryptionError, EncryptionUnavailableError) as exc:
            logger.error("[META_SYNC] Token unavailable for account %s: %s", account.external_id, exc)
            result.errors.append(f"Token unavailable: {exc}")
            _record_account_error(db, workspace_id, account, mode, date_to, result.errors[-1])
            summary.add(result)
            continue

        client = client_factory(token)
        try:
            result = sync_account(
                db, client,
                workspace_id=workspace_id,
                account=account,
                connection=connection,
                mode=mode,
                levels=levels,
                date_from=date_from,
                date_to=date_to,
                sync_creatives=sync_creatives,
                sync_entities=sync_entities,
                force_creatives=force_creatives,
                media_cache=media_cache,
            )
        except Exception as exc:
            logger.exception("[META_SYNC] Account %s failed: %s", account.external_id, exc)
            capture_exception(exc, extra={
                "operation": "run_sync",
                "workspace_id": str(workspace_id),
                "account_id": account.external_id,
                "mode": mode.value,
            })
            result.errors.append(f"{type(exc).__name__}: {exc}")
            result.date_from, result.date_to = date_from, date_to
            try:
                _fail_running_jobs(db, workspace_id, account, result.errors[-1])
            except PersistenceError:
                logger.error("[META_SYNC] Could not mark job failed for account %s", account.external_id)
            _record_account_error(db, workspace_id, account, mode, date_to, result.errors[-1])
        finally:
            client.close()

        summary.add(result)

    logger.info(
        "[META_SYNC] run_sync done: %d synced, %d failed, %d skipped, %d rows",
        summary.accounts_synced, summary.accounts_failed, summary.accounts_skipped, summary.total_rows,
    )
    return summary
