"""Creative sync service.

WHAT:
    Resolves and persists creatives for single ads and for batches of ads
    (Graph batch calls of up to 50 sub-requests, paced by a short delay).

WHY:
    - One upstream sub-request failing must not affect its siblings: every ad
      ends up in either the result map or the error map.
    - Creatives already resolved with usable data are not refetched unless
      forced, which keeps daily syncs cheap.
    - A failed database write is logged and reported, and the in-memory record
      is still returned to the caller.

REFERENCES:
    - adsync/services/creative_resolver.py (waterfall resolution)
    - adsync/services/media_cache.py (optional durable media copy)
    - adsync/routers/meta_creatives.py
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence
from urllib.parse import urlencode
from uuid import UUID

from sqlalchemy.orm import Session

from adsync.models import AdAccount, AdCreative, FetchStatusEnum, ImageQualityEnum
from adsync.services import persistence
from adsync.services.creative_quality import is_low_quality_url
from adsync.services.creative_resolver import AD_FIELDS, CreativeResolver, ResolvedCreative
from adsync.services.media_cache import MediaCache, MediaCacheError
from adsync.services.meta_graph_client import MetaAuthError, MetaGraphClient, MetaGraphError
from adsync.services.persistence import PersistenceError
from adsync.telemetry import capture_exception

logger = logging.getLogger(__name__)

MAX_FETCH_ATTEMPTS = 3

_ROW_COLUMNS = (
    "ad_id", "meta_creative_id", "creative_type", "image_url", "image_url_hd", "thumbnail_url",
    "image_width", "image_height", "image_quality", "media_source", "video_id", "video_url",
    "preview_url", "title", "body", "description", "call_to_action", "link_url", "fetch_status",
    "is_complete", "fetch_attempts", "error_message", "needs_enrichment", "enriched_at",
    "last_validated_at", "fetched_at", "cached_image_url", "cached_thumbnail_url", "file_size",
)


@dataclass
class BatchResolutionResult:
    """Per-ad outcome of a batch resolution.

    `records` and `errors` are keyed by ad id; an ad is in exactly one of them.
    """

    records: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    errors: Dict[str, str] = field(default_factory=dict)
    skipped: List[str] = field(default_factory=list)
    persistence_errors: Dict[str, str] = field(default_factory=dict)

    @property
    def resolved(self) -> int:
        return len(self.records) - len(self.skipped)

    @property
    def success(self) -> bool:
        return not self.errors and not self.persistence_errors

    def __repr__(self):
        return (
            f"BatchResolutionResult(resolved={self.resolved}, skipped={len(self.skipped)}, "
            f"errors={len(self.errors)}, persistence_errors={len(self.persistence_errors)})"
        )


def row_to_values(row: AdCreative) -> Dict[str, Any]:
    return {column: getattr(row, column) for column in _ROW_COLUMNS}


def should_skip(existing: Optional[AdCreative]) -> bool:
    """Whether a stored creative can be reused without refetching.

    Reused when it gave up after MAX_FETCH_ATTEMPTS failures, or when it has
    media or text and its image is not a thumbnail still awaiting upgrade.
    """
    if existing is None:
        return False
    if existing.fetch_status == FetchStatusEnum.failed and (existing.fetch_attempts or 0) >= MAX_FETCH_ATTEMPTS:
        return True

    has_image = bool(existing.image_url)
    has_text = bool(existing.title or existing.body or existing.description)
    if not (has_image or has_text):
        return False
    if has_image and is_low_quality_url(existing.image_url) and not existing.cached_image_url:
        return False
    return True


def _error_text(error: MetaGraphError) -> str:
    if error.message and not error.message.startswith("HTTP "):
        return error.message
    if error.http_status:
        return f"HTTP {error.http_status}"
    return error.message or "Batch request failed"


def _complete_values(
    resolved: ResolvedCreative,
    *,
    workspace_id: UUID,
    ad_account: AdAccount,
    media_cache: Optional[MediaCache],
    enrich: bool,
) -> Dict[str, Any]:
    values = dict(resolved.values)
    values["workspace_id"] = workspace_id
    values["ad_account_id"] = ad_account.id
    values["needs_enrichment"] = (
        values["image_quality"] in (ImageQualityEnum.low, ImageQualityEnum.unknown)
        or values["fetch_status"] != FetchStatusEnum.success
    )
    if enrich:
        values["needs_enrichment"] = False
        values["enriched_at"] = datetime.utcnow()

    media = resolved.media
    if media_cache is not None and media is not None:
        try:
            cached = media_cache.cache(workspace_id, resolved.ad_id, "image", media.url_hd or media.url)
            values["cached_image_url"] = cached.url
            values["file_size"] = cached.size_bytes
            if media.thumbnail_url and media.thumbnail_url != media.url:
                thumb = media_cache.cache(workspace_id, resolved.ad_id, "thumbnail", media.thumbnail_url)
                values["cached_thumbnail_url"] = thumb.url
        except (MediaCacheError, ValueError) as exc:
            logger.warning("[CREATIVE] Media cache failed for ad %s: %s", resolved.ad_id, exc)
    return values


def _persist(db: Session, values: Dict[str, Any], result: Optional[BatchResolutionResult] = None) -> None:
    try:
        persistence.upsert_creative(db, values)
        persistence.commit(db)
    except PersistenceError as exc:
        logger.error("[CREATIVE] Failed to persist creative for ad %s: %s", values.get("ad_id"), exc)
        capture_exception(exc, extra={"operation": "upsert_creative", "ad_id": values.get("ad_id")})
        if result is not None:
            result.persistence_errors[values["ad_id"]] = str(exc)


def _record_failure(db: Session, workspace_id: UUID, ad_account: AdAccount, ad_id: str, message: str) -> None:
    try:
        persistence.record_creative_fetch_failure(
            db, workspace_id=workspace_id, ad_id=ad_id, error_message=message, ad_account_id=ad_account.id,
        )
        persistence.commit(db)
    except PersistenceError as exc:
        logger.error("[CREATIVE] Failed to record fetch failure for ad %s: %s", ad_id, exc)


# =============================================================================
# SINGLE AD
# =============================================================================

def resolve_creative(
    db: Session,
    *,
    workspace_id: UUID,
    ad_account: AdAccount,
    ad_id: str,
    client: MetaGraphClient,
    media_cache: Optional[MediaCache] = None,
    enrich: bool = False,
) -> Dict[str, Any]:
    """Resolve and upsert the creative for one ad.

    Raises:
        MetaGraphError: Upstream failure for this ad (recorded on the row first).
    """
    resolver = CreativeResolver(client, ad_account.external_id)
    try:
        resolved = resolver.resolve_ad_id(ad_id)
    except MetaGraphError as exc:
        logger.warning("[CREATIVE] Ad %s could not be fetched: %s", ad_id, exc)
        if not isinstance(exc, MetaAuthError):
            _record_failure(db, workspace_id, ad_account, ad_id, _error_text(exc))
        raise

    values = _complete_values(
        resolved, workspace_id=workspace_id, ad_account=ad_account, media_cache=media_cache, enrich=enrich,
    )
    _persist(db, values)
    logger.info("[CREATIVE] Ad %s resolved (%s)", ad_id, values["fetch_status"].value)
    return values


def enrich_creative(
    db: Session,
    *,
    workspace_id: UUID,
    ad_account: AdAccount,
    ad_id: str,
    client: MetaGraphClient,
    media_cache: Optional[MediaCache] = None,
) -> Dict[str, Any]:
    """Force a fresh resolution and clear the enrichment flag."""
    return resolve_creative(
        db, workspace_id=workspace_id, ad_account=ad_account, ad_id=ad_id,
        client=client, media_cache=media_cache, enrich=True,
    )


# =============================================================================
# BATCH
# =============================================================================

def resolve_creatives_batch(
    db: Session,
    *,
    workspace_id: UUID,
    ad_account: AdAccount,
    ad_ids: Sequence[str],
    client: MetaGraphClient,
    force: bool = False,
    media_cache: Optional[MediaCache] = None,
    batch_size: Optional[int] = None,
    delay_seconds: Optional[float] = None,
    sleep: Callable[[float], None] = time.sleep,
) -> BatchResolutionResult:
    """Resolve creatives for many ads with Graph batch calls.

    Args:
        ad_ids: Ads to resolve (duplicates ignored).
        force: Refetch even when a usable record exists.
        batch_size: Sub-requests per batch call (defaults to the client cap).
        delay_seconds: Pause between batch calls (defaults to CREATIVE_BATCH_DELAY_MS).

    Raises:
        MetaAuthError: The token stopped working; remaining ads are not attempted.
    """
    from adsync.deps import get_settings

    settings = get_settings()
    size = min(batch_size or client.batch_size, client.batch_size)
    delay = settings.CREATIVE_BATCH_DELAY_MS / 1000.0 if delay_seconds is None else delay_seconds

    result = BatchResolutionResult()
    unique_ids = [str(ad_id) for ad_id in dict.fromkeys(ad_ids) if ad_id]
    existing = persistence.get_creatives(db, workspace_id, unique_ids)

    to_fetch: List[str] = []
    for ad_id in unique_ids:
        row = existing.get(ad_id)
        if not force and should_skip(row):
            result.records[ad_id] = row_to_values(row)
            result.skipped.append(ad_id)
        else:
            to_fetch.append(ad_id)

    logger.info(
        "[CREATIVE] Batch for account %s: %d ads, %d cached, %d to fetch",
        ad_account.external_id, len(unique_ids), len(result.skipped), len(to_fetch),
    )

    resolver = CreativeResolver(client, ad_account.external_id)
    for chunk_index, start in enumerate(range(0, len(to_fetch), size)):
        chunk = to_fetch[start:start + size]
        if chunk_index and delay > 0:
            sleep(delay)

        requests = [
            {"method": "GET", "relative_url": f"{ad_id}?{urlencode({'fields': AD_FIELDS})}"}
            for ad_id in chunk
        ]
        try:
            responses = client.fetch_batch(requests)
        except MetaAuthError:
            raise
        except MetaGraphError as exc:
            logger.error("[CREATIVE] Batch call failed for %d ads: %s", len(chunk), exc)
            for ad_id in chunk:
                result.errors[ad_id] = _error_text(exc)
                _record_failure(db, workspace_id, ad_account, ad_id, result.errors[ad_id])
            continue

        fetched: List[tuple] = []
        for ad_id, response in zip(chunk, responses):
            if response.ok:
                fetched.append((ad_id, response.body))
            else:
                result.errors[ad_id] = _error_text(response.error)
                _record_failure(db, workspace_id, ad_account, ad_id, result.errors[ad_id])

        resolver.prefetch(body for _, body in fetched)

        for ad_id, body in fetched:
            try:
                resolved = resolver.resolve({**body, "id": body.get("id") or ad_id})
            except MetaAuthError:
                raise
            except MetaGraphError as exc:
                result.errors[ad_id] = _error_text(exc)
                _record_failure(db, workspace_id, ad_account, ad_id, result.errors[ad_id])
                continue

            values = _complete_values(
                resolved, workspace_id=workspace_id, ad_account=ad_account, media_cache=media_cache, enrich=False,
            )
            result.records[ad_id] = values
            _persist(db, values, result)

    if result.errors:
        logger.warning("[CREATIVE] %d ads failed in batch: %s", len(result.errors), list(result.errors)[:5])
    logger.info("[CREATIVE] Batch complete: %r", result)
    return result
