"""Pydantic schemas for request/response payloads."""

from datetime import datetime, date
from uuid import UUID
from typing import Optional, List, Dict, Any
from pydantic import BaseModel, Field, model_validator

from .models import LevelEnum, SyncJobTypeEnum


# Sync ------------------------------------------------------------

class SyncRequest(BaseModel):
    """Payload for running (or enqueuing) an insights sync."""

    mode: SyncJobTypeEnum = Field(
        default=SyncJobTypeEnum.intraday,
        description="daily = yesterday, intraday = today, backfill = last N days",
    )
    account_ids: Optional[List[str]] = Field(
        default=None,
        description="Ad account ids (with or without act_); all accounts when omitted",
    )
    levels: List[LevelEnum] = Field(
        default_factory=lambda: [LevelEnum.campaign, LevelEnum.adset, LevelEnum.ad],
        min_length=1,
    )
    date_from: Optional[date] = Field(default=None, description="Explicit range start (requires date_to)")
    date_to: Optional[date] = Field(default=None, description="Explicit range end (inclusive)")
    backfill_days: int = Field(default=7, ge=0, le=730)
    sync_creatives: bool = False
    sync_entities: bool = False
    force_creatives: bool = False

    model_config = {
        "json_schema_extra": {
            "example": {
                "mode": "daily",
                "account_ids": ["act_1234567890"],
                "levels": ["campaign", "ad"],
                "sync_creatives": True,
            }
        }
    }

    @model_validator(mode="after")
    def _check_range(self):
        if (self.date_from is None) != (self.date_to is None):
            raise ValueError("date_from and date_to must be given together")
        if self.date_from and self.date_to and self.date_from > self.date_to:
            raise ValueError("date_from must not be after date_to")
        return self


class AccountSyncOut(BaseModel):
    account_id: str
    job_id: Optional[UUID] = None
    status: Optional[str] = None
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    rows_synced: int = 0
    skipped_rows: int = 0
    counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


class JobSummaryOut(BaseModel):
    """Multi-account outcome: success and failure counts side by side."""

    mode: SyncJobTypeEnum
    success: bool
    partial: bool
    accounts_synced: int
    accounts_failed: int
    accounts_skipped: int
    total_rows: int
    results: List[AccountSyncOut]
    errors: List[str]


class EnqueueResponse(BaseModel):
    job_id: str
    status: str = "queued"


class EntitySyncRequest(BaseModel):
    account_ids: Optional[List[str]] = None
    force: bool = False


class EntitySyncAccountOut(BaseModel):
    account_id: str
    skipped: bool = False
    counts: Dict[str, int] = Field(default_factory=dict)
    errors: List[str] = Field(default_factory=list)


class EntitySyncResponse(BaseModel):
    results: List[EntitySyncAccountOut]
    errors: List[str] = Field(default_factory=list)


# Creatives -------------------------------------------------------

class CreativeResolveRequest(BaseModel):
    account_id: str = Field(description="Ad account id (with or without act_)")
    ad_id: str
    enrich: bool = Field(default=False, description="Mark the record as enriched")


class CreativeBatchRequest(BaseModel):
    account_id: str
    ad_ids: List[str] = Field(min_length=1, max_length=1000)
    force: bool = False


class CreativeOut(BaseModel):
    ad_id: str
    meta_creative_id: Optional[str] = None
    creative_type: str
    image_url: Optional[str] = None
    image_url_hd: Optional[str] = None
    thumbnail_url: Optional[str] = None
    image_width: Optional[int] = None
    image_height: Optional[int] = None
    image_quality: str
    media_source: Optional[str] = None
    video_id: Optional[str] = None
    video_url: Optional[str] = None
    preview_url: Optional[str] = None
    title: Optional[str] = None
    body: Optional[str] = None
    description: Optional[str] = None
    call_to_action: Optional[str] = None
    link_url: Optional[str] = None
    fetch_status: str
    is_complete: bool = False
    needs_enrichment: Optional[bool] = None
    enriched_at: Optional[datetime] = None
    cached_image_url: Optional[str] = None
    cached_thumbnail_url: Optional[str] = None
    file_size: Optional[int] = None

    @classmethod
    def from_values(cls, values: Dict[str, Any]) -> "CreativeOut":
        data = {key: values.get(key) for key in cls.model_fields}
        for key in ("creative_type", "image_quality", "fetch_status"):
            value = data.get(key)
            data[key] = getattr(value, "value", value) or "unknown"
        data["is_complete"] = bool(data.get("is_complete"))
        return cls(**data)


class CreativeBatchResponse(BaseModel):
    records: Dict[str, CreativeOut]
    errors: Dict[str, str]
    skipped: List[str]
    persistence_errors: Dict[str, str] = Field(default_factory=dict)
    resolved: int


class CacheMediaRequest(BaseModel):
    ad_id: str
    media_type: str = Field(default="image", pattern="^(image|video|thumbnail)$")
    source_url: str


class CacheMediaResponse(BaseModel):
    url: str
    size_bytes: int


# Connections -----------------------------------------------------

class ConnectionValidateRequest(BaseModel):
    access_token: str = Field(min_length=1)
    business_manager_id: Optional[str] = None
    name: Optional[str] = None
    exchange_long_lived: bool = Field(default=True, description="Trade for a ~60 day token first")
    rebind: bool = False
    allow_plaintext: bool = False


class CodeExchangeRequest(BaseModel):
    code: str = Field(min_length=1)
    redirect_uri: str
    business_manager_id: Optional[str] = None
    allow_plaintext: bool = False


class AdAccountOut(BaseModel):
    id: UUID
    account_id: str
    name: Optional[str] = None
    currency: Optional[str] = None
    timezone: Optional[str] = None
    account_status: Optional[str] = None
    primary_connection_id: Optional[UUID] = None


class ConnectionOut(BaseModel):
    id: UUID
    name: Optional[str] = None
    status: str
    is_default: bool
    granted_scopes: List[str] = Field(default_factory=list)
    last_validated_at: Optional[datetime] = None
    token_expires_at: Optional[datetime] = None
    reduced_validity: bool = False
    token_encrypted: bool = True


class ConnectionValidateResponse(BaseModel):
    connection: ConnectionOut
    ad_accounts: List[AdAccountOut]


class TokenRefreshResponse(BaseModel):
    success: bool
    expires_at: Optional[datetime] = None
    requires_reconnect: bool = False
    error: Optional[str] = None


# Status ----------------------------------------------------------

class SyncStatusResponse(BaseModel):
    workspace_id: UUID
    health: str
    connection: Optional[Dict[str, Any]] = None
    connections: List[Dict[str, Any]]
    ad_accounts: List[Dict[str, Any]]
    recent_jobs: List[Dict[str, Any]]
    totals: Dict[str, int]


class HealthResponse(BaseModel):
    status: str = Field(description="Service status", examples=["ok"])
