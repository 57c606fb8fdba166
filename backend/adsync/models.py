"""SQLAlchemy ORM models and enums.

This module defines the Meta sync schema using UUID primary keys and explicit
relationships. Provider credentials live in a separate `tokens` table so the
connection row never carries secret material directly.

Ownership:
    - Workspace owns Connection and AdAccount rows.
    - SyncJob / SyncWatermark belong to one (workspace, ad account) pair and are
      written only by the insights sync service.
    - AdCreative belongs to one (workspace, ad id) pair and is written only by
      the creative service.
"""

import uuid
from datetime import datetime
import enum

from sqlalchemy import (
    Column, String, DateTime, Date, Enum, Integer, Float, ForeignKey, Numeric,
    JSON, Text, Boolean, UniqueConstraint, Index, text,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import relationship, declarative_base


# Single Base used by the entire application
Base = declarative_base()


# Enums ---------------------------------------------------------

class ProviderEnum(str, enum.Enum):
    meta = "meta"


class ConnectionStatusEnum(str, enum.Enum):
    pending = "pending"
    connected = "connected"
    error = "error"
    revoked = "revoked"


class LevelEnum(str, enum.Enum):
    campaign = "campaign"
    adset = "adset"
    ad = "ad"


class SyncJobTypeEnum(str, enum.Enum):
    daily = "daily"
    intraday = "intraday"
    backfill = "backfill"


class SyncJobStatusEnum(str, enum.Enum):
    running = "running"
    completed = "completed"
    failed = "failed"


class CreativeTypeEnum(str, enum.Enum):
    image = "image"
    video = "video"
    carousel = "carousel"
    dynamic = "dynamic"
    unknown = "unknown"


class ImageQualityEnum(str, enum.Enum):
    """Resolution tier of the resolved creative media.

    - hd: >= 1280x720 (or 720x1280 portrait)
    - sd: >= 640x480 (or 480x640 portrait)
    - low: any positive dimensions below sd
    - unknown: dimensions could not be derived
    """
    hd = "hd"
    sd = "sd"
    low = "low"
    unknown = "unknown"


class FetchStatusEnum(str, enum.Enum):
    success = "success"
    partial = "partial"
    failed = "failed"


def _enum(enum_cls):
    return Enum(enum_cls, values_callable=lambda obj: [e.value for e in obj])


# Tenancy / credentials -----------------------------------------

class Workspace(Base):
    """Tenant boundary. Every synced row is scoped to exactly one workspace."""
    __tablename__ = "workspaces"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    name = Column(String, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)

    connections = relationship("Connection", back_populates="workspace", cascade="all, delete-orphan")
    ad_accounts = relationship("AdAccount", back_populates="workspace", cascade="all, delete-orphan")

    def __str__(self):
        return self.name


class Token(Base):
    """Encrypted provider credential referenced by a Connection.

    `token_encrypted` is False only when the operator explicitly allowed
    plaintext storage while no encryption key was configured.
    """
    __tablename__ = "tokens"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    provider = Column(_enum(ProviderEnum), nullable=False, default=ProviderEnum.meta)
    access_token_enc = Column(Text, nullable=False)
    token_encrypted = Column(Boolean, nullable=False, default=True)
    expires_at = Column(DateTime, nullable=True)
    # Long-lived exchange failed and the short-lived token was kept instead
    reduced_validity = Column(Boolean, nullable=False, default=False)
    scope = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    connections = relationship("Connection", back_populates="token")


class Connection(Base):
    """A workspace's credential to the Meta platform.

    At most one connection per (workspace, provider) is the default; a
    partial unique index enforces that at the database level.
    """
    __tablename__ = "meta_connections"
    __table_args__ = (
        Index(
            "uq_meta_connections_default",
            "workspace_id",
            "provider",
            unique=True,
            postgresql_where=text("is_default IS TRUE"),
            sqlite_where=text("is_default = 1"),
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    provider = Column(_enum(ProviderEnum), nullable=False, default=ProviderEnum.meta)
    name = Column(String, nullable=True)
    business_manager_id = Column(String, nullable=True)
    meta_user_id = Column(String, nullable=True)
    status = Column(_enum(ConnectionStatusEnum), nullable=False, default=ConnectionStatusEnum.pending)
    is_default = Column(Boolean, nullable=False, default=False)
    granted_scopes = Column(JSON, nullable=True)
    last_validated_at = Column(DateTime, nullable=True)

    # Auth failure tracking (status flips to error at the configured threshold)
    auth_failure_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)

    token_id = Column(UUID(as_uuid=True), ForeignKey("tokens.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="connections")
    token = relationship("Token", back_populates="connections")
    account_access = relationship("ConnectionAccountAccess", back_populates="connection", cascade="all, delete-orphan")

    def __str__(self):
        return f"{self.name or self.id} ({self.provider.value})"


class AdAccount(Base):
    """A Meta ad account visible to the workspace.

    `primary_connection_id` names the connection whose token is used for
    reads. It is set when first discovered and only moved by an explicit
    rebind; other connections may still hold access rows.
    """
    __tablename__ = "meta_ad_accounts"
    __table_args__ = (
        UniqueConstraint("workspace_id", "external_id", name="uq_meta_ad_accounts_workspace_external"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    external_id = Column(String, nullable=False)  # numeric id without the "act_" prefix
    name = Column(String, nullable=True)
    currency = Column(String, nullable=True)
    timezone = Column(String, nullable=True)  # IANA name, e.g. "Europe/Amsterdam"
    account_status = Column(String, nullable=True)  # ACTIVE, DISABLED, ...
    primary_connection_id = Column(UUID(as_uuid=True), ForeignKey("meta_connections.id"), nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    workspace = relationship("Workspace", back_populates="ad_accounts")
    primary_connection = relationship("Connection", foreign_keys=[primary_connection_id])
    access = relationship("ConnectionAccountAccess", back_populates="ad_account", cascade="all, delete-orphan")

    @property
    def graph_id(self) -> str:
        """Account node id as the Graph API expects it (`act_<id>`)."""
        return f"act_{self.external_id}"

    def __str__(self):
        return f"{self.name or self.external_id} (act_{self.external_id})"


class ConnectionAccountAccess(Base):
    """Many-to-many: which connections can read which ad accounts."""
    __tablename__ = "meta_connection_accounts"
    __table_args__ = (
        UniqueConstraint("connection_id", "ad_account_id", name="uq_meta_connection_accounts"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    connection_id = Column(UUID(as_uuid=True), ForeignKey("meta_connections.id"), nullable=False)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    granted_at = Column(DateTime, default=datetime.utcnow)

    connection = relationship("Connection", back_populates="account_access")
    ad_account = relationship("AdAccount", back_populates="access")


# Sync bookkeeping ----------------------------------------------

class SyncJob(Base):
    """One orchestrator run for one ad account.

    Lifecycle: running -> completed | failed. Terminal rows are never
    modified again (see services/persistence.finalize_job).
    """
    __tablename__ = "meta_sync_jobs"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False, index=True)
    job_type = Column(_enum(SyncJobTypeEnum), nullable=False)
    levels = Column(String, nullable=True)  # comma separated, e.g. "campaign,ad"
    date_from = Column(Date, nullable=False)
    date_to = Column(Date, nullable=False)
    status = Column(_enum(SyncJobStatusEnum), nullable=False, default=SyncJobStatusEnum.running)

    fetched_rows = Column(Integer, nullable=False, default=0)
    total_records_synced = Column(Integer, nullable=False, default=0)
    skipped_rows = Column(Integer, nullable=False, default=0)
    counts = Column(JSON, nullable=True)  # {"campaign": 6, "ad": 12, "creatives": 4, ...}
    error_message = Column(Text, nullable=True)

    started_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    ended_at = Column(DateTime, nullable=True)
    duration_seconds = Column(Float, nullable=True)

    ad_account = relationship("AdAccount")


class SyncWatermark(Base):
    """Per (workspace, ad account) sync cursor.

    `last_daily_date_synced` only moves forward and only after a completed
    daily job.
    """
    __tablename__ = "meta_sync_state"
    __table_args__ = (
        UniqueConstraint("workspace_id", "ad_account_id", name="uq_meta_sync_state_account"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    last_daily_date_synced = Column(Date, nullable=True)
    last_intraday_synced_at = Column(DateTime, nullable=True)
    last_success_at = Column(DateTime, nullable=True)
    last_error = Column(Text, nullable=True)
    sync_enabled = Column(Boolean, nullable=False, default=True)
    entities_synced_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    ad_account = relationship("AdAccount")


# Insights ------------------------------------------------------

class InsightRaw(Base):
    """Append-only audit copy of every insights row as returned by Meta."""
    __tablename__ = "meta_insights_raw"

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    sync_job_id = Column(UUID(as_uuid=True), ForeignKey("meta_sync_jobs.id"), nullable=True)
    level = Column(_enum(LevelEnum), nullable=False)
    entity_id = Column(String, nullable=False)
    date_start = Column(Date, nullable=False)
    date_stop = Column(Date, nullable=True)
    payload = Column(JSON, nullable=False)
    fetched_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class InsightDaily(Base):
    """Normalized daily metrics, one row per (workspace, account, level, entity, date)."""
    __tablename__ = "meta_insights_daily"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "ad_account_id", "level", "entity_id", "date",
            name="uq_meta_insights_daily_key",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    level = Column(_enum(LevelEnum), nullable=False)
    entity_id = Column(String, nullable=False)
    entity_name = Column(String, nullable=True)
    date = Column(Date, nullable=False)

    # Hierarchy (denormalized for reporting)
    campaign_id = Column(String, nullable=True)
    campaign_name = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    adset_name = Column(String, nullable=True)
    ad_id = Column(String, nullable=True)
    ad_name = Column(String, nullable=True)

    # Base measures
    spend = Column(Numeric(18, 4), nullable=False, default=0)
    impressions = Column(Integer, nullable=False, default=0)
    reach = Column(Integer, nullable=False, default=0)
    clicks = Column(Integer, nullable=False, default=0)
    unique_clicks = Column(Integer, nullable=False, default=0)

    # Rates as reported by Meta
    ctr = Column(Numeric(18, 6), nullable=True)
    cpc = Column(Numeric(18, 6), nullable=True)
    cpm = Column(Numeric(18, 6), nullable=True)
    frequency = Column(Numeric(18, 6), nullable=True)

    # Conversion aggregates derived from actions / action_values
    leads = Column(Numeric(18, 4), nullable=False, default=0)
    conversions = Column(Numeric(18, 4), nullable=False, default=0)
    conversion_value = Column(Numeric(18, 4), nullable=False, default=0)
    purchase_value = Column(Numeric(18, 4), nullable=False, default=0)
    actions_json = Column(JSON, nullable=True)
    action_values_json = Column(JSON, nullable=True)

    currency = Column(String, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)


class MetaEntity(Base):
    """Catalog row for a campaign, ad set or ad."""
    __tablename__ = "meta_entities"
    __table_args__ = (
        UniqueConstraint(
            "workspace_id", "ad_account_id", "entity_type", "entity_id",
            name="uq_meta_entities_key",
        ),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=False)
    entity_type = Column(_enum(LevelEnum), nullable=False)
    entity_id = Column(String, nullable=False)
    name = Column(String, nullable=True)
    status = Column(String, nullable=True)  # effective_status
    objective = Column(String, nullable=True)
    daily_budget = Column(Numeric(18, 2), nullable=True)
    lifetime_budget = Column(Numeric(18, 2), nullable=True)
    campaign_id = Column(String, nullable=True)
    adset_id = Column(String, nullable=True)
    extra_data = Column(JSON, nullable=True)
    synced_at = Column(DateTime, nullable=False, default=datetime.utcnow)


# Creatives -----------------------------------------------------

class AdCreative(Base):
    """Canonical creative for one ad, overwritten on every re-resolution."""
    __tablename__ = "meta_ad_creatives"
    __table_args__ = (
        UniqueConstraint("workspace_id", "ad_id", name="uq_meta_ad_creatives_ad"),
    )

    id = Column(UUID(as_uuid=True), primary_key=True, default=uuid.uuid4)
    workspace_id = Column(UUID(as_uuid=True), ForeignKey("workspaces.id"), nullable=False, index=True)
    ad_account_id = Column(UUID(as_uuid=True), ForeignKey("meta_ad_accounts.id"), nullable=True)
    ad_id = Column(String, nullable=False)
    meta_creative_id = Column(String, nullable=True)
    creative_type = Column(_enum(CreativeTypeEnum), nullable=False, default=CreativeTypeEnum.unknown)

    # Media
    image_url = Column(Text, nullable=True)
    image_url_hd = Column(Text, nullable=True)
    thumbnail_url = Column(Text, nullable=True)
    image_width = Column(Integer, nullable=True)
    image_height = Column(Integer, nullable=True)
    image_quality = Column(_enum(ImageQualityEnum), nullable=False, default=ImageQualityEnum.unknown)
    media_source = Column(String, nullable=True)  # waterfall step that produced image_url
    video_id = Column(String, nullable=True)
    video_url = Column(Text, nullable=True)
    preview_url = Column(Text, nullable=True)

    # Text
    title = Column(Text, nullable=True)
    body = Column(Text, nullable=True)
    description = Column(Text, nullable=True)
    call_to_action = Column(String, nullable=True)
    link_url = Column(Text, nullable=True)

    # Resolution bookkeeping
    fetch_status = Column(_enum(FetchStatusEnum), nullable=False, default=FetchStatusEnum.failed)
    is_complete = Column(Boolean, nullable=False, default=False)
    fetch_attempts = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    needs_enrichment = Column(Boolean, nullable=False, default=True)
    enriched_at = Column(DateTime, nullable=True)
    last_validated_at = Column(DateTime, nullable=True)
    fetched_at = Column(DateTime, nullable=True)

    # Media cache
    cached_image_url = Column(Text, nullable=True)
    cached_thumbnail_url = Column(Text, nullable=True)
    file_size = Column(Integer, nullable=True)

    extra_data = Column(JSON, nullable=True)  # ad name/status, raw creative snapshot
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
