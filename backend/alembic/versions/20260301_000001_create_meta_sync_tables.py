"""Create Meta sync tables

Revision ID: 20260301_000001
Revises:
Create Date: 2026-03-01 09:00:00.000000

WHAT:
    Initial schema for the Meta sync service:
    - workspaces, tokens, meta_connections, meta_ad_accounts, meta_connection_accounts
    - meta_sync_jobs, meta_sync_state (watermarks)
    - meta_insights_raw (audit), meta_insights_daily (normalized)
    - meta_entities (campaign/adset/ad catalog), meta_ad_creatives

WHY:
    - Unique keys on the daily table make re-syncs idempotent upserts
    - Partial unique index keeps at most one default connection per workspace

REFERENCES:
    - adsync/models.py
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision = '20260301_000001'
down_revision = None
branch_labels = None
depends_on = None


ENUMS = {
    'providerenum': ('meta',),
    'connectionstatusenum': ('pending', 'connected', 'error', 'revoked'),
    'levelenum': ('campaign', 'adset', 'ad'),
    'syncjobtypeenum': ('daily', 'intraday', 'backfill'),
    'syncjobstatusenum': ('running', 'completed', 'failed'),
    'creativetypeenum': ('image', 'video', 'carousel', 'dynamic', 'unknown'),
    'imagequalityenum': ('hd', 'sd', 'low', 'unknown'),
    'fetchstatusenum': ('success', 'partial', 'failed'),
}


def _enum(name: str) -> postgresql.ENUM:
    # Types are created once up front; columns only reference them
    return postgresql.ENUM(*ENUMS[name], name=name, create_type=False)


def _uuid() -> postgresql.UUID:
    return postgresql.UUID(as_uuid=True)


def upgrade() -> None:
    # =========================================================================
    # STEP 1: Enum types
    # =========================================================================
    bind = op.get_bind()
    for name, values in ENUMS.items():
        postgresql.ENUM(*values, name=name).create(bind, checkfirst=True)

    # =========================================================================
    # STEP 2: Tenancy and credentials
    # =========================================================================
    op.create_table(
        'workspaces',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'tokens',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('provider', _enum('providerenum'), nullable=False),
        sa.Column('access_token_enc', sa.Text(), nullable=False),
        sa.Column('token_encrypted', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('reduced_validity', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('scope', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )

    op.create_table(
        'meta_connections',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('provider', _enum('providerenum'), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('business_manager_id', sa.String(), nullable=True),
        sa.Column('meta_user_id', sa.String(), nullable=True),
        sa.Column('status', _enum('connectionstatusenum'), nullable=False),
        sa.Column('is_default', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('granted_scopes', sa.JSON(), nullable=True),
        sa.Column('last_validated_at', sa.DateTime(), nullable=True),
        sa.Column('auth_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('token_id', _uuid(), sa.ForeignKey('tokens.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
    )
    op.create_index('ix_meta_connections_workspace_id', 'meta_connections', ['workspace_id'])
    op.create_index(
        'uq_meta_connections_default',
        'meta_connections',
        ['workspace_id', 'provider'],
        unique=True,
        postgresql_where=sa.text('is_default IS TRUE'),
    )

    op.create_table(
        'meta_ad_accounts',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('external_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('timezone', sa.String(), nullable=True),
        sa.Column('account_status', sa.String(), nullable=True),
        sa.Column('primary_connection_id', _uuid(), sa.ForeignKey('meta_connections.id'), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'external_id', name='uq_meta_ad_accounts_workspace_external'),
    )
    op.create_index('ix_meta_ad_accounts_workspace_id', 'meta_ad_accounts', ['workspace_id'])

    op.create_table(
        'meta_connection_accounts',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('connection_id', _uuid(), sa.ForeignKey('meta_connections.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('granted_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('connection_id', 'ad_account_id', name='uq_meta_connection_accounts'),
    )

    # =========================================================================
    # STEP 3: Sync bookkeeping
    # =========================================================================
    op.create_table(
        'meta_sync_jobs',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('job_type', _enum('syncjobtypeenum'), nullable=False),
        sa.Column('levels', sa.String(), nullable=True),
        sa.Column('date_from', sa.Date(), nullable=False),
        sa.Column('date_to', sa.Date(), nullable=False),
        sa.Column('status', _enum('syncjobstatusenum'), nullable=False),
        sa.Column('fetched_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_records_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('skipped_rows', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('counts', sa.JSON(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('started_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.Column('ended_at', sa.DateTime(), nullable=True),
        sa.Column('duration_seconds', sa.Float(), nullable=True),
    )
    op.create_index('ix_meta_sync_jobs_workspace_id', 'meta_sync_jobs', ['workspace_id'])
    op.create_index('ix_meta_sync_jobs_ad_account_id', 'meta_sync_jobs', ['ad_account_id'])

    op.create_table(
        'meta_sync_state',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('last_daily_date_synced', sa.Date(), nullable=True),
        sa.Column('last_intraday_synced_at', sa.DateTime(), nullable=True),
        sa.Column('last_success_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('entities_synced_at', sa.DateTime(), nullable=True),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'ad_account_id', name='uq_meta_sync_state_account'),
    )

    # =========================================================================
    # STEP 4: Insights
    # =========================================================================
    op.create_table(
        'meta_insights_raw',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('sync_job_id', _uuid(), sa.ForeignKey('meta_sync_jobs.id'), nullable=True),
        sa.Column('level', _enum('levelenum'), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('date_start', sa.Date(), nullable=False),
        sa.Column('date_stop', sa.Date(), nullable=True),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('fetched_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_meta_insights_raw_workspace_id', 'meta_insights_raw', ['workspace_id'])

    op.create_table(
        'meta_insights_daily',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('level', _enum('levelenum'), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('entity_name', sa.String(), nullable=True),
        sa.Column('date', sa.Date(), nullable=False),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('campaign_name', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('adset_name', sa.String(), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=True),
        sa.Column('ad_name', sa.String(), nullable=True),
        sa.Column('spend', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('impressions', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('reach', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unique_clicks', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('ctr', sa.Numeric(18, 6), nullable=True),
        sa.Column('cpc', sa.Numeric(18, 6), nullable=True),
        sa.Column('cpm', sa.Numeric(18, 6), nullable=True),
        sa.Column('frequency', sa.Numeric(18, 6), nullable=True),
        sa.Column('leads', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('conversions', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('conversion_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('purchase_value', sa.Numeric(18, 4), nullable=False, server_default='0'),
        sa.Column('actions_json', sa.JSON(), nullable=True),
        sa.Column('action_values_json', sa.JSON(), nullable=True),
        sa.Column('currency', sa.String(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            'workspace_id', 'ad_account_id', 'level', 'entity_id', 'date',
            name='uq_meta_insights_daily_key',
        ),
    )
    op.create_index('ix_meta_insights_daily_workspace_id', 'meta_insights_daily', ['workspace_id'])
    # Dashboard reads: one account, one level, a date range
    op.create_index(
        'ix_meta_insights_daily_account_level_date',
        'meta_insights_daily',
        ['ad_account_id', 'level', 'date'],
    )

    # =========================================================================
    # STEP 5: Entity catalog and creatives
    # =========================================================================
    op.create_table(
        'meta_entities',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=False),
        sa.Column('entity_type', _enum('levelenum'), nullable=False),
        sa.Column('entity_id', sa.String(), nullable=False),
        sa.Column('name', sa.String(), nullable=True),
        sa.Column('status', sa.String(), nullable=True),
        sa.Column('objective', sa.String(), nullable=True),
        sa.Column('daily_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('lifetime_budget', sa.Numeric(18, 2), nullable=True),
        sa.Column('campaign_id', sa.String(), nullable=True),
        sa.Column('adset_id', sa.String(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('synced_at', sa.DateTime(), nullable=False, server_default=sa.func.now()),
        sa.UniqueConstraint(
            'workspace_id', 'ad_account_id', 'entity_type', 'entity_id',
            name='uq_meta_entities_key',
        ),
    )
    op.create_index('ix_meta_entities_workspace_id', 'meta_entities', ['workspace_id'])

    op.create_table(
        'meta_ad_creatives',
        sa.Column('id', _uuid(), primary_key=True),
        sa.Column('workspace_id', _uuid(), sa.ForeignKey('workspaces.id'), nullable=False),
        sa.Column('ad_account_id', _uuid(), sa.ForeignKey('meta_ad_accounts.id'), nullable=True),
        sa.Column('ad_id', sa.String(), nullable=False),
        sa.Column('meta_creative_id', sa.String(), nullable=True),
        sa.Column('creative_type', _enum('creativetypeenum'), nullable=False),
        sa.Column('image_url', sa.Text(), nullable=True),
        sa.Column('image_url_hd', sa.Text(), nullable=True),
        sa.Column('thumbnail_url', sa.Text(), nullable=True),
        sa.Column('image_width', sa.Integer(), nullable=True),
        sa.Column('image_height', sa.Integer(), nullable=True),
        sa.Column('image_quality', _enum('imagequalityenum'), nullable=False),
        sa.Column('media_source', sa.String(), nullable=True),
        sa.Column('video_id', sa.String(), nullable=True),
        sa.Column('video_url', sa.Text(), nullable=True),
        sa.Column('preview_url', sa.Text(), nullable=True),
        sa.Column('title', sa.Text(), nullable=True),
        sa.Column('body', sa.Text(), nullable=True),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('call_to_action', sa.String(), nullable=True),
        sa.Column('link_url', sa.Text(), nullable=True),
        sa.Column('fetch_status', _enum('fetchstatusenum'), nullable=False),
        sa.Column('is_complete', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('fetch_attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('needs_enrichment', sa.Boolean(), nullable=False, server_default='true'),
        sa.Column('enriched_at', sa.DateTime(), nullable=True),
        sa.Column('last_validated_at', sa.DateTime(), nullable=True),
        sa.Column('fetched_at', sa.DateTime(), nullable=True),
        sa.Column('cached_image_url', sa.Text(), nullable=True),
        sa.Column('cached_thumbnail_url', sa.Text(), nullable=True),
        sa.Column('file_size', sa.Integer(), nullable=True),
        sa.Column('extra_data', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now()),
        sa.UniqueConstraint('workspace_id', 'ad_id', name='uq_meta_ad_creatives_ad'),
    )
    op.create_index('ix_meta_ad_creatives_workspace_id', 'meta_ad_creatives', ['workspace_id'])


def downgrade() -> None:
    for table in (
        'meta_ad_creatives',
        'meta_entities',
        'meta_insights_daily',
        'meta_insights_raw',
        'meta_sync_state',
        'meta_sync_jobs',
        'meta_connection_accounts',
        'meta_ad_accounts',
        'meta_connections',
        'tokens',
        'workspaces',
    ):
        op.drop_table(table)

    bind = op.get_bind()
    for name in reversed(list(ENUMS)):
        postgresql.ENUM(name=name).drop(bind, checkfirst=True)
