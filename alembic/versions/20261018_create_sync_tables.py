"""Create calendar sync tables

Revision ID: 3f1a7c52d9e4
Revises:
Create Date: 2026-10-18

Creates the four tables owned by the sync engine:
- calendar_connections: OAuth credentials, toggles and push channel per calendar
- calendar_event_mappings: source event <-> external event links with version hashes
- calendar_sync_log: one row per sync run
- calendar_sync_conflicts: events both sides edited since the last sync

The LMS and study session tables are owned by their own applications and
are not created here.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '3f1a7c52d9e4'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _base_columns() -> list:
    return [
        sa.Column('id', sa.CHAR(length=32), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('deleted_at', sa.DateTime(timezone=True), nullable=True),
    ]


def upgrade() -> None:
    op.create_table('calendar_connections',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('account_email', sa.String(length=255), nullable=False),
        sa.Column('calendar_id', sa.String(length=255), nullable=False),
        sa.Column('calendar_timezone', sa.String(length=64), nullable=False),
        sa.Column('sync_enabled', sa.Boolean(), nullable=False),
        sa.Column('sync_lms_events', sa.Boolean(), nullable=False),
        sa.Column('sync_study_sessions', sa.Boolean(), nullable=False),
        sa.Column('sync_external_events', sa.Boolean(), nullable=False),
        sa.Column('access_token_encrypted', sa.Text(), nullable=True),
        sa.Column('refresh_token_encrypted', sa.Text(), nullable=True),
        sa.Column('token_expiry', sa.DateTime(timezone=True), nullable=True),
        sa.Column('scopes', sa.Text(), nullable=True),
        sa.Column('last_sync_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('last_sync_status', sa.String(length=20), nullable=True),
        sa.Column('last_sync_error', sa.Text(), nullable=True),
        sa.Column('webhook_channel_id', sa.String(length=255), nullable=True),
        sa.Column('webhook_resource_id', sa.String(length=255), nullable=True),
        sa.Column('webhook_expiration', sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'account_email', 'calendar_id', name='uq_connection_account_calendar'),
        sa.UniqueConstraint('webhook_channel_id'),
    )
    with op.batch_alter_table('calendar_connections', schema=None) as batch_op:
        batch_op.create_index('ix_calendar_connections_user_id', ['user_id'], unique=False)
        batch_op.create_index('ix_calendar_connections_webhook_expiration', ['webhook_expiration'], unique=False)
        batch_op.create_index('ix_calendar_connections_deleted', ['deleted_at'], unique=False)

    op.create_table('calendar_event_mappings',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('connection_id', sa.CHAR(length=32), nullable=False),
        sa.Column('source_system', sa.String(length=20), nullable=False),
        sa.Column('source_id', sa.String(length=255), nullable=False),
        sa.Column('external_event_id', sa.String(length=1024), nullable=True),
        sa.Column('internal_version_hash', sa.String(length=64), nullable=True),
        sa.Column('external_version_hash', sa.String(length=64), nullable=True),
        sa.Column('snapshot', sa.JSON(), nullable=True),
        sa.Column('sync_status', sa.String(length=20), nullable=False),
        sa.Column('last_modified_by', sa.String(length=20), nullable=True),
        sa.Column('last_synced_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('internal_deleted', sa.Boolean(), nullable=False),
        sa.Column('external_deleted', sa.Boolean(), nullable=False),
        *_base_columns(),
        sa.ForeignKeyConstraint(['connection_id'], ['calendar_connections.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('user_id', 'connection_id', 'source_system', 'source_id', name='uq_event_mapping_source'),
    )
    with op.batch_alter_table('calendar_event_mappings', schema=None) as batch_op:
        batch_op.create_index('ix_event_mapping_external', ['connection_id', 'external_event_id'], unique=False)
        batch_op.create_index('ix_event_mapping_status', ['sync_status'], unique=False)
        batch_op.create_index('ix_event_mapping_deleted', ['deleted_at'], unique=False)

    op.create_table('calendar_sync_log',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('connection_id', sa.CHAR(length=32), nullable=True),
        sa.Column('sync_type', sa.String(length=20), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('events_created', sa.Integer(), nullable=False),
        sa.Column('events_updated', sa.Integer(), nullable=False),
        sa.Column('events_deleted', sa.Integer(), nullable=False),
        sa.Column('conflicts_detected', sa.Integer(), nullable=False),
        sa.Column('events_failed', sa.Integer(), nullable=False),
        sa.Column('duration_ms', sa.Integer(), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(['connection_id'], ['calendar_connections.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('calendar_sync_log', schema=None) as batch_op:
        batch_op.create_index('ix_sync_log_user_started', ['user_id', 'started_at'], unique=False)
        batch_op.create_index('ix_sync_log_status', ['status'], unique=False)

    op.create_table('calendar_sync_conflicts',
        sa.Column('user_id', sa.String(length=255), nullable=False),
        sa.Column('connection_id', sa.CHAR(length=32), nullable=False),
        sa.Column('mapping_id', sa.CHAR(length=32), nullable=False),
        sa.Column('sync_run_id', sa.CHAR(length=32), nullable=True),
        sa.Column('conflict_type', sa.String(length=30), nullable=False),
        sa.Column('internal_snapshot', sa.JSON(), nullable=True),
        sa.Column('external_snapshot', sa.JSON(), nullable=True),
        sa.Column('internal_changes', sa.JSON(), nullable=False),
        sa.Column('external_changes', sa.JSON(), nullable=False),
        sa.Column('resolution_status', sa.String(length=20), nullable=False),
        sa.Column('resolution_action', sa.String(length=30), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
        *_base_columns(),
        sa.ForeignKeyConstraint(['connection_id'], ['calendar_connections.id']),
        sa.ForeignKeyConstraint(['mapping_id'], ['calendar_event_mappings.id']),
        sa.ForeignKeyConstraint(['sync_run_id'], ['calendar_sync_log.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    with op.batch_alter_table('calendar_sync_conflicts', schema=None) as batch_op:
        batch_op.create_index('ix_sync_conflict_mapping_status', ['mapping_id', 'resolution_status'], unique=False)
        batch_op.create_index('ix_sync_conflict_user_status', ['user_id', 'resolution_status'], unique=False)


def downgrade() -> None:
    with op.batch_alter_table('calendar_sync_conflicts', schema=None) as batch_op:
        batch_op.drop_index('ix_sync_conflict_user_status')
        batch_op.drop_index('ix_sync_conflict_mapping_status')
    op.drop_table('calendar_sync_conflicts')

    with op.batch_alter_table('calendar_sync_log', schema=None) as batch_op:
        batch_op.drop_index('ix_sync_log_status')
        batch_op.drop_index('ix_sync_log_user_started')
    op.drop_table('calendar_sync_log')

    with op.batch_alter_table('calendar_event_mappings', schema=None) as batch_op:
        batch_op.drop_index('ix_event_mapping_deleted')
        batch_op.drop_index('ix_event_mapping_status')
        batch_op.drop_index('ix_event_mapping_external')
    op.drop_table('calendar_event_mappings')

    with op.batch_alter_table('calendar_connections', schema=None) as batch_op:
        batch_op.drop_index('ix_calendar_connections_deleted')
        batch_op.drop_index('ix_calendar_connections_webhook_expiration')
        batch_op.drop_index('ix_calendar_connections_user_id')
    op.drop_table('calendar_connections')
