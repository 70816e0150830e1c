"""Initial schema: users, integrations, telephony events, sync status, webhook logs

Revision ID: 1a2b3c4d5e6f
Revises:
Create Date: 2026-09-14 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '1a2b3c4d5e6f'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(255), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(255), nullable=False),
        sa.Column('timezone', sa.String(50), server_default='UTC'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )

    op.create_table(
        'integration_accounts',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('display_name', sa.String(255)),
        sa.Column('encrypted_credentials', sa.Text()),
        sa.Column('capabilities', sa.JSON()),
        sa.Column('webhook_token', sa.String(64), nullable=False, unique=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('polling_interval_minutes', sa.Integer(), server_default='15'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )

    op.create_table(
        'telephony_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('integration_id', sa.Integer(), sa.ForeignKey('integration_accounts.id'), nullable=False),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('provider_event_id', sa.String(255), nullable=False),
        sa.Column('kind', sa.String(10)),
        sa.Column('event_type', sa.String(30), nullable=False, server_default='unknown'),
        sa.Column('status', sa.String(20)),
        sa.Column('status_rank', sa.Integer(), nullable=False, server_default='-1'),
        sa.Column('parent_ref', sa.String(255)),
        sa.Column('parent_event_id', sa.Integer(), sa.ForeignKey('telephony_events.id'), nullable=True),
        sa.Column('correlation_id', sa.String(255)),
        sa.Column('direction', sa.String(10)),
        sa.Column('from_number', sa.String(40)),
        sa.Column('to_number', sa.String(40)),
        sa.Column('started_at', sa.DateTime(timezone=True)),
        sa.Column('ended_at', sa.DateTime(timezone=True)),
        sa.Column('ended_reason', sa.String(100)),
        sa.Column('duration_seconds', sa.Integer()),
        sa.Column('cost_amount', sa.Numeric(12, 6)),
        sa.Column('cost_currency', sa.String(3)),
        sa.Column('body', sa.Text()),
        sa.Column('extra', sa.JSON()),
        sa.Column('raw_payload', sa.JSON()),
        sa.Column('processing_status', sa.String(20), nullable=False, server_default='processed'),
        sa.Column('normalization_error', sa.Text()),
        sa.Column('received_via', sa.String(10), nullable=False),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('event_timestamp', sa.DateTime(timezone=True)),
        sa.Column('delivery_count', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.UniqueConstraint('provider', 'provider_event_id', name='uq_event_provider_event_id'),
    )
    op.create_index(
        'ix_event_integration_timestamp', 'telephony_events',
        ['integration_id', 'event_timestamp']
    )
    op.create_index(
        'ix_event_integration_parent_ref', 'telephony_events',
        ['integration_id', 'parent_ref']
    )
    op.create_index('ix_event_parent', 'telephony_events', ['parent_event_id'])

    op.create_table(
        'sync_statuses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('integration_id', sa.Integer(), sa.ForeignKey('integration_accounts.id'), nullable=False, unique=True),
        sa.Column('sync_method', sa.String(20), server_default='hybrid'),
        sa.Column('webhook_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_webhook_received_at', sa.DateTime(timezone=True)),
        sa.Column('webhook_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('webhook_health_status', sa.String(20), nullable=False, server_default='unknown'),
        sa.Column('polling_enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_poll_at', sa.DateTime(timezone=True)),
        sa.Column('last_successful_poll_at', sa.DateTime(timezone=True)),
        sa.Column('polling_failure_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('polling_health_status', sa.String(20), nullable=False, server_default='unknown'),
        sa.Column('polling_suspended', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('suspended_reason', sa.String(255)),
        sa.Column('poll_checkpoint', sa.JSON()),
        sa.Column('last_synced_timestamp', sa.DateTime(timezone=True)),
        sa.Column('last_synced_event_id', sa.String(255)),
        sa.Column('overall_health', sa.String(20), nullable=False, server_default='unknown'),
        sa.Column('sync_confidence_percentage', sa.Float(), nullable=False, server_default='0'),
        sa.Column('consecutive_error_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error_message', sa.Text()),
        sa.Column('last_error_at', sa.DateTime(timezone=True)),
        sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('next_retry_at', sa.DateTime(timezone=True)),
        sa.Column('backoff_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_events_synced', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_sync_duration_ms', sa.Integer()),
        sa.Column('average_sync_duration_ms', sa.Float()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
        sa.Column('updated_at', sa.DateTime(timezone=True)),
    )

    op.create_table(
        'webhook_delivery_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('integration_id', sa.Integer(), sa.ForeignKey('integration_accounts.id'), nullable=True),
        sa.Column('provider', sa.String(20), nullable=False),
        sa.Column('request_method', sa.String(10), nullable=False),
        sa.Column('response_status', sa.Integer(), nullable=False),
        sa.Column('error_message', sa.Text()),
        sa.Column('processing_time_ms', sa.Integer()),
        sa.Column('created_at', sa.DateTime(timezone=True)),
    )
    op.create_index(
        'ix_webhook_log_integration_created', 'webhook_delivery_logs',
        ['integration_id', 'created_at']
    )


def downgrade():
    op.drop_index('ix_webhook_log_integration_created', table_name='webhook_delivery_logs')
    op.drop_table('webhook_delivery_logs')
    op.drop_table('sync_statuses')
    op.drop_index('ix_event_parent', table_name='telephony_events')
    op.drop_index('ix_event_integration_parent_ref', table_name='telephony_events')
    op.drop_index('ix_event_integration_timestamp', table_name='telephony_events')
    op.drop_table('telephony_events')
    op.drop_table('integration_accounts')
    op.drop_table('users')
