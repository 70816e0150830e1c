"""Add channel attempt history, poll lease, cycle count and AI classification

Revision ID: 2b3c4d5e6f7a
Revises: 1a2b3c4d5e6f
Create Date: 2026-09-28 16:30:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '2b3c4d5e6f7a'
down_revision = '1a2b3c4d5e6f'
branch_labels = None
depends_on = None


def upgrade():
    op.add_column('sync_statuses', sa.Column('webhook_attempts', sa.JSON(), nullable=True))
    op.add_column('sync_statuses', sa.Column('polling_attempts', sa.JSON(), nullable=True))
    op.add_column('sync_statuses', sa.Column('poll_lease_until', sa.DateTime(timezone=True), nullable=True))
    op.add_column('sync_statuses',
        sa.Column('poll_cycle_count', sa.Integer(), nullable=False, server_default='0')
    )
    op.add_column('telephony_events', sa.Column('classification', sa.JSON(), nullable=True))


def downgrade():
    op.drop_column('telephony_events', 'classification')
    op.drop_column('sync_statuses', 'poll_cycle_count')
    op.drop_column('sync_statuses', 'poll_lease_until')
    op.drop_column('sync_statuses', 'polling_attempts')
    op.drop_column('sync_statuses', 'webhook_attempts')
