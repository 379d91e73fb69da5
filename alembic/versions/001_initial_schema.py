"""initial schema - accounts, webhooks and the webhook delivery queue

Revision ID: 001
Revises:
Create Date: 2026-10-12 09:40:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Create whatsapp_accounts table
    op.create_table(
        'whatsapp_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('phone_number', sa.String(50), nullable=True),
        sa.Column('status', sa.String(50), nullable=False, server_default='initializing'),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
    )

    # Create webhooks table
    op.create_table(
        'webhooks',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('account_id', sa.String(36), sa.ForeignKey('whatsapp_accounts.id', ondelete='CASCADE'), nullable=False, index=True),
        sa.Column('url', sa.String(500), nullable=False),
        sa.Column('secret', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('max_retries', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
    )

    # Create webhook_delivery_queue table (status as VARCHAR + CHECK)
    op.create_table(
        'webhook_delivery_queue',
        sa.Column('id', sa.String(36), primary_key=True),
        # Plain column: terminal rows are kept after the account is deleted
        sa.Column('account_id', sa.String(36), nullable=False),
        sa.Column('webhook_id', sa.String(36), sa.ForeignKey('webhooks.id', ondelete='SET NULL'), nullable=True),
        sa.Column('webhook_url', sa.String(500), nullable=False),
        sa.Column('webhook_secret', sa.String(255), nullable=True),
        sa.Column('payload', postgresql.JSONB(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='pending'),
        sa.Column('attempt_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_retries', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('response_status', sa.Integer(), nullable=True),
        sa.Column('next_attempt_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
        sa.Column('created_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
        sa.Column('updated_at', sa.DateTime(), nullable=False, server_default=sa.text("(now() at time zone 'utc')")),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'success', 'failed', 'dead_letter')",
            name='ck_webhook_delivery_queue_status'
        ),
    )

    # Worker poll: WHERE status IN (...) AND next_attempt_at <= now
    op.create_index('idx_webhook_queue_due', 'webhook_delivery_queue', ['status', 'next_attempt_at'])
    op.create_index('ix_webhook_delivery_queue_account_id', 'webhook_delivery_queue', ['account_id'])


def downgrade() -> None:
    op.drop_index('ix_webhook_delivery_queue_account_id', table_name='webhook_delivery_queue')
    op.drop_index('idx_webhook_queue_due', table_name='webhook_delivery_queue')
    op.drop_table('webhook_delivery_queue')
    op.drop_table('webhooks')
    op.drop_table('whatsapp_accounts')
