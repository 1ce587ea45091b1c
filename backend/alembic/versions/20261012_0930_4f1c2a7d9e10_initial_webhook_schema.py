"""Initial schema: webhook subscriptions, delivery attempts, metrics, audit

Revision ID: 4f1c2a7d9e10
Revises:
Create Date: 2026-10-12 09:30:41.218034

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '4f1c2a7d9e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create all tables for webhook delivery."""
    # 1. Subscriptions (no dependencies)
    op.create_table(
        'webhook_subscriptions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('url', sa.String(length=2048), nullable=False),
        sa.Column('events', sa.JSON(), nullable=False),
        sa.Column('secret', sa.String(length=255), nullable=False),
        sa.Column('config', sa.JSON(), nullable=False),
        sa.Column('status', sa.Enum('ACTIVE', 'DELETED', name='subscriptionstatus'), nullable=False),
        sa.Column('secret_rotated_at', sa.DateTime(), nullable=True),
        sa.Column('deleted_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_subscriptions_id'), 'webhook_subscriptions', ['id'])
    op.create_index(op.f('ix_webhook_subscriptions_created_at'), 'webhook_subscriptions', ['created_at'])
    op.create_index(op.f('ix_webhook_subscriptions_status'), 'webhook_subscriptions', ['status'])

    # 2. Failure store (one row per logical delivery)
    op.create_table(
        'webhook_delivery_attempts',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('delivery_id', sa.String(length=64), nullable=False),
        sa.Column('webhook_id', sa.Uuid(), nullable=False),
        sa.Column('event_type', sa.String(length=64), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=False),
        sa.Column('attempt_number', sa.Integer(), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(), nullable=False),
        sa.Column(
            'outcome',
            sa.Enum('PENDING', 'SUCCESS', 'FAILED', 'ABANDONED', name='attemptoutcome'),
            nullable=False,
        ),
        sa.Column('http_status', sa.Integer(), nullable=True),
        sa.Column('latency_ms', sa.Float(), nullable=True),
        sa.Column('error', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('delivery_id')
    )
    op.create_index(op.f('ix_webhook_delivery_attempts_id'), 'webhook_delivery_attempts', ['id'])
    op.create_index(op.f('ix_webhook_delivery_attempts_created_at'), 'webhook_delivery_attempts', ['created_at'])
    op.create_index(op.f('ix_webhook_delivery_attempts_webhook_id'), 'webhook_delivery_attempts', ['webhook_id'])
    op.create_index(op.f('ix_webhook_delivery_attempts_scheduled_at'), 'webhook_delivery_attempts', ['scheduled_at'])
    op.create_index(op.f('ix_webhook_delivery_attempts_outcome'), 'webhook_delivery_attempts', ['outcome'])

    # 3. Per-webhook metrics
    op.create_table(
        'webhook_metrics',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('webhook_id', sa.Uuid(), nullable=False),
        sa.Column('total_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('successful_deliveries', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('average_latency_ms', sa.Float(), nullable=False, server_default='0'),
        sa.Column('last_attempt_at', sa.DateTime(), nullable=True),
        sa.Column('last_success_at', sa.DateTime(), nullable=True),
        sa.Column('last_failure_at', sa.DateTime(), nullable=True),
        sa.Column('last_http_status', sa.Integer(), nullable=True),
        sa.Column('last_error', sa.String(length=500), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_metrics_id'), 'webhook_metrics', ['id'])
    op.create_index(op.f('ix_webhook_metrics_created_at'), 'webhook_metrics', ['created_at'])
    op.create_index(op.f('ix_webhook_metrics_webhook_id'), 'webhook_metrics', ['webhook_id'], unique=True)

    # 4. Audit log
    op.create_table(
        'webhook_audit_logs',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('entity_type', sa.String(), nullable=False),
        sa.Column('entity_id', sa.Uuid(), nullable=False),
        sa.Column('action', sa.String(), nullable=False),
        sa.Column('changes', sa.JSON(), nullable=False),
        sa.Column('request_id', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id')
    )
    op.create_index(op.f('ix_webhook_audit_logs_id'), 'webhook_audit_logs', ['id'])
    op.create_index(op.f('ix_webhook_audit_logs_created_at'), 'webhook_audit_logs', ['created_at'])
    op.create_index(op.f('ix_webhook_audit_logs_entity_type'), 'webhook_audit_logs', ['entity_type'])
    op.create_index(op.f('ix_webhook_audit_logs_entity_id'), 'webhook_audit_logs', ['entity_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('webhook_audit_logs')
    op.drop_table('webhook_metrics')
    op.drop_table('webhook_delivery_attempts')
    op.drop_table('webhook_subscriptions')
    op.execute('DROP TYPE IF EXISTS attemptoutcome')
    op.execute('DROP TYPE IF EXISTS subscriptionstatus')
