"""initial_subscription_schema

Revision ID: 3f1c9a7d2b10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c9a7d2b10'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'payment_transactions',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('transaction_id', sa.TEXT(), nullable=False),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('subscription_id', sa.BIGINT(), nullable=True),
        sa.Column('payment_method', sa.TEXT(), nullable=False),
        sa.Column('amount', sa.TEXT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('provider_transaction_id', sa.TEXT(), nullable=True),
        sa.Column('provider_response', sa.JSON(), nullable=True),
        sa.Column('webhook_data', sa.JSON(), nullable=True),
        sa.Column('failure_reason', sa.TEXT(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('completed_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id', name='uq_payment_transactions_transaction_id'),
    )
    op.create_index('idx_payment_transactions_user', 'payment_transactions', ['user_id'])
    op.create_index('idx_payment_transactions_status', 'payment_transactions', ['status'])
    op.create_index('idx_payment_transactions_provider_ref', 'payment_transactions', ['provider_transaction_id'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.TEXT(), nullable=False),
        sa.Column('plan_id', sa.TEXT(), nullable=False),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('payment_method', sa.TEXT(), nullable=False),
        sa.Column('transaction_id', sa.TEXT(), nullable=False),
        sa.Column('provider_transaction_id', sa.TEXT(), nullable=True),
        sa.Column('amount', sa.TEXT(), nullable=False),
        sa.Column('currency', sa.TEXT(), nullable=False),
        sa.Column('expires_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('activated_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('subscription_metadata', sa.JSON(), nullable=True),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('updated_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('transaction_id', name='uq_subscriptions_transaction_id'),
    )
    op.create_index('idx_subscriptions_user_status', 'subscriptions', ['user_id', 'status'])
    op.create_index('idx_subscriptions_status_expires', 'subscriptions', ['status', 'expires_at'])

    op.create_table(
        'webhook_dedup_events',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('provider', sa.TEXT(), nullable=False),
        sa.Column('dedup_key', sa.TEXT(), nullable=False),
        sa.Column('first_seen_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.Column('last_seen_at', sa.TIMESTAMP(timezone=True), nullable=True),
        sa.Column('status', sa.TEXT(), nullable=False),
        sa.Column('request_hash', sa.TEXT(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('provider', 'dedup_key', name='uq_webhook_dedup_events'),
    )
    op.create_index('idx_webhook_dedup_status', 'webhook_dedup_events', ['status'])
    op.create_index('idx_webhook_dedup_first_seen', 'webhook_dedup_events', ['first_seen_at'])

    op.create_table(
        'billing_audit_logs',
        sa.Column('id', sa.BIGINT(), autoincrement=True, nullable=False),
        sa.Column('event_type', sa.TEXT(), nullable=False),
        sa.Column('user_id', sa.TEXT(), nullable=True),
        sa.Column('related_entity_type', sa.TEXT(), nullable=True),
        sa.Column('related_entity_id', sa.TEXT(), nullable=True),
        sa.Column('actor', sa.TEXT(), nullable=True),
        sa.Column('details', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.TIMESTAMP(timezone=True), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('idx_billing_audit_user', 'billing_audit_logs', ['user_id'])
    op.create_index('idx_billing_audit_entity', 'billing_audit_logs', ['related_entity_type', 'related_entity_id'])
    op.create_index('idx_billing_audit_created', 'billing_audit_logs', ['created_at'])


def downgrade() -> None:
    op.drop_table('billing_audit_logs')
    op.drop_table('webhook_dedup_events')
    op.drop_table('subscriptions')
    op.drop_table('payment_transactions')
