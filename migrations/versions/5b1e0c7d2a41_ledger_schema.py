"""ledger schema: customers, subscriptions, items, events, usage, webhooks, plans, payments

Revision ID: 5b1e0c7d2a41
Revises:
Create Date: 2026-10-16 09:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5b1e0c7d2a41'
down_revision = None
branch_labels = None
depends_on = None

JSON = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'customers',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=True),
        sa.Column('default_payment_method', sa.String(length=255), nullable=True),
        *_timestamps(),
        sa.UniqueConstraint('external_id', 'provider', name='uq_customers_external_id_provider'),
    )
    op.create_index('ix_customers_external_id', 'customers', ['external_id'])
    op.create_index('ix_customers_provider', 'customers', ['provider'])

    op.create_table(
        'subscriptions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('external_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('plan_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=32), nullable=False, server_default=sa.text("'incomplete'")),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_start', sa.DateTime(timezone=True), nullable=True),
        sa.Column('trial_end', sa.DateTime(timezone=True), nullable=True),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('cancellation_reason', sa.Text(), nullable=True),
        sa.Column('pause_collection', JSON, nullable=True),
        sa.Column('pending_update', JSON, nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('raw', JSON, nullable=True),
        sa.Column('synced_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete="SET NULL"),
        sa.UniqueConstraint('external_id', 'provider', name='uq_subscriptions_external_id_provider'),
    )
    op.create_index('ix_subscriptions_external_id', 'subscriptions', ['external_id'])
    op.create_index('ix_subscriptions_provider', 'subscriptions', ['provider'])
    op.create_index('ix_subscriptions_customer_id', 'subscriptions', ['customer_id'])
    op.create_index('ix_subscriptions_plan_id', 'subscriptions', ['plan_id'])
    op.create_index('ix_subscriptions_status', 'subscriptions', ['status'])
    op.create_index('ix_subscriptions_current_period_end', 'subscriptions', ['current_period_end'])

    op.create_table(
        'subscription_items',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('external_item_id', sa.String(length=255), nullable=False),
        sa.Column('price_id', sa.String(length=255), nullable=True),
        sa.Column('quantity', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('metadata', JSON, nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('subscription_id', 'external_item_id', name='uq_subscription_items_sub_external'),
    )
    op.create_index('ix_subscription_items_subscription_id', 'subscription_items', ['subscription_id'])
    op.create_index('ix_subscription_items_external_item_id', 'subscription_items', ['external_item_id'])

    op.create_table(
        'subscription_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(length=100), nullable=False),
        sa.Column('status_from', sa.String(length=50), nullable=True),
        sa.Column('status_to', sa.String(length=50), nullable=True),
        sa.Column('data', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_subscription_events_subscription_id', 'subscription_events', ['subscription_id'])
    op.create_index('ix_subscription_events_type', 'subscription_events', ['type'])

    op.create_table(
        'subscription_usage',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('item_id', sa.Integer(), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('action', sa.String(length=50), nullable=False),
        sa.Column('timestamp', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="CASCADE"),
        sa.ForeignKeyConstraint(['item_id'], ['subscription_items.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_subscription_usage_subscription_id', 'subscription_usage', ['subscription_id'])
    op.create_index('ix_subscription_usage_item_id', 'subscription_usage', ['item_id'])
    op.create_index('ix_subscription_usage_timestamp', 'subscription_usage', ['timestamp'])

    op.create_table(
        'webhook_events',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False),
        sa.Column('event_type', sa.String(length=255), nullable=False),
        sa.Column('payload', JSON, nullable=False),
        sa.Column('processing_status', sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('delivery_count', sa.Integer(), nullable=False, server_default=sa.text("1")),
        sa.Column('last_delivery_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('received_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('provider', 'event_id', name='uq_webhook_events_provider_event_id'),
    )
    op.create_index('ix_webhook_events_provider', 'webhook_events', ['provider'])
    op.create_index('ix_webhook_events_event_id', 'webhook_events', ['event_id'])
    op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
    op.create_index('ix_webhook_events_processing_status', 'webhook_events', ['processing_status'])
    op.create_index('ix_webhook_events_received_at', 'webhook_events', ['received_at'])

    op.create_table(
        'subscription_plans',
        sa.Column('id', sa.String(length=50), primary_key=True),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('price', sa.Numeric(10, 2), nullable=False),
        sa.Column('currency', sa.String(length=3), nullable=False, server_default=sa.text("'USD'")),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False),
        sa.Column('stripe_product_id', sa.String(length=100), nullable=True),
        sa.Column('stripe_price_id', sa.String(length=100), nullable=True),
        sa.Column('paypal_plan_id', sa.String(length=100), nullable=True),
        sa.Column('order', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        *_timestamps(),
        sa.CheckConstraint("billing_cycle IN ('monthly', 'yearly')", name='ck_subscription_plans_billing_cycle'),
    )
    op.create_index('ix_subscription_plans_stripe_price_id', 'subscription_plans', ['stripe_price_id'])
    op.create_index('ix_subscription_plans_paypal_plan_id', 'subscription_plans', ['paypal_plan_id'])
    op.create_index('ix_subscription_plans_is_active', 'subscription_plans', ['is_active'])

    op.create_table(
        'plan_features',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('plan_id', sa.String(length=50), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('included', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('feature_limit', sa.Integer(), nullable=True),
        sa.Column('units', sa.String(length=50), nullable=True),
        sa.Column('order', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.ForeignKeyConstraint(['plan_id'], ['subscription_plans.id'], ondelete="CASCADE"),
    )
    op.create_index('ix_plan_features_plan_id', 'plan_features', ['plan_id'])

    op.create_table(
        'scheduled_plan_changes',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscription_external_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('from_plan_id', sa.String(length=255), nullable=True),
        sa.Column('to_plan_id', sa.String(length=255), nullable=False),
        sa.Column('scheduled_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('executed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default=sa.text("'pending'")),
        sa.Column('metadata', JSON, nullable=True),
        *_timestamps(),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'cancelled')",
            name='ck_scheduled_plan_changes_status',
        ),
    )
    op.create_index('ix_scheduled_plan_changes_subscription_external_id', 'scheduled_plan_changes',
                    ['subscription_external_id'])
    op.create_index('ix_scheduled_plan_changes_scheduled_at', 'scheduled_plan_changes', ['scheduled_at'])
    op.create_index('ix_scheduled_plan_changes_status', 'scheduled_plan_changes', ['status'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('transaction_id', sa.String(length=255), nullable=True),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('customer_id', sa.Integer(), nullable=True),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('currency', sa.String(length=10), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['customer_id'], ['customers.id'], ondelete="SET NULL"),
        sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete="SET NULL"),
    )
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'])
    op.create_index('ix_payments_customer_id', 'payments', ['customer_id'])
    op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])

    op.create_table(
        'refunds',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('refund_id', sa.String(length=255), nullable=False),
        sa.Column('payment_id', sa.Integer(), nullable=True),
        sa.Column('transaction_id', sa.String(length=255), nullable=False),
        sa.Column('provider', sa.String(length=50), nullable=False),
        sa.Column('amount', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(length=50), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('metadata', JSON, nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['payment_id'], ['payments.id'], ondelete="SET NULL"),
    )
    op.create_index('ix_refunds_refund_id', 'refunds', ['refund_id'])
    op.create_index('ix_refunds_payment_id', 'refunds', ['payment_id'])


def downgrade():
    op.drop_table('refunds')
    op.drop_table('payments')
    op.drop_table('scheduled_plan_changes')
    op.drop_table('plan_features')
    op.drop_table('subscription_plans')
    op.drop_table('webhook_events')
    op.drop_table('subscription_usage')
    op.drop_table('subscription_events')
    op.drop_table('subscription_items')
    op.drop_table('subscriptions')
    op.drop_table('customers')
