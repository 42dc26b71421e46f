"""Create billing tables

Revision ID: 001
Revises:
Create Date: 2026-09-14 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Tables may already exist when created by Base.metadata.create_all
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'employers' not in existing_tables:
        op.create_table(
            'employers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('company_name', sa.String(length=255), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
            sa.Column('has_used_trial', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_employers_id', 'employers', ['id'])
        op.create_index('ix_employers_email', 'employers', ['email'])
        op.create_index('ix_employers_stripe_customer_id', 'employers', ['stripe_customer_id'], unique=True)

    if 'plans' not in existing_tables:
        op.create_table(
            'plans',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('slug', sa.String(length=100), nullable=False),
            sa.Column('name', sa.String(length=255), nullable=False),
            sa.Column('description', sa.Text(), nullable=True),
            sa.Column('price', sa.Numeric(10, 2), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
            sa.Column('billing_interval', sa.String(length=20), nullable=False, server_default='monthly'),
            sa.Column('trial_days', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('job_posts_limit', sa.Integer(), nullable=True),
            sa.Column('featured_jobs_limit', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('resume_views_limit', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
            sa.Column('paypal_plan_id', sa.String(length=255), nullable=True),
            sa.Column('is_active', sa.Boolean(), nullable=False, server_default='true'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_plans_id', 'plans', ['id'])
        op.create_index('ix_plans_slug', 'plans', ['slug'], unique=True)

    if 'subscriptions' not in existing_tables:
        op.create_table(
            'subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('employer_id', sa.Integer(), nullable=False),
            sa.Column('plan_id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(length=20), nullable=False),
            sa.Column('external_subscription_id', sa.String(length=255), nullable=True),
            sa.Column('checkout_reference', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('amount', sa.Numeric(10, 2), nullable=False),
            sa.Column('currency', sa.String(length=3), nullable=False, server_default='USD'),
            sa.Column('is_trial', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('trial_ends_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('trial_ending_notified_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_start', sa.DateTime(timezone=True), nullable=True),
            sa.Column('current_period_end', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancel_requested', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('entitlements_end_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('grace_period_ends_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('last_event_id', sa.String(length=255), nullable=True),
            sa.Column('last_event_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('activated_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('suspended_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('expired_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['employer_id'], ['employers.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['plan_id'], ['plans.id']),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('provider', 'external_subscription_id', name='uq_subscriptions_provider_external_id')
        )
        op.create_index('ix_subscriptions_id', 'subscriptions', ['id'])
        op.create_index('ix_subscriptions_employer_id', 'subscriptions', ['employer_id'])
        op.create_index('ix_subscriptions_checkout_reference', 'subscriptions', ['checkout_reference'])
        op.create_index('ix_subscriptions_employer_status', 'subscriptions', ['employer_id', 'status'])
        op.create_index('ix_subscriptions_status_grace', 'subscriptions', ['status', 'grace_period_ends_at'])

    if 'payments' not in existing_tables:
        op.create_table(
            'payments',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=False),
            sa.Column('employer_id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(length=20), nullable=False),
            sa.Column('provider_transaction_id', sa.String(length=255), nullable=False),
            sa.Column('amount', sa.Numeric(10, 2), nullable=True),
            sa.Column('currency', sa.String(length=3), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='CASCADE'),
            sa.ForeignKeyConstraint(['employer_id'], ['employers.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint(
                'provider', 'provider_transaction_id', 'status', name='uq_payments_provider_transaction'
            )
        )
        op.create_index('ix_payments_id', 'payments', ['id'])
        op.create_index('ix_payments_subscription_id', 'payments', ['subscription_id'])
        op.create_index('ix_payments_employer_id', 'payments', ['employer_id'])

    if 'webhook_events' not in existing_tables:
        op.create_table(
            'webhook_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('provider', sa.String(length=20), nullable=False),
            sa.Column('external_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('kind', sa.String(length=50), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('outcome', sa.String(length=40), nullable=False),
            sa.Column('resulting_status', sa.String(length=20), nullable=True),
            sa.Column('detail', sa.Text(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('occurred_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id'),
            sa.UniqueConstraint('provider', 'external_event_id', name='uq_webhook_events_provider_event')
        )
        op.create_index('ix_webhook_events_id', 'webhook_events', ['id'])
        op.create_index('ix_webhook_events_event_type', 'webhook_events', ['event_type'])
        op.create_index('ix_webhook_events_subscription_id', 'webhook_events', ['subscription_id'])
        op.create_index('ix_webhook_events_created_at', 'webhook_events', ['created_at'])

    if 'provider_call_failures' not in existing_tables:
        op.create_table(
            'provider_call_failures',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('subscription_id', sa.Integer(), nullable=True),
            sa.Column('provider', sa.String(length=20), nullable=False),
            sa.Column('action', sa.String(length=50), nullable=False),
            sa.Column('attempts', sa.Integer(), nullable=False),
            sa.Column('last_error', sa.Text(), nullable=True),
            sa.Column('payload', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['subscription_id'], ['subscriptions.id'], ondelete='SET NULL'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_provider_call_failures_id', 'provider_call_failures', ['id'])
        op.create_index('ix_provider_call_failures_subscription_id', 'provider_call_failures', ['subscription_id'])
        op.create_index('ix_provider_call_failures_created_at', 'provider_call_failures', ['created_at'])


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    # Reverse dependency order
    for table in ('provider_call_failures', 'webhook_events', 'payments', 'subscriptions', 'plans', 'employers'):
        if table in existing_tables:
            op.drop_table(table)
