"""initial ledger schema

Revision ID: 2026_10_01_0000
Revises:
Create Date: 2026-10-01 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB, UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_01_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create plans, accounts, ledger, plan history and payment event tables."""

    # ========================================================================
    # plans
    # ========================================================================
    op.create_table(
        'plans',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('name', sa.String(100), nullable=False, unique=True),
        sa.Column('display_name', sa.String(255), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=''),
        sa.Column('price_minor', sa.BigInteger(), nullable=False),
        sa.Column('currency', sa.String(3), nullable=False, server_default='INR'),
        sa.Column('token_grant', sa.BigInteger(), nullable=False),
        sa.Column('tier', sa.String(20), nullable=False, server_default='paid'),
        sa.Column('active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('sort_order', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('total_purchases', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_revenue_minor', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('price_minor >= 0', name='ck_plan_price_non_negative'),
        sa.CheckConstraint('token_grant > 0', name='ck_plan_grant_positive'),
        sa.CheckConstraint("tier IN ('free', 'paid', 'premium')", name='ck_plan_tier'),
    )
    op.create_index('idx_plans_tier_active', 'plans', ['tier', 'active'])
    op.create_index('idx_plans_sort_order', 'plans', ['sort_order'])

    # ========================================================================
    # accounts
    # ========================================================================
    op.create_table(
        'accounts',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(255), nullable=False, unique=True),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('free_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('paid_tokens', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_used', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('total_requests', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('active_plan_id', UUID(as_uuid=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('free_tokens >= 0', name='ck_free_tokens_non_negative'),
        sa.CheckConstraint('paid_tokens >= 0', name='ck_paid_tokens_non_negative'),
        sa.CheckConstraint('balance = free_tokens + paid_tokens', name='ck_balance_is_pool_sum'),
        sa.CheckConstraint('total_used >= 0', name='ck_total_used_non_negative'),
        sa.ForeignKeyConstraint(['active_plan_id'], ['plans.id'], name='fk_accounts_active_plan'),
    )
    op.create_index('idx_accounts_updated_at', 'accounts', ['updated_at'])

    # ========================================================================
    # ledger_transactions
    # ========================================================================
    op.create_table(
        'ledger_transactions',
        sa.Column('seq', sa.BigInteger(), primary_key=True, autoincrement=True),
        sa.Column('transaction_id', UUID(as_uuid=True), nullable=False, unique=True),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('kind', sa.String(10), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('pool', sa.String(10), nullable=False),
        sa.Column('reason', sa.String(255), nullable=False),
        sa.Column('related_payment_id', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('amount > 0', name='ck_ledger_amount_positive'),
        sa.CheckConstraint("kind IN ('debit', 'credit')", name='ck_ledger_kind'),
        sa.CheckConstraint("pool IN ('free', 'paid')", name='ck_ledger_pool'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_ledger_account', ondelete='RESTRICT'),
    )
    op.create_index('idx_ledger_account_seq', 'ledger_transactions', ['account_id', 'seq'])

    # ========================================================================
    # plan_purchases
    # ========================================================================
    op.create_table(
        'plan_purchases',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('account_id', UUID(as_uuid=True), nullable=False),
        sa.Column('plan_id', UUID(as_uuid=True), nullable=False),
        sa.Column('granted_tokens', sa.BigInteger(), nullable=False),
        sa.Column('amount_paid_minor', sa.BigInteger(), nullable=False),
        sa.Column('payment_id', sa.String(255), nullable=False),
        sa.Column('status', sa.String(20), nullable=False, server_default='completed'),
        sa.Column('purchased_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.CheckConstraint('granted_tokens > 0', name='ck_purchase_grant_positive'),
        sa.CheckConstraint(
            "status IN ('pending', 'completed', 'failed', 'refunded')", name='ck_purchase_status'
        ),
        sa.UniqueConstraint('account_id', 'payment_id', name='uq_purchase_payment'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], name='fk_purchases_account', ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], name='fk_purchases_plan', ondelete='RESTRICT'),
    )
    op.create_index('idx_plan_purchases_account', 'plan_purchases', ['account_id', 'purchased_at'])
    op.create_index('idx_plan_purchases_payment_id', 'plan_purchases', ['payment_id'])

    # ========================================================================
    # payment_events
    # ========================================================================
    op.create_table(
        'payment_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('provider', sa.String(50), nullable=False),
        sa.Column('event_id', sa.String(255), nullable=False),
        sa.Column('delivery_event_id', sa.String(255), nullable=True),
        sa.Column('event_type', sa.String(100), nullable=True),
        sa.Column('payment_id', sa.String(255), nullable=True),
        sa.Column('order_id', sa.String(255), nullable=True),
        sa.Column('signature_verified', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_error', sa.Text(), nullable=True),
        sa.Column('payload', JSONB(), nullable=False, server_default=sa.text("'{}'::jsonb")),
        sa.Column('result', JSONB(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        sa.UniqueConstraint('provider', 'event_id', name='uq_payment_event_key'),
        sa.CheckConstraint('attempts >= 0', name='ck_payment_event_attempts'),
    )
    op.create_index(
        'idx_payment_events_payment_id', 'payment_events', ['payment_id'],
        postgresql_where=sa.text('payment_id IS NOT NULL'),
    )
    op.create_index('idx_payment_events_processed', 'payment_events', ['processed'])
    op.create_index('idx_payment_events_created_at', 'payment_events', ['created_at'])


def downgrade() -> None:
    """Drop all ledger tables."""
    op.drop_table('payment_events')
    op.drop_table('plan_purchases')
    op.drop_table('ledger_transactions')
    op.drop_table('accounts')
    op.drop_table('plans')
