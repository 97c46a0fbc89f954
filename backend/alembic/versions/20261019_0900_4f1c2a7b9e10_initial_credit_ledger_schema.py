"""Initial schema: accounts, credit transactions, grants, usage periods, meter event jobs, auto top-up

Revision ID: 4f1c2a7b9e10
Revises:
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql


# revision identifiers, used by Alembic.
revision: str = '4f1c2a7b9e10'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

CREDIT_AMOUNT = sa.Numeric(18, 6)


def _base_columns() -> list[sa.Column]:
    return [
        sa.Column('id', sa.UUID(), nullable=False),
        sa.Column('created_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    """Create all tables for the credit ledger."""
    membership_tier = sa.Enum('FREE', 'PRO', 'ENTERPRISE', name='membershiptier')
    transaction_type = sa.Enum(
        'USAGE', 'DEPLOYMENT', 'AI_GENERATION', 'MONTHLY_ALLOCATION', 'PURCHASE',
        'PROMOTIONAL', 'AUTO_TOP_UP', 'REFUND', 'EXPIRATION', 'ADJUSTMENT',
        name='credittransactiontype',
    )
    grant_category = sa.Enum('PAID', 'PROMOTIONAL', name='grantcategory')
    grant_status = sa.Enum('PENDING', 'APPLIED', 'VOIDED', name='grantstatus')
    period_status = sa.Enum('PENDING', 'CALCULATED', 'REPORTED', 'BILLED', 'PAID', name='usageperiodstatus')
    job_status = sa.Enum('WAITING', 'ACTIVE', 'COMPLETED', 'FAILED', name='metereventjobstatus')
    job_outcome = sa.Enum('DELIVERED', 'DUPLICATE', name='metereventoutcome')

    # 1. Accounts (no dependencies)
    op.create_table(
        'accounts',
        *_base_columns(),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('external_customer_id', sa.String(), nullable=True),
        sa.Column('membership_tier', membership_tier, nullable=False, server_default='FREE'),
        sa.Column('membership_expires_at', sa.DateTime(), nullable=True),
        sa.Column('balance', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('base_plan_credits', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('carry_over_credits', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('carry_over_expires_at', sa.DateTime(), nullable=True),
        sa.Column('purchased_credits', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('last_credit_reset', sa.DateTime(), nullable=True),
        sa.Column('monthly_credits_used', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('lifetime_credits_used', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint('balance >= 0', name='ck_accounts_balance_non_negative'),
    )
    op.create_index(op.f('ix_accounts_id'), 'accounts', ['id'])
    op.create_index(op.f('ix_accounts_created_at'), 'accounts', ['created_at'])
    op.create_index(op.f('ix_accounts_external_customer_id'), 'accounts', ['external_customer_id'], unique=True)

    # 2. Credit transactions (depends on accounts)
    op.create_table(
        'credit_transactions',
        *_base_columns(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('amount', CREDIT_AMOUNT, nullable=False),
        sa.Column('type', transaction_type, nullable=False),
        sa.Column('description', sa.String(), nullable=False),
        sa.Column('balance_after', CREDIT_AMOUNT, nullable=False),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_credit_transactions_id'), 'credit_transactions', ['id'])
    op.create_index(op.f('ix_credit_transactions_created_at'), 'credit_transactions', ['created_at'])
    op.create_index(op.f('ix_credit_transactions_account_id'), 'credit_transactions', ['account_id'])
    op.create_index(op.f('ix_credit_transactions_type'), 'credit_transactions', ['type'])

    # 3. Credit grants (depends on accounts, credit_transactions)
    op.create_table(
        'credit_grants',
        *_base_columns(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('credits', CREDIT_AMOUNT, nullable=False),
        sa.Column('category', grant_category, nullable=False),
        sa.Column('name', sa.String(), nullable=False),
        sa.Column('status', grant_status, nullable=False, server_default='PENDING'),
        sa.Column('expires_at', sa.DateTime(), nullable=True),
        sa.Column('applied_at', sa.DateTime(), nullable=True),
        sa.Column('voided_at', sa.DateTime(), nullable=True),
        sa.Column('external_grant_id', sa.String(), nullable=True),
        sa.Column('transaction_id', sa.UUID(), nullable=True),
        sa.Column('metadata', postgresql.JSONB(), nullable=False, server_default='{}'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['transaction_id'], ['credit_transactions.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_credit_grants_id'), 'credit_grants', ['id'])
    op.create_index(op.f('ix_credit_grants_created_at'), 'credit_grants', ['created_at'])
    op.create_index(op.f('ix_credit_grants_account_id'), 'credit_grants', ['account_id'])
    op.create_index(op.f('ix_credit_grants_status'), 'credit_grants', ['status'])

    # 4. Usage periods (depends on accounts)
    op.create_table(
        'usage_periods',
        *_base_columns(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('status', period_status, nullable=False, server_default='PENDING'),
        sa.Column('function_calls', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('action_compute_ms', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('database_bandwidth_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('database_storage_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('file_bandwidth_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('file_storage_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('vector_bandwidth_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('vector_storage_bytes', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('function_calls_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('action_compute_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('database_bandwidth_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('database_storage_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('file_bandwidth_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('file_storage_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('vector_bandwidth_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('vector_storage_cost', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('raw_credits', CREDIT_AMOUNT, nullable=False, server_default='0'),
        sa.Column('total_cost', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('calculated_at', sa.DateTime(), nullable=True),
        sa.Column('reported_at', sa.DateTime(), nullable=True),
        sa.Column('billed_at', sa.DateTime(), nullable=True),
        sa.Column('paid_at', sa.DateTime(), nullable=True),
        sa.Column('version', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id', 'period_start', 'period_end', name='uq_usage_period_account_window'),
    )
    op.create_index(op.f('ix_usage_periods_id'), 'usage_periods', ['id'])
    op.create_index(op.f('ix_usage_periods_created_at'), 'usage_periods', ['created_at'])
    op.create_index(op.f('ix_usage_periods_account_id'), 'usage_periods', ['account_id'])
    op.create_index(op.f('ix_usage_periods_status'), 'usage_periods', ['status'])

    # 5. Meter event jobs (no dependencies)
    op.create_table(
        'meter_event_jobs',
        *_base_columns(),
        sa.Column('event_name', sa.String(), nullable=False),
        sa.Column('external_customer_id', sa.String(), nullable=False),
        sa.Column('value', sa.BigInteger(), nullable=False),
        sa.Column('event_timestamp', sa.DateTime(), nullable=True),
        sa.Column('idempotency_key', sa.String(), nullable=True),
        sa.Column('status', job_status, nullable=False, server_default='WAITING'),
        sa.Column('outcome', job_outcome, nullable=True),
        sa.Column('attempt', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_attempts', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('run_at', sa.DateTime(), nullable=False),
        sa.Column('claimed_at', sa.DateTime(), nullable=True),
        sa.Column('completed_at', sa.DateTime(), nullable=True),
        sa.Column('failed_at', sa.DateTime(), nullable=True),
        sa.Column('last_error', sa.String(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('idempotency_key'),
    )
    op.create_index(op.f('ix_meter_event_jobs_id'), 'meter_event_jobs', ['id'])
    op.create_index(op.f('ix_meter_event_jobs_created_at'), 'meter_event_jobs', ['created_at'])
    op.create_index(op.f('ix_meter_event_jobs_event_name'), 'meter_event_jobs', ['event_name'])
    op.create_index(op.f('ix_meter_event_jobs_external_customer_id'), 'meter_event_jobs', ['external_customer_id'])
    op.create_index(op.f('ix_meter_event_jobs_status'), 'meter_event_jobs', ['status'])
    op.create_index(op.f('ix_meter_event_jobs_run_at'), 'meter_event_jobs', ['run_at'])

    # 6. Auto top-up configs (depends on accounts)
    op.create_table(
        'auto_top_up_configs',
        *_base_columns(),
        sa.Column('account_id', sa.UUID(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('threshold_credits', sa.Integer(), nullable=False, server_default='500'),
        sa.Column('top_up_credits', sa.Integer(), nullable=False, server_default='2000'),
        sa.Column('payment_method_id', sa.String(), nullable=True),
        sa.Column('max_monthly_top_ups', sa.Integer(), nullable=False, server_default='5'),
        sa.Column('top_ups_this_month', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('monthly_reset_at', sa.DateTime(), nullable=True),
        sa.Column('consecutive_failures', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('last_failure_at', sa.DateTime(), nullable=True),
        sa.Column('last_top_up_error', sa.String(), nullable=True),
        sa.Column('needs_manual_review', sa.Boolean(), nullable=False, server_default='false'),
        sa.Column('last_top_up_at', sa.DateTime(), nullable=True),
        sa.Column('last_top_up_amount', sa.Integer(), nullable=True),
        sa.ForeignKeyConstraint(['account_id'], ['accounts.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('account_id'),
    )
    op.create_index(op.f('ix_auto_top_up_configs_id'), 'auto_top_up_configs', ['id'])
    op.create_index(op.f('ix_auto_top_up_configs_created_at'), 'auto_top_up_configs', ['created_at'])


def downgrade() -> None:
    """Drop all tables and enum types."""
    op.drop_table('auto_top_up_configs')
    op.drop_table('meter_event_jobs')
    op.drop_table('usage_periods')
    op.drop_table('credit_grants')
    op.drop_table('credit_transactions')
    op.drop_table('accounts')

    for enum_name in (
        'metereventoutcome',
        'metereventjobstatus',
        'usageperiodstatus',
        'grantstatus',
        'grantcategory',
        'credittransactiontype',
        'membershiptier',
    ):
        op.execute(f'DROP TYPE IF EXISTS {enum_name}')
