"""Create ledger tables

Revision ID: 001
Revises:
Create Date: 2026-10-18 12:00:00.000000

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

MONEY = sa.Numeric(12, 2)


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    existing_tables = inspect(conn).get_table_names()

    if 'cases' not in existing_tables:
        op.create_table(
            'cases',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('owner_id', sa.Integer(), nullable=True),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('status', sa.String(length=32), nullable=False, server_default='open'),
            sa.Column('current_escrow', MONEY, nullable=False, server_default='0'),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('current_escrow >= 0', name='ck_cases_escrow_non_negative')
        )
        op.create_index('ix_cases_id', 'cases', ['id'])
        op.create_index('ix_cases_owner_id', 'cases', ['owner_id'])

    if 'wallets' not in existing_tables:
        op.create_table(
            'wallets',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('balance', MONEY, nullable=False, server_default='0'),
            sa.Column('reserved', MONEY, nullable=False, server_default='0'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('balance >= 0', name='ck_wallets_balance_non_negative'),
            sa.CheckConstraint('reserved >= 0', name='ck_wallets_reserved_non_negative')
        )
        op.create_index('ix_wallets_id', 'wallets', ['id'])
        op.create_index('ix_wallets_user_id', 'wallets', ['user_id'], unique=True)

    if 'withdrawal_requests' not in existing_tables:
        op.create_table(
            'withdrawal_requests',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('amount', MONEY, nullable=False),
            sa.Column('fee', MONEY, nullable=False),
            sa.Column('net_amount', MONEY, nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('account_holder', sa.String(length=255), nullable=False),
            sa.Column('iban', sa.String(length=64), nullable=False),
            sa.Column('bank_name', sa.String(length=255), nullable=True),
            sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('stripe_payout_id', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('payout_confirmed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount > 0', name='ck_withdrawal_requests_amount_positive'),
            sa.CheckConstraint('fee >= 0', name='ck_withdrawal_requests_fee_non_negative')
        )
        op.create_index('ix_withdrawal_requests_id', 'withdrawal_requests', ['id'])
        op.create_index('ix_withdrawal_requests_user_id', 'withdrawal_requests', ['user_id'])
        op.create_index('ix_withdrawal_requests_stripe_payout_id', 'withdrawal_requests', ['stripe_payout_id'])
        op.create_index('ix_withdrawal_requests_user_created', 'withdrawal_requests', ['user_id', 'created_at'])
        op.create_index('ix_withdrawal_requests_status_created', 'withdrawal_requests', ['status', 'created_at'])

    if 'ledger_transactions' not in existing_tables:
        op.create_table(
            'ledger_transactions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('transaction_type', sa.String(length=32), nullable=False),
            sa.Column('amount', MONEY, nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
            sa.Column('external_ref', sa.String(length=255), nullable=True),
            sa.Column('user_id', sa.Integer(), nullable=True),
            sa.Column('wallet_id', sa.Integer(), nullable=True),
            sa.Column('case_id', sa.Integer(), nullable=True),
            sa.Column('withdrawal_request_id', sa.Integer(), nullable=True),
            sa.Column('transaction_metadata', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id'),
            sa.ForeignKeyConstraint(['wallet_id'], ['wallets.id'], ondelete='RESTRICT'),
            sa.ForeignKeyConstraint(['case_id'], ['cases.id'], ondelete='RESTRICT'),
            sa.ForeignKeyConstraint(['withdrawal_request_id'], ['withdrawal_requests.id'], ondelete='RESTRICT'),
            sa.UniqueConstraint('external_ref', name='uq_ledger_transactions_external_ref'),
            sa.CheckConstraint('amount > 0', name='ck_ledger_transactions_amount_positive')
        )
        op.create_index('ix_ledger_transactions_id', 'ledger_transactions', ['id'])
        op.create_index('ix_ledger_transactions_transaction_type', 'ledger_transactions', ['transaction_type'])
        op.create_index('ix_ledger_transactions_user_id', 'ledger_transactions', ['user_id'])
        op.create_index('ix_ledger_transactions_wallet_id', 'ledger_transactions', ['wallet_id'])
        op.create_index('ix_ledger_transactions_case_id', 'ledger_transactions', ['case_id'])
        op.create_index('ix_ledger_transactions_withdrawal_request_id', 'ledger_transactions', ['withdrawal_request_id'])
        op.create_index('ix_ledger_transactions_created_at', 'ledger_transactions', ['created_at'])
        op.create_index('ix_ledger_transactions_type_status', 'ledger_transactions', ['transaction_type', 'status'])
        op.create_index('ix_ledger_transactions_wallet_created', 'ledger_transactions', ['wallet_id', 'created_at'])

    if 'platform_revenue' not in existing_tables:
        op.create_table(
            'platform_revenue',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('amount', MONEY, nullable=False),
            sa.Column('transaction_type', sa.String(length=32), nullable=False),
            sa.Column('reference_id', sa.String(length=255), nullable=True),
            sa.Column('revenue_metadata', sa.JSON(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_platform_revenue_id', 'platform_revenue', ['id'])
        op.create_index('ix_platform_revenue_transaction_type', 'platform_revenue', ['transaction_type'])
        op.create_index('ix_platform_revenue_reference_id', 'platform_revenue', ['reference_id'])

    if 'webhook_failures' not in existing_tables:
        op.create_table(
            'webhook_failures',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('retry_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('last_attempt_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolved_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('resolved_by', sa.String(length=32), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_webhook_failures_id', 'webhook_failures', ['id'])
        op.create_index('ix_webhook_failures_stripe_event_id', 'webhook_failures', ['stripe_event_id'], unique=True)
        op.create_index('ix_webhook_failures_event_type', 'webhook_failures', ['event_type'])
        op.create_index('ix_webhook_failures_resolved_at', 'webhook_failures', ['resolved_at'])

    if 'internal_transfers' not in existing_tables:
        op.create_table(
            'internal_transfers',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('amount', MONEY, nullable=False),
            sa.Column('fee_count', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('from_transaction_id', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('to_transaction_id', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('status', sa.String(length=16), nullable=False),
            sa.Column('stripe_transfer_id', sa.String(length=255), nullable=True),
            sa.Column('failure_reason', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_internal_transfers_id', 'internal_transfers', ['id'])
        op.create_index('ix_internal_transfers_status', 'internal_transfers', ['status'])

    if 'account_reconciliations' not in existing_tables:
        op.create_table(
            'account_reconciliations',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('account_type', sa.String(length=32), nullable=False),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('expected_balance', MONEY, nullable=False),
            sa.Column('available_balance', MONEY, nullable=True),
            sa.Column('pending_balance', MONEY, nullable=True),
            sa.Column('difference', MONEY, nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_account_reconciliations_id', 'account_reconciliations', ['id'])
        op.create_index('ix_account_reconciliations_account_type', 'account_reconciliations', ['account_type'])


def downgrade() -> None:
    for table in (
        'account_reconciliations', 'internal_transfers', 'webhook_failures', 'platform_revenue',
        'ledger_transactions', 'withdrawal_requests', 'wallets', 'cases'
    ):
        op.drop_table(table)
