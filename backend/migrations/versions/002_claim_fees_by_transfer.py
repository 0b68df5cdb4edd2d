"""Claim fee rows by settlement transfer instead of an id watermark

Revision ID: 002
Revises: 001
Create Date: 2026-10-19 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '002'
down_revision: Union[str, None] = '001'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _columns(conn, table: str) -> set:
    return {c['name'] for c in inspect(conn).get_columns(table)}


def upgrade() -> None:
    conn = op.get_bind()

    # Columns may already exist if Base.metadata.create_all ran first
    if 'internal_transfer_id' not in _columns(conn, 'ledger_transactions'):
        with op.batch_alter_table('ledger_transactions') as batch_op:
            batch_op.add_column(sa.Column('internal_transfer_id', sa.Integer(), nullable=True))
            batch_op.create_foreign_key(
                'fk_ledger_transactions_internal_transfer_id', 'internal_transfers',
                ['internal_transfer_id'], ['id'], ondelete='RESTRICT'
            )
            batch_op.create_index('ix_ledger_transactions_internal_transfer_id', ['internal_transfer_id'])

    transfer_columns = _columns(conn, 'internal_transfers')
    if 'to_transaction_id' in transfer_columns:
        # Fees inside a completed watermark range already reached the revenue account
        conn.execute(sa.text("""
            UPDATE ledger_transactions
            SET internal_transfer_id = (
                SELECT t.id FROM internal_transfers t
                WHERE t.status = 'completed'
                  AND ledger_transactions.id > t.from_transaction_id
                  AND ledger_transactions.id <= t.to_transaction_id
            )
            WHERE transaction_type IN ('platform_fee', 'withdrawal_fee')
              AND status = 'completed'
              AND internal_transfer_id IS NULL
        """))

    with op.batch_alter_table('internal_transfers') as batch_op:
        if 'attempts' not in transfer_columns:
            batch_op.add_column(sa.Column('attempts', sa.Integer(), nullable=False, server_default='0'))
        if 'completed_at' not in transfer_columns:
            batch_op.add_column(sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True))
        if 'from_transaction_id' in transfer_columns:
            batch_op.drop_column('from_transaction_id')
        if 'to_transaction_id' in transfer_columns:
            batch_op.drop_column('to_transaction_id')


def downgrade() -> None:
    with op.batch_alter_table('ledger_transactions') as batch_op:
        batch_op.drop_index('ix_ledger_transactions_internal_transfer_id')
        batch_op.drop_constraint('fk_ledger_transactions_internal_transfer_id', type_='foreignkey')
        batch_op.drop_column('internal_transfer_id')

    with op.batch_alter_table('internal_transfers') as batch_op:
        batch_op.drop_column('completed_at')
        batch_op.drop_column('attempts')
        batch_op.add_column(sa.Column('from_transaction_id', sa.Integer(), nullable=False, server_default='0'))
        batch_op.add_column(sa.Column('to_transaction_id', sa.Integer(), nullable=False, server_default='0'))
