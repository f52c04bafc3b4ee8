"""Initial schema: users, deposit addresses, deposits, credit history.

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '001_initial'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Users table
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('username', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('credits', sa.Numeric(20, 2), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_users_is_active', 'users', ['is_active'])

    # Deposit addresses table
    op.create_table(
        'deposit_addresses',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('address', sa.String(255), nullable=False),
        sa.Column('derivation_index', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False, server_default='active'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deposit_addresses_user_id', 'deposit_addresses', ['user_id'])
    op.create_index('ix_deposit_addresses_address', 'deposit_addresses', ['address'], unique=True)

    # Deposits table
    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('tx_hash', sa.String(255), nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(20), nullable=False),
        sa.Column('amount', sa.Numeric(36, 18), nullable=False),
        sa.Column('raw_amount', sa.String(80), nullable=False),
        sa.Column('usd_value', sa.Numeric(20, 2), nullable=False, server_default='0'),
        sa.Column('from_address', sa.String(255), nullable=True),
        sa.Column('to_address', sa.String(255), nullable=False),
        sa.Column('block_number', sa.Integer(), nullable=True),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('error', sa.Text(), nullable=True),
        sa.Column('sweep_tx_hash', sa.String(255), nullable=True),
        sa.Column('sweep_error', sa.Text(), nullable=True),
        sa.Column('detected_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('swept_at', sa.DateTime(timezone=True), nullable=True),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_deposits_tx_hash', 'deposits', ['tx_hash'], unique=True)
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])
    op.create_index('ix_deposits_status', 'deposits', ['status'])

    # Credit history table
    op.create_table(
        'credit_history',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('type', sa.String(30), nullable=False),
        sa.Column('amount', sa.Numeric(20, 2), nullable=False),
        sa.Column('reason', sa.Text(), nullable=True),
        sa.Column('reference', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id']),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_credit_history_reference', 'credit_history', ['reference'])
    op.create_index('ix_credit_history_user_created', 'credit_history', ['user_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_credit_history_user_created', 'credit_history')
    op.drop_index('ix_credit_history_reference', 'credit_history')
    op.drop_table('credit_history')

    op.drop_index('ix_deposits_status', 'deposits')
    op.drop_index('ix_deposits_user_id', 'deposits')
    op.drop_index('ix_deposits_tx_hash', 'deposits')
    op.drop_table('deposits')

    op.drop_index('ix_deposit_addresses_address', 'deposit_addresses')
    op.drop_index('ix_deposit_addresses_user_id', 'deposit_addresses')
    op.drop_table('deposit_addresses')

    op.drop_index('ix_users_is_active', 'users')
    op.drop_table('users')
