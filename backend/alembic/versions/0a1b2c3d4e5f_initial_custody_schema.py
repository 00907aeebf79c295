"""initial custody schema

Revision ID: 0a1b2c3d4e5f
Revises:
Create Date: 2026-10-18 09:00:00.000000

"""
from typing import Sequence, Union
from alembic import op
import sqlalchemy as sa

revision: str = '0a1b2c3d4e5f'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

AMOUNT = sa.Numeric(precision=36, scale=18)


def upgrade() -> None:
    op.create_table(
        'counters',
        sa.Column('id', sa.String(length=100), primary_key=True),
        sa.Column('value', sa.Integer(), nullable=False, server_default='0'),
    )

    op.create_table(
        'deposit_addresses',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('chain', sa.String(length=20), nullable=False),
        sa.Column('address', sa.String(length=128), nullable=False),
        sa.Column('derivation_index', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('last_scanned_block', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('chain', 'address', name='uq_deposit_address_chain_address'),
    )
    op.create_index('ix_deposit_addresses_user_id', 'deposit_addresses', ['user_id'])
    op.create_index('ix_deposit_addresses_chain_status', 'deposit_addresses', ['chain', 'status'])

    op.create_table(
        'deposits',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('chain', sa.String(length=20), nullable=False),
        sa.Column('asset', sa.String(length=20), nullable=False),
        sa.Column('tx_hash', sa.String(length=128), nullable=False),
        sa.Column('address', sa.String(length=128), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('confirmations', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('required_confirmations', sa.Integer(), nullable=False),
        sa.Column('block_number', sa.BigInteger(), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='DETECTED'),
        sa.Column('failure_reason', sa.String(length=500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('credited_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('chain', 'tx_hash', 'address', name='uq_deposit_chain_tx_address'),
    )
    op.create_index('ix_deposits_user_id', 'deposits', ['user_id'])
    op.create_index('ix_deposits_status', 'deposits', ['status'])

    op.create_table(
        'balances',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(length=20), nullable=False),
        sa.Column('available', AMOUNT, nullable=False, server_default='0'),
        sa.Column('locked', AMOUNT, nullable=False, server_default='0'),
        sa.Column('version', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('user_id', 'asset', name='uq_balance_user_asset'),
        sa.CheckConstraint('available >= 0', name='ck_balance_available_non_negative'),
        sa.CheckConstraint('locked >= 0', name='ck_balance_locked_non_negative'),
    )

    op.create_table(
        'ledger_entries',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('asset', sa.String(length=20), nullable=False),
        sa.Column('entry_type', sa.String(length=20), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('available_after', AMOUNT, nullable=False),
        sa.Column('locked_after', AMOUNT, nullable=False),
        sa.Column('reference_id', sa.String(length=100), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.UniqueConstraint('entry_type', 'reference_id', name='uq_ledger_entry_type_reference'),
    )
    op.create_index('ix_ledger_entries_user_id', 'ledger_entries', ['user_id'])

    op.create_table(
        'withdrawals',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('chain', sa.String(length=20), nullable=False),
        sa.Column('asset', sa.String(length=20), nullable=False),
        sa.Column('amount', AMOUNT, nullable=False),
        sa.Column('destination_address', sa.String(length=128), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('network_fee', AMOUNT, nullable=False),
        sa.Column('total_deducted', AMOUNT, nullable=False),
        sa.Column('tx_hash', sa.String(length=128), nullable=True),
        sa.Column('failure_reason', sa.String(length=500), nullable=True),
        sa.Column('requested_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
    )
    op.create_index('ix_withdrawals_user_id', 'withdrawals', ['user_id'])
    op.create_index('ix_withdrawals_status', 'withdrawals', ['status'])


def downgrade() -> None:
    op.drop_table('withdrawals')
    op.drop_table('ledger_entries')
    op.drop_table('balances')
    op.drop_table('deposits')
    op.drop_table('deposit_addresses')
    op.drop_table('counters')
