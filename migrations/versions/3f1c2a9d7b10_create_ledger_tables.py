"""create ledger, referral and milestone tables

Revision ID: 3f1c2a9d7b10
Revises:
Create Date: 2026-10-18 09:12:40.118204

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3f1c2a9d7b10'
down_revision = None
branch_labels = None
depends_on = None

MONEY = sa.Numeric(precision=18, scale=6)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    ]


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('username', sa.String(length=80), nullable=False, unique=True),
        sa.Column('email', sa.String(length=120), nullable=False, unique=True),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('role', sa.String(length=20), nullable=False, server_default='user'),
        sa.Column('referral_code', sa.String(length=20), nullable=True, unique=True),
        sa.Column('referred_by', sa.Integer(), sa.ForeignKey('users.id'), nullable=True),
        sa.Column('is_active', sa.Boolean(), server_default=sa.true()),
        sa.Column('is_verified', sa.Boolean(), server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_users_role', 'users', ['role'])
    op.create_index('idx_user_referral_code', 'users', ['referral_code'])

    op.create_table(
        'wallets',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False, unique=True),
        sa.Column('available', MONEY, nullable=False, server_default='0'),
        sa.Column('pending', MONEY, nullable=False, server_default='0'),
        sa.Column('deposit_address', sa.String(length=64), nullable=True, unique=True),
        sa.CheckConstraint('available >= 0', name='ck_wallet_available_non_negative'),
        *_timestamps(),
    )
    op.create_index('ix_wallets_user_id', 'wallets', ['user_id'])

    op.create_table(
        'transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', sa.String(length=32), nullable=False),
        sa.Column('amount', MONEY, nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='pending'),
        sa.Column('details', sa.Text(), nullable=True),
        sa.Column('tx_hash', sa.String(length=128), nullable=True),
        sa.Column('notes', sa.Text(), nullable=True),
        sa.Column('idempotency_key', sa.String(length=120), nullable=True, unique=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_transactions_user_id', 'transactions', ['user_id'])
    op.create_index('ix_transactions_type', 'transactions', ['type'])
    op.create_index('ix_transactions_status', 'transactions', ['status'])
    op.create_index('ix_transactions_tx_hash', 'transactions', ['tx_hash'])
    op.create_index('idx_transaction_user_type_status', 'transactions', ['user_id', 'type', 'status'])
    op.create_index('idx_transaction_created', 'transactions', ['created_at'])

    op.create_table(
        'referral_edges',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('referrer_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('referred_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('commission_earned', MONEY, nullable=False, server_default='0'),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.UniqueConstraint('referrer_id', 'referred_id', name='uq_referral_edge_pair'),
        sa.CheckConstraint('level BETWEEN 1 AND 3', name='ck_referral_edge_level'),
        *_timestamps(),
    )
    op.create_index('ix_referral_edges_referrer_id', 'referral_edges', ['referrer_id'])
    op.create_index('ix_referral_edges_referred_id', 'referral_edges', ['referred_id'])

    op.create_table(
        'milestones',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('level', sa.Integer(), nullable=False),
        sa.Column('target', sa.Integer(), nullable=False),
        sa.Column('reward', MONEY, nullable=False),
        sa.Column('claimed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('claimed_at', sa.DateTime(timezone=True), nullable=True),
        sa.UniqueConstraint('user_id', 'level', name='uq_milestone_user_level'),
        *_timestamps(),
    )
    op.create_index('ix_milestones_user_id', 'milestones', ['user_id'])

    op.create_table(
        'processed_chain_transactions',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('tx_hash', sa.String(length=128), nullable=False, unique=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('transaction_id', sa.Integer(), sa.ForeignKey('transactions.id'), nullable=True),
        *_timestamps(),
    )
    op.create_index('ix_processed_chain_transactions_user_id', 'processed_chain_transactions', ['user_id'])

    op.create_table(
        'notifications',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('title', sa.String(length=200), nullable=False),
        sa.Column('message', sa.Text(), nullable=False),
        sa.Column('type', sa.String(length=16), nullable=False, server_default='info'),
        sa.Column('is_read', sa.Boolean(), nullable=False, server_default=sa.false()),
        *_timestamps(),
    )
    op.create_index('ix_notifications_user_id', 'notifications', ['user_id'])


def downgrade():
    op.drop_table('notifications')
    op.drop_table('processed_chain_transactions')
    op.drop_table('milestones')
    op.drop_table('referral_edges')
    op.drop_table('transactions')
    op.drop_table('wallets')
    op.drop_table('users')
