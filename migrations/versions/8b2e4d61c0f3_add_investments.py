"""add investments table

Revision ID: 8b2e4d61c0f3
Revises: 3f1c2a9d7b10
Create Date: 2026-10-18 14:03:27.551930

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '8b2e4d61c0f3'
down_revision = '3f1c2a9d7b10'
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'investments',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('plan_id', sa.String(length=20), nullable=False),
        sa.Column('amount', sa.Numeric(precision=18, scale=6), nullable=False),
        sa.Column('daily_roi', sa.Numeric(precision=8, scale=4), nullable=False),
        sa.Column('total_return', sa.Numeric(precision=8, scale=4), nullable=False),
        sa.Column('duration_days', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='active'),
        sa.Column('start_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('end_date', sa.DateTime(timezone=True), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
        sa.CheckConstraint('amount > 0', name='ck_investment_amount_positive'),
    )
    op.create_index('ix_investments_user_id', 'investments', ['user_id'])
    op.create_index('ix_investments_status', 'investments', ['status'])


def downgrade():
    op.drop_index('ix_investments_status', table_name='investments')
    op.drop_index('ix_investments_user_id', table_name='investments')
    op.drop_table('investments')
