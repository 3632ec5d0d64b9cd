"""add refund and settlement columns to payments

Revision ID: b4e19f3a7d25
Revises: 7c2d41e9b0a1
Create Date: 2026-10-17 14:20:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'b4e19f3a7d25'
down_revision = '7c2d41e9b0a1'
branch_labels = None
depends_on = None


def upgrade():
    # --- New columns on payments: provider-side refunds and settlement ---
    op.add_column('payments', sa.Column('refunded_amount', sa.Numeric(precision=12, scale=2), server_default='0', nullable=False))
    op.add_column('payments', sa.Column('settlement_status', sa.String(length=20), nullable=True))


def downgrade():
    op.drop_column('payments', 'settlement_status')
    op.drop_column('payments', 'refunded_amount')
