"""pending refunds

Revision ID: 2026_10_20_0000
Revises: 2026_10_19_0000
Create Date: 2026-10-20 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_20_0000'
down_revision: Union[str, None] = '2026_10_19_0000'
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create pending_refunds table."""

    # ========================================================================
    # Debits still owed back after a failed chat request
    # ========================================================================
    op.create_table(
        'pending_refunds',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(100), nullable=False),
        sa.Column('amount', sa.BigInteger(), nullable=False),
        sa.Column('conversation_id', sa.String(64), nullable=True),
        sa.Column('last_error', sa.String(500), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('amount > 0', name='ck_pending_refund_amount_positive'),
    )
    op.create_index('idx_pending_refunds_created_at', 'pending_refunds', ['created_at'])


def downgrade() -> None:
    """Drop pending_refunds table."""
    op.drop_index('idx_pending_refunds_created_at', table_name='pending_refunds')
    op.drop_table('pending_refunds')
