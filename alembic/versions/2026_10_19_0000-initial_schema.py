"""initial schema

Revision ID: 2026_10_19_0000
Revises:
Create Date: 2026-10-19 08:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import UUID


# revision identifiers, used by Alembic.
revision: str = '2026_10_19_0000'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    """Create ledger schema."""

    # ========================================================================
    # Create users table (subscription columns read by the guard)
    # ========================================================================
    op.create_table(
        'users',
        sa.Column('id', sa.String(64), primary_key=True),
        sa.Column('email', sa.String(254), nullable=True),
        sa.Column('is_paid_user', sa.Boolean(), nullable=False, server_default=sa.text('false')),
        sa.Column('paid_until', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
    )

    # ========================================================================
    # Create token_balances table
    # ========================================================================
    op.create_table(
        'token_balances',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(100), nullable=False),
        sa.Column('balance', sa.BigInteger(), nullable=False, server_default='0'),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('balance >= 0', name='ck_token_balance_non_negative'),
        sa.UniqueConstraint('user_id', 'model_id', name='uq_token_balance_user_model'),
    )
    op.create_index('idx_token_balances_user_id', 'token_balances', ['user_id'])

    # ========================================================================
    # Create ad_view_events table
    # ========================================================================
    op.create_table(
        'ad_view_events',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(100), nullable=False),
        sa.Column('tokens_granted', sa.BigInteger(), nullable=False),
        sa.Column('idempotency_key', sa.String(255), nullable=False),
        sa.Column('balance_after', sa.BigInteger(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_granted > 0', name='ck_ad_view_tokens_positive'),
        sa.UniqueConstraint('idempotency_key', name='uq_ad_view_idempotency_key'),
    )
    op.create_index('idx_ad_view_events_user_created', 'ad_view_events', ['user_id', 'created_at'])
    op.create_index('idx_ad_view_events_created_at', 'ad_view_events', ['created_at'])

    # ========================================================================
    # Create token_usage table
    # ========================================================================
    op.create_table(
        'token_usage',
        sa.Column('id', UUID(as_uuid=True), primary_key=True, server_default=sa.text('gen_random_uuid()')),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('model_id', sa.String(100), nullable=False),
        sa.Column('conversation_id', sa.String(64), nullable=True),
        sa.Column('tokens_used', sa.BigInteger(), nullable=False),
        sa.Column('status', sa.String(20), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.text('NOW()')),

        # Constraints
        sa.CheckConstraint('tokens_used >= 0', name='ck_token_usage_non_negative'),
        sa.CheckConstraint("status IN ('completed', 'refunded')", name='ck_token_usage_status'),
    )
    op.create_index('idx_token_usage_user_created', 'token_usage', ['user_id', 'created_at'])
    op.create_index('idx_token_usage_model_id', 'token_usage', ['model_id'])


def downgrade() -> None:
    """Drop all tables."""
    op.drop_table('token_usage')
    op.drop_table('ad_view_events')
    op.drop_table('token_balances')
    op.drop_table('users')
