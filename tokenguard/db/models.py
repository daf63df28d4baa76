"""
Database Models - SQLAlchemy ORM models with strict typing.

NO DICTIONARIES - All columns use Mapped[] type annotations.
"""

from datetime import UTC, datetime
from uuid import UUID, uuid4

from sqlalchemy import (
    BigInteger,
    Boolean,
    CheckConstraint,
    DateTime,
    Index,
    String,
    UniqueConstraint,
)
from sqlalchemy import Enum as SQLEnum
from sqlalchemy.dialects.postgresql import UUID as PG_UUID
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from tokenguard.models.api import UsageStatus


class Base(DeclarativeBase):
    """Base class for all ORM models."""

    pass


def utc_now() -> datetime:
    """Get current UTC timestamp."""
    return datetime.now(UTC)


class User(Base):
    """
    ORM model for users table.

    Owned by the auth service. The guard only reads the subscription columns.
    """

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str | None] = mapped_column(String(254), nullable=True)

    # Subscription
    is_paid_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    paid_until: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return f"<User(id={self.id}, is_paid_user={self.is_paid_user})>"


class TokenBalance(Base):
    """
    ORM model for token_balances table.

    One row per (user, model). Rows are created lazily and never deleted.
    """

    __tablename__ = "token_balances"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now, onupdate=utc_now
    )

    __table_args__ = (
        CheckConstraint("balance >= 0", name="ck_token_balance_non_negative"),
        UniqueConstraint("user_id", "model_id", name="uq_token_balance_user_model"),
        Index("idx_token_balances_user_id", "user_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenBalance(user_id={self.user_id}, model_id={self.model_id}, "
            f"balance={self.balance})>"
        )


class AdViewEvent(Base):
    """
    ORM model for ad_view_events table.

    Deduplication store for rewarded ad completions. Rows older than the
    idempotency TTL are pruned.
    """

    __tablename__ = "ad_view_events"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    tokens_granted: Mapped[int] = mapped_column(BigInteger, nullable=False)
    idempotency_key: Mapped[str] = mapped_column(String(255), nullable=False)
    balance_after: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_granted > 0", name="ck_ad_view_tokens_positive"),
        UniqueConstraint("idempotency_key", name="uq_ad_view_idempotency_key"),
        Index("idx_ad_view_events_user_created", "user_id", "created_at"),
        Index("idx_ad_view_events_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<AdViewEvent(user_id={self.user_id}, model_id={self.model_id}, "
            f"tokens_granted={self.tokens_granted})>"
        )


class TokenUsage(Base):
    """
    ORM model for token_usage table.

    Append-only audit of metered chat requests, including refunded ones.
    """

    __tablename__ = "token_usage"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    tokens_used: Mapped[int] = mapped_column(BigInteger, nullable=False)
    status: Mapped[UsageStatus] = mapped_column(
        SQLEnum(
            UsageStatus,
            name="usage_status",
            native_enum=False,
            length=20,
            values_callable=lambda x: [e.value for e in x],
        ),
        nullable=False,
    )

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("tokens_used >= 0", name="ck_token_usage_non_negative"),
        Index("idx_token_usage_user_created", "user_id", "created_at"),
        Index("idx_token_usage_model_id", "model_id"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<TokenUsage(user_id={self.user_id}, model_id={self.model_id}, "
            f"tokens_used={self.tokens_used}, status={self.status})>"
        )


class PendingRefundRow(Base):
    """
    ORM model for pending_refunds table.

    A row exists while a debit for a failed chat request is still owed back to
    the user. Settling the row credits the balance and deletes it in one
    transaction.
    """

    __tablename__ = "pending_refunds"

    id: Mapped[UUID] = mapped_column(PG_UUID(as_uuid=True), primary_key=True, default=uuid4)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    model_id: Mapped[str] = mapped_column(String(100), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    conversation_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    last_error: Mapped[str | None] = mapped_column(String(500), nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utc_now
    )

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_pending_refund_amount_positive"),
        Index("idx_pending_refunds_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        """String representation for debugging."""
        return (
            f"<PendingRefundRow(user_id={self.user_id}, model_id={self.model_id}, "
            f"amount={self.amount})>"
        )
