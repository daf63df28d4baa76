"""
Ledger Store - Durable per-(user, model) token balances.

NO DICTIONARIES - All rows cross this boundary as typed domain models.

Balance mutations are compare-and-swap: `set_balance` only succeeds when the
stored value still equals `expected_previous`. Every operation runs in its own
short transaction so callers never hold a session across provider calls.
"""

from collections.abc import Callable
from contextlib import AbstractAsyncContextManager
from datetime import datetime
from typing import Protocol
from uuid import UUID

from sqlalchemy import delete, func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from structlog import get_logger

from tokenguard.db.models import (
    AdViewEvent,
    PendingRefundRow,
    TokenBalance,
    TokenUsage,
    User,
    utc_now,
)
from tokenguard.db.session import ledger_session
from tokenguard.exceptions import WriteVerificationError
from tokenguard.models.domain import (
    AdViewRecord,
    PendingRefund,
    SubscriptionState,
    UsageRecord,
)

logger = get_logger(__name__)

SessionScope = Callable[[], AbstractAsyncContextManager[AsyncSession]]


class LedgerStore(Protocol):
    """
    Persistence contract the guard needs.

    Any backend (PostgreSQL, in-memory) must implement this interface.
    """

    async def get_balance(self, user_id: str, model_id: str) -> int | None:
        """Current balance, or None when no row exists yet."""
        ...

    async def create_balance(self, user_id: str, model_id: str, initial: int) -> int:
        """Insert a row if absent and return the stored balance."""
        ...

    async def set_balance(
        self, user_id: str, model_id: str, new_value: int, expected_previous: int
    ) -> bool:
        """Compare-and-swap. Returns False when another writer got there first."""
        ...

    async def list_balances(self, user_id: str) -> dict[str, int]:
        """All stored balances for a user keyed by model."""
        ...

    async def get_subscription(self, user_id: str) -> SubscriptionState:
        """Subscription fields of the user (free tier when unknown)."""
        ...

    async def find_ad_view(self, idempotency_key: str, since: datetime) -> AdViewRecord | None:
        """Ad view recorded with this key at or after `since`."""
        ...

    async def add_ad_view(self, record: AdViewRecord) -> bool:
        """Insert an ad view. Returns False if the key already exists."""
        ...

    async def confirm_ad_view(self, idempotency_key: str, balance_after: int) -> None:
        """Attach the credited balance to a recorded ad view."""
        ...

    async def remove_ad_view(self, idempotency_key: str) -> None:
        """Delete a tentative ad view whose credit failed."""
        ...

    async def count_ad_views_since(self, user_id: str, since: datetime) -> int:
        """Number of ad views a user recorded at or after `since`."""
        ...

    async def prune_ad_views(self, before: datetime) -> int:
        """Delete ad views older than `before`. Returns the count removed."""
        ...

    async def list_ad_views(self, user_id: str, limit: int) -> list[AdViewRecord]:
        """Most recent ad views first."""
        ...

    async def record_usage(self, record: UsageRecord) -> None:
        """Append a token usage row."""
        ...

    async def list_usage(self, user_id: str, limit: int) -> list[UsageRecord]:
        """Most recent usage rows first."""
        ...

    async def add_pending_refund(self, refund: PendingRefund) -> None:
        """Persist a refund that still has to be credited."""
        ...

    async def list_pending_refunds(self, limit: int) -> list[PendingRefund]:
        """Oldest pending refunds first."""
        ...

    async def settle_pending_refund(self, refund_id: UUID) -> int | None:
        """
        Credit a pending refund and delete it in one transaction.

        Returns the balance after the credit, or None when another worker
        already settled it.
        """
        ...


class SqlLedgerStore:
    """PostgreSQL-backed ledger store."""

    def __init__(self, session_scope: SessionScope = ledger_session) -> None:
        """Initialize with a factory of short-lived sessions."""
        self._session_scope = session_scope

    # ========================================================================
    # Balances
    # ========================================================================

    async def get_balance(self, user_id: str, model_id: str) -> int | None:
        async with self._session_scope() as session:
            return await self._select_balance(session, user_id, model_id)

    async def create_balance(self, user_id: str, model_id: str, initial: int) -> int:
        async with self._session_scope() as session:
            session.add(TokenBalance(user_id=user_id, model_id=model_id, balance=initial))
            try:
                await session.flush()
                await session.commit()
            except IntegrityError:
                # Race condition - row created by another request
                await session.rollback()
                existing = await self._select_balance(session, user_id, model_id)
                if existing is None:
                    raise WriteVerificationError(
                        f"Balance {user_id}/{model_id} missing after concurrent insert"
                    )
                return existing

            logger.info(
                "token_balance_created",
                user_id=user_id,
                model_id=model_id,
                balance=initial,
            )
            return initial

    async def set_balance(
        self, user_id: str, model_id: str, new_value: int, expected_previous: int
    ) -> bool:
        if new_value < 0:
            raise ValueError(f"Balance cannot be negative: {new_value}")

        stmt = (
            update(TokenBalance)
            .where(
                TokenBalance.user_id == user_id,
                TokenBalance.model_id == model_id,
                TokenBalance.balance == expected_previous,
            )
            .values(balance=new_value, updated_at=utc_now())
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            await session.commit()
            return result.rowcount == 1

    async def list_balances(self, user_id: str) -> dict[str, int]:
        stmt = select(TokenBalance.model_id, TokenBalance.balance).where(
            TokenBalance.user_id == user_id
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            return {model_id: balance for model_id, balance in result.all()}

    async def get_subscription(self, user_id: str) -> SubscriptionState:
        async with self._session_scope() as session:
            user = await session.get(User, user_id)
            if user is None:
                return SubscriptionState()
            return SubscriptionState(is_paid_user=user.is_paid_user, paid_until=user.paid_until)

    # ========================================================================
    # Ad views
    # ========================================================================

    async def find_ad_view(self, idempotency_key: str, since: datetime) -> AdViewRecord | None:
        stmt = select(AdViewEvent).where(
            AdViewEvent.idempotency_key == idempotency_key,
            AdViewEvent.created_at >= since,
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            event = result.scalar_one_or_none()
            return self._ad_view_to_domain(event) if event is not None else None

    async def add_ad_view(self, record: AdViewRecord) -> bool:
        async with self._session_scope() as session:
            session.add(
                AdViewEvent(
                    user_id=record.user_id,
                    model_id=record.model_id,
                    tokens_granted=record.tokens_granted,
                    idempotency_key=record.idempotency_key,
                    balance_after=record.balance_after,
                    created_at=record.created_at,
                )
            )
            try:
                await session.flush()
                await session.commit()
            except IntegrityError:
                await session.rollback()
                return False
            return True

    async def confirm_ad_view(self, idempotency_key: str, balance_after: int) -> None:
        stmt = (
            update(AdViewEvent)
            .where(AdViewEvent.idempotency_key == idempotency_key)
            .values(balance_after=balance_after)
        )
        async with self._session_scope() as session:
            await session.execute(stmt)
            await session.commit()

    async def remove_ad_view(self, idempotency_key: str) -> None:
        stmt = delete(AdViewEvent).where(AdViewEvent.idempotency_key == idempotency_key)
        async with self._session_scope() as session:
            await session.execute(stmt)
            await session.commit()

    async def count_ad_views_since(self, user_id: str, since: datetime) -> int:
        stmt = select(func.count(AdViewEvent.id)).where(
            AdViewEvent.user_id == user_id,
            AdViewEvent.created_at >= since,
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            return int(result.scalar_one())

    async def prune_ad_views(self, before: datetime) -> int:
        stmt = delete(AdViewEvent).where(AdViewEvent.created_at < before)
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            await session.commit()
            return int(result.rowcount or 0)

    async def list_ad_views(self, user_id: str, limit: int) -> list[AdViewRecord]:
        stmt = (
            select(AdViewEvent)
            .where(AdViewEvent.user_id == user_id)
            .order_by(AdViewEvent.created_at.desc())
            .limit(limit)
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            return [self._ad_view_to_domain(event) for event in result.scalars().all()]

    # ========================================================================
    # Usage
    # ========================================================================

    async def record_usage(self, record: UsageRecord) -> None:
        async with self._session_scope() as session:
            session.add(
                TokenUsage(
                    user_id=record.user_id,
                    model_id=record.model_id,
                    conversation_id=record.conversation_id,
                    tokens_used=record.tokens_used,
                    status=record.status,
                    created_at=record.created_at,
                )
            )
            await session.commit()

    async def list_usage(self, user_id: str, limit: int) -> list[UsageRecord]:
        stmt = (
            select(TokenUsage)
            .where(TokenUsage.user_id == user_id)
            .order_by(TokenUsage.created_at.desc())
            .limit(limit)
        )
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            return [
                UsageRecord(
                    user_id=row.user_id,
                    model_id=row.model_id,
                    tokens_used=row.tokens_used,
                    status=row.status,
                    created_at=row.created_at,
                    conversation_id=row.conversation_id,
                )
                for row in result.scalars().all()
            ]

    # ========================================================================
    # Pending refunds
    # ========================================================================

    async def add_pending_refund(self, refund: PendingRefund) -> None:
        async with self._session_scope() as session:
            session.add(
                PendingRefundRow(
                    id=refund.refund_id,
                    user_id=refund.user_id,
                    model_id=refund.model_id,
                    amount=refund.amount,
                    conversation_id=refund.conversation_id,
                    last_error=refund.last_error[:500] if refund.last_error else None,
                    created_at=refund.created_at,
                )
            )
            await session.commit()

    async def list_pending_refunds(self, limit: int) -> list[PendingRefund]:
        stmt = select(PendingRefundRow).order_by(PendingRefundRow.created_at).limit(limit)
        async with self._session_scope() as session:
            result = await session.execute(stmt)
            return [
                PendingRefund(
                    refund_id=row.id,
                    user_id=row.user_id,
                    model_id=row.model_id,
                    amount=row.amount,
                    created_at=row.created_at,
                    conversation_id=row.conversation_id,
                    last_error=row.last_error,
                )
                for row in result.scalars().all()
            ]

    async def settle_pending_refund(self, refund_id: UUID) -> int | None:
        async with self._session_scope() as session:
            # Rows locked by a concurrent sweep are skipped
            locked = await session.execute(
                select(PendingRefundRow)
                .where(PendingRefundRow.id == refund_id)
                .with_for_update(skip_locked=True)
            )
            row = locked.scalar_one_or_none()
            if row is None:
                return None

            credited = await session.execute(
                update(TokenBalance)
                .where(
                    TokenBalance.user_id == row.user_id,
                    TokenBalance.model_id == row.model_id,
                )
                .values(balance=TokenBalance.balance + row.amount, updated_at=utc_now())
                .returning(TokenBalance.balance)
            )
            balance_after = credited.scalar_one_or_none()
            if balance_after is None:
                session.add(
                    TokenBalance(user_id=row.user_id, model_id=row.model_id, balance=row.amount)
                )
                balance_after = row.amount

            await session.delete(row)
            await session.commit()
            return int(balance_after)

    # ========================================================================
    # Private Helper Methods
    # ========================================================================

    async def _select_balance(
        self, session: AsyncSession, user_id: str, model_id: str
    ) -> int | None:
        stmt = select(TokenBalance.balance).where(
            TokenBalance.user_id == user_id,
            TokenBalance.model_id == model_id,
        )
        result = await session.execute(stmt)
        return result.scalar_one_or_none()

    @staticmethod
    def _ad_view_to_domain(event: AdViewEvent) -> AdViewRecord:
        """Convert ORM ad view to domain model."""
        return AdViewRecord(
            user_id=event.user_id,
            model_id=event.model_id,
            tokens_granted=event.tokens_granted,
            idempotency_key=event.idempotency_key,
            created_at=event.created_at,
            balance_after=event.balance_after,
        )
