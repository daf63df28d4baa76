"""
In-memory ledger store for local development (LEDGER_BACKEND=memory).

Every operation completes without yielding to the event loop, so each call is
atomic with respect to other asyncio tasks in the same process. State is lost
on restart, and only the most recent usage rows are kept. Not for production.
"""

from collections import deque
from dataclasses import replace
from datetime import datetime
from uuid import UUID

from tokenguard.models.domain import AdViewRecord, PendingRefund, SubscriptionState, UsageRecord

MAX_USAGE_RECORDS = 10_000


class InMemoryLedgerStore:
    """Process-local implementation of the LedgerStore protocol."""

    def __init__(self, max_usage_records: int = MAX_USAGE_RECORDS) -> None:
        self._balances: dict[tuple[str, str], int] = {}
        self._subscriptions: dict[str, SubscriptionState] = {}
        self._ad_views: dict[str, AdViewRecord] = {}
        self._usage: deque[UsageRecord] = deque(maxlen=max_usage_records)
        self._pending_refunds: dict[UUID, PendingRefund] = {}

    def set_subscription(self, user_id: str, subscription: SubscriptionState) -> None:
        """Seed subscription state (the auth service owns it in production)."""
        self._subscriptions[user_id] = subscription

    async def get_balance(self, user_id: str, model_id: str) -> int | None:
        return self._balances.get((user_id, model_id))

    async def create_balance(self, user_id: str, model_id: str, initial: int) -> int:
        return self._balances.setdefault((user_id, model_id), initial)

    async def set_balance(
        self, user_id: str, model_id: str, new_value: int, expected_previous: int
    ) -> bool:
        if new_value < 0:
            raise ValueError(f"Balance cannot be negative: {new_value}")
        key = (user_id, model_id)
        if self._balances.get(key) != expected_previous:
            return False
        self._balances[key] = new_value
        return True

    async def list_balances(self, user_id: str) -> dict[str, int]:
        return {model: value for (user, model), value in self._balances.items() if user == user_id}

    async def get_subscription(self, user_id: str) -> SubscriptionState:
        return self._subscriptions.get(user_id, SubscriptionState())

    async def find_ad_view(self, idempotency_key: str, since: datetime) -> AdViewRecord | None:
        record = self._ad_views.get(idempotency_key)
        if record is None or record.created_at < since:
            return None
        return record

    async def add_ad_view(self, record: AdViewRecord) -> bool:
        if record.idempotency_key in self._ad_views:
            return False
        self._ad_views[record.idempotency_key] = record
        return True

    async def confirm_ad_view(self, idempotency_key: str, balance_after: int) -> None:
        record = self._ad_views.get(idempotency_key)
        if record is not None:
            self._ad_views[idempotency_key] = replace(record, balance_after=balance_after)

    async def remove_ad_view(self, idempotency_key: str) -> None:
        self._ad_views.pop(idempotency_key, None)

    async def count_ad_views_since(self, user_id: str, since: datetime) -> int:
        return sum(
            1
            for record in self._ad_views.values()
            if record.user_id == user_id and record.created_at >= since
        )

    async def prune_ad_views(self, before: datetime) -> int:
        expired = [key for key, record in self._ad_views.items() if record.created_at < before]
        for key in expired:
            del self._ad_views[key]
        return len(expired)

    async def list_ad_views(self, user_id: str, limit: int) -> list[AdViewRecord]:
        records = [r for r in self._ad_views.values() if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def record_usage(self, record: UsageRecord) -> None:
        self._usage.append(record)

    async def list_usage(self, user_id: str, limit: int) -> list[UsageRecord]:
        records = [r for r in self._usage if r.user_id == user_id]
        records.sort(key=lambda r: r.created_at, reverse=True)
        return records[:limit]

    async def add_pending_refund(self, refund: PendingRefund) -> None:
        self._pending_refunds[refund.refund_id] = refund

    async def list_pending_refunds(self, limit: int) -> list[PendingRefund]:
        refunds = sorted(self._pending_refunds.values(), key=lambda r: r.created_at)
        return refunds[:limit]

    async def settle_pending_refund(self, refund_id: UUID) -> int | None:
        refund = self._pending_refunds.pop(refund_id, None)
        if refund is None:
            return None
        key = (refund.user_id, refund.model_id)
        self._balances[key] = self._balances.get(key, 0) + refund.amount
        return self._balances[key]
