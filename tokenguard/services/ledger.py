"""
Ledger Service - Compare-and-swap balance mutations.

NO DICTIONARIES - Every committed mutation is returned as a BalanceChange.

Each mutation reads the current balance, computes the new value and writes it
with `set_balance(..., expected_previous=current)`. A lost race re-reads and
retries up to a bounded number of attempts, so the affordability check of a
debit is always made against the value it replaces.
"""

import asyncio
import random

from structlog import get_logger

from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore
from tokenguard.exceptions import InsufficientTokensError, LedgerConflictError
from tokenguard.models.domain import BalanceChange, ModelCostEntry
from tokenguard.observability.metrics import metrics

logger = get_logger(__name__)


class LedgerService:
    """Balance reads and CAS mutations on top of a LedgerStore."""

    def __init__(
        self,
        store: LedgerStore,
        max_attempts: int | None = None,
        refund_max_attempts: int | None = None,
        backoff_seconds: float = 0.01,
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts or settings.ledger_max_attempts
        self.refund_max_attempts = refund_max_attempts or settings.refund_max_attempts
        self.backoff_seconds = backoff_seconds

    async def balance(self, user_id: str, entry: ModelCostEntry) -> int:
        """Read a balance, creating the row with the model's starting grant if absent."""
        current = await self.store.get_balance(user_id, entry.model_id)
        if current is None:
            current = await self.store.create_balance(
                user_id, entry.model_id, entry.starting_grant
            )
        return current

    async def debit(self, user_id: str, entry: ModelCostEntry) -> BalanceChange:
        """
        Charge one message.

        Raises:
            InsufficientTokensError: Balance below cost on the attempt that would commit
            LedgerConflictError: Retries exhausted
        """
        return await self._apply(user_id, entry, -entry.token_cost, "debit", self.max_attempts)

    async def refund(self, user_id: str, entry: ModelCostEntry, amount: int) -> BalanceChange:
        """Return a debit. Uses the larger retry budget."""
        return await self._apply(user_id, entry, amount, "refund", self.refund_max_attempts)

    async def credit(self, user_id: str, entry: ModelCostEntry, amount: int) -> BalanceChange:
        """Add tokens (ad rewards)."""
        return await self._apply(user_id, entry, amount, "credit", self.max_attempts)

    async def _apply(
        self,
        user_id: str,
        entry: ModelCostEntry,
        delta: int,
        operation: str,
        max_attempts: int,
    ) -> BalanceChange:
        for attempt in range(1, max_attempts + 1):
            current = await self.balance(user_id, entry)
            new_value = current + delta
            if new_value < 0:
                raise InsufficientTokensError(current, -delta, entry.model_id)

            if await self.store.set_balance(user_id, entry.model_id, new_value, current):
                metrics.record_ledger_mutation(operation, entry.model_id, abs(delta))
                logger.info(
                    "balance_updated",
                    operation=operation,
                    user_id=user_id,
                    model_id=entry.model_id,
                    balance_before=current,
                    balance_after=new_value,
                    attempts=attempt,
                )
                return BalanceChange(
                    user_id=user_id,
                    model_id=entry.model_id,
                    balance_before=current,
                    balance_after=new_value,
                    attempts=attempt,
                )

            metrics.record_cas_conflict(operation)
            logger.debug(
                "balance_cas_conflict",
                operation=operation,
                user_id=user_id,
                model_id=entry.model_id,
                attempt=attempt,
            )
            if attempt < max_attempts:
                await asyncio.sleep(random.uniform(0, self.backoff_seconds * attempt))

        logger.warning(
            "balance_cas_exhausted",
            operation=operation,
            user_id=user_id,
            model_id=entry.model_id,
            attempts=max_attempts,
        )
        raise LedgerConflictError(user_id, entry.model_id, max_attempts)
