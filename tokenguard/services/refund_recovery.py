"""
Refund Recovery - Settle debits the usage guard could not refund in-request.

When a failed chat request cannot commit its refund (CAS retries exhausted or a
store error), the owed amount is written to pending_refunds. A sweep credits
each pending refund and deletes its row in one store transaction, so a refund
is applied exactly once however many sweeps see it.

Sweeps run at startup, every REFUND_RECOVERY_INTERVAL_SECONDS, and once more at
shutdown after in-flight chat requests have settled.
"""

import asyncio
from uuid import uuid4

from structlog import get_logger

from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore
from tokenguard.db.models import utc_now
from tokenguard.models.api import UsageStatus
from tokenguard.models.domain import PendingRefund, UsageRecord
from tokenguard.observability.metrics import metrics

logger = get_logger(__name__)


class RefundRecovery:
    """Durable queue of owed refunds plus the sweep that pays them back."""

    def __init__(
        self,
        store: LedgerStore,
        interval_seconds: float | None = None,
        batch_size: int = 100,
    ) -> None:
        self.store = store
        self.interval_seconds = interval_seconds or settings.refund_recovery_interval_seconds
        self.batch_size = batch_size
        # Refunds the store refused to persist; retried on every sweep
        self._unsaved: list[PendingRefund] = []

    @property
    def unsaved(self) -> list[PendingRefund]:
        return list(self._unsaved)

    async def defer(
        self,
        user_id: str,
        model_id: str,
        amount: int,
        conversation_id: str | None,
        error: BaseException,
    ) -> PendingRefund:
        """Record a refund that must still be credited."""
        refund = PendingRefund(
            refund_id=uuid4(),
            user_id=user_id,
            model_id=model_id,
            amount=amount,
            created_at=utc_now(),
            conversation_id=conversation_id,
            last_error=f"{type(error).__name__}: {error}",
        )
        metrics.record_pending_refund(model_id, "queued")

        try:
            await self.store.add_pending_refund(refund)
        except Exception:
            self._unsaved.append(refund)
            logger.exception(
                "pending_refund_unsaved",
                refund_id=str(refund.refund_id),
                user_id=user_id,
                model_id=model_id,
                amount=amount,
            )
            return refund

        logger.warning(
            "refund_deferred",
            refund_id=str(refund.refund_id),
            user_id=user_id,
            model_id=model_id,
            amount=amount,
            error=refund.last_error,
        )
        return refund

    async def sweep(self) -> int:
        """
        Settle pending refunds.

        Returns:
            Number of refunds credited by this sweep
        """
        await self._persist_unsaved()

        settled = 0
        for refund in await self.store.list_pending_refunds(self.batch_size):
            try:
                balance_after = await self.store.settle_pending_refund(refund.refund_id)
            except Exception:
                metrics.record_pending_refund(refund.model_id, "failed")
                logger.exception(
                    "pending_refund_failed",
                    refund_id=str(refund.refund_id),
                    user_id=refund.user_id,
                    model_id=refund.model_id,
                )
                continue

            if balance_after is None:
                continue

            settled += 1
            metrics.record_pending_refund(refund.model_id, "settled")
            metrics.record_ledger_mutation("refund", refund.model_id, refund.amount)
            logger.info(
                "pending_refund_settled",
                refund_id=str(refund.refund_id),
                user_id=refund.user_id,
                model_id=refund.model_id,
                amount=refund.amount,
                balance_after=balance_after,
            )
            await self._record_refunded(refund)

        return settled

    async def run(self) -> None:
        """Sweep until cancelled."""
        logger.info("refund_recovery_started", interval_seconds=self.interval_seconds)

        while True:
            try:
                await self.sweep()
            except Exception as e:
                logger.error("refund_recovery_error", error=str(e), exc_info=True)

            await asyncio.sleep(self.interval_seconds)

    async def _persist_unsaved(self) -> None:
        while self._unsaved:
            refund = self._unsaved[0]
            try:
                await self.store.add_pending_refund(refund)
            except Exception as e:
                logger.warning(
                    "pending_refund_still_unsaved",
                    pending=len(self._unsaved),
                    error=str(e),
                )
                return
            self._unsaved.pop(0)

    async def _record_refunded(self, refund: PendingRefund) -> None:
        record = UsageRecord(
            user_id=refund.user_id,
            model_id=refund.model_id,
            tokens_used=refund.amount,
            status=UsageStatus.REFUNDED,
            created_at=utc_now(),
            conversation_id=refund.conversation_id,
        )
        try:
            await self.store.record_usage(record)
        except Exception:
            # Audit row only; the balance is already settled
            logger.exception(
                "usage_record_failed",
                user_id=refund.user_id,
                model_id=refund.model_id,
                status=UsageStatus.REFUNDED.value,
            )
