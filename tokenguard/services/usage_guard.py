"""
Usage Guard - Authorize, debit, call the model, settle.

NO DICTIONARIES - Requests and results are typed domain models.

Charge-iff-success: a free-tier request is debited before the provider call
and refunded on any provider failure, so the final balance always equals the
initial balance minus successful completions times the model cost.

The debit, the provider call and the settlement run in one task shielded from
caller cancellation. A client that disconnects mid-request cannot leave the
ledger in a charged-but-unsettled state. A refund that cannot be committed is
handed to refund recovery, which credits it later.
"""

import asyncio
import time
from uuid import uuid4

from structlog import get_logger

from tokenguard.config import settings
from tokenguard.db.models import utc_now
from tokenguard.exceptions import (
    InsufficientTokensError,
    ProviderError,
    ProviderTimeoutError,
)
from tokenguard.models.api import UsageStatus
from tokenguard.models.domain import ChatPayload, ChatResult, ModelCostEntry, UsageRecord
from tokenguard.observability.metrics import metrics
from tokenguard.observability.tracing import mark_failed, traced
from tokenguard.services.entitlement import evaluate
from tokenguard.services.ledger import LedgerService
from tokenguard.services.model_catalog import ModelCatalog
from tokenguard.services.model_provider import ModelProvider
from tokenguard.services.refund_recovery import RefundRecovery

logger = get_logger(__name__)

# Strong references to in-flight settlements so they are not garbage collected
# after the requesting coroutine goes away.
_pending_settlements: set[asyncio.Task[ChatResult]] = set()


def _forget_settlement(task: asyncio.Task[ChatResult]) -> None:
    _pending_settlements.discard(task)
    if not task.cancelled():
        # Mark retrieved; the caller may have disconnected before awaiting it
        task.exception()


async def drain_pending_settlements() -> None:
    """Wait for in-flight provider calls to settle (graceful shutdown)."""
    if _pending_settlements:
        logger.info("draining_settlements", pending=len(_pending_settlements))
        await asyncio.gather(*_pending_settlements, return_exceptions=True)


class UsageGuard:
    """Orchestrates one metered chat request."""

    def __init__(
        self,
        ledger: LedgerService,
        catalog: ModelCatalog,
        provider: ModelProvider,
        timeout_seconds: float | None = None,
        recovery: RefundRecovery | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = ledger.store
        self.catalog = catalog
        self.provider = provider
        self.timeout_seconds = timeout_seconds or settings.provider_timeout_seconds
        self.recovery = recovery or RefundRecovery(self.store)

    async def handle_chat_request(
        self, user_id: str, model_id: str, payload: ChatPayload
    ) -> ChatResult:
        """
        Authorize and run a chat completion.

        Raises:
            UnknownModelError: Model not in the catalog (nothing is written)
            InsufficientTokensError: Free-tier balance below the model cost
            ProviderError: Provider failed; any debit has been refunded or deferred
            ProviderTimeoutError: Provider timed out; any debit has been refunded or deferred
            LedgerConflictError: Balance kept changing underneath the request
        """
        entry = self.catalog.get(model_id)

        subscription = await self.store.get_subscription(user_id)
        paid = subscription.is_active(utc_now())
        balance = await self.ledger.balance(user_id, entry)

        decision = evaluate(balance, paid, entry.token_cost)
        metrics.record_entitlement(model_id, decision.allowed, paid)
        if not decision.allowed:
            logger.info(
                "chat_request_denied",
                user_id=user_id,
                model_id=model_id,
                balance=balance,
                required=entry.token_cost,
                shortfall=decision.shortfall,
            )
            raise InsufficientTokensError(balance, entry.token_cost, model_id)

        task = asyncio.create_task(
            self._debit_complete_and_settle(user_id, entry, payload, paid, balance)
        )
        _pending_settlements.add(task)
        task.add_done_callback(_forget_settlement)
        return await asyncio.shield(task)

    async def _debit_complete_and_settle(
        self,
        user_id: str,
        entry: ModelCostEntry,
        payload: ChatPayload,
        paid: bool,
        balance: int,
    ) -> ChatResult:
        charged = 0
        balance_after = balance
        if not paid:
            change = await self.ledger.debit(user_id, entry)
            charged = entry.token_cost
            balance_after = change.balance_after
            logger.info(
                "chat_request_debited",
                user_id=user_id,
                model_id=entry.model_id,
                charged=charged,
                balance_after=balance_after,
            )

        conversation_id = payload.conversation_id or str(uuid4())

        with traced(
            "provider_completion",
            model_id=entry.model_id,
            upstream_model=entry.upstream_model,
            tokens_charged=charged,
        ) as span:
            started = time.perf_counter()
            failure: ProviderError | None = None
            cause: Exception | None = None
            try:
                text = await asyncio.wait_for(
                    self.provider.complete(entry, payload.message),
                    timeout=self.timeout_seconds,
                )
            except TimeoutError as e:
                failure = ProviderTimeoutError(self.timeout_seconds)
                cause = e
            except ProviderError as e:
                failure = e
                cause = e
            except Exception as e:
                failure = ProviderError(f"{type(e).__name__}: {e}")
                cause = e

            duration = time.perf_counter() - started

            if failure is not None:
                outcome = "timeout" if isinstance(failure, ProviderTimeoutError) else "error"
                metrics.record_provider_call(entry.model_id, outcome, duration)
                mark_failed(span, failure)
                logger.warning(
                    "provider_call_failed",
                    user_id=user_id,
                    model_id=entry.model_id,
                    outcome=outcome,
                    error=str(cause),
                    duration_seconds=round(duration, 3),
                )
                await self._refund(user_id, entry, charged, conversation_id)
                if failure is cause:
                    raise failure
                raise failure from cause

            metrics.record_provider_call(entry.model_id, "success", duration)

        await self._record_usage(
            user_id, entry.model_id, charged, UsageStatus.COMPLETED, conversation_id
        )
        logger.info(
            "chat_request_completed",
            user_id=user_id,
            model_id=entry.model_id,
            tokens_charged=charged,
            duration_seconds=round(duration, 3),
        )

        return ChatResult(
            conversation_id=conversation_id,
            user_message=payload.message,
            bot_message=text,
            timestamp=utc_now(),
            model_id=entry.model_id,
            tokens_charged=charged,
            balance_after=balance_after,
        )

    async def _refund(
        self, user_id: str, entry: ModelCostEntry, charged: int, conversation_id: str
    ) -> None:
        if charged == 0:
            return

        try:
            change = await self.ledger.refund(user_id, entry, charged)
        except Exception as e:
            logger.error(
                "chat_refund_failed",
                user_id=user_id,
                model_id=entry.model_id,
                amount=charged,
                exc_info=True,
            )
            await self.recovery.defer(user_id, entry.model_id, charged, conversation_id, e)
            return

        logger.info(
            "chat_request_refunded",
            user_id=user_id,
            model_id=entry.model_id,
            amount=charged,
            balance_after=change.balance_after,
        )
        await self._record_usage(
            user_id, entry.model_id, charged, UsageStatus.REFUNDED, conversation_id
        )

    async def _record_usage(
        self,
        user_id: str,
        model_id: str,
        tokens_used: int,
        status: UsageStatus,
        conversation_id: str,
    ) -> None:
        record = UsageRecord(
            user_id=user_id,
            model_id=model_id,
            tokens_used=tokens_used,
            status=status,
            created_at=utc_now(),
            conversation_id=conversation_id,
        )
        try:
            await self.store.record_usage(record)
        except Exception:
            # Audit row only; the balance is already settled
            logger.exception(
                "usage_record_failed",
                user_id=user_id,
                model_id=model_id,
                status=status.value,
            )
