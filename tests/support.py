"""
Test doubles shared across test modules.
"""

import asyncio

from tokenguard.db.memory_store import InMemoryLedgerStore
from tokenguard.models.domain import ModelCostEntry, PendingRefund


class FakeProvider:
    """Model provider returning a canned reply or raising a configured error."""

    def __init__(
        self,
        reply: str = "Hello from the model",
        error: BaseException | None = None,
        delay: float = 0.0,
    ) -> None:
        self.reply = reply
        self.error = error
        self.delay = delay
        self.calls: list[tuple[str, str]] = []

    async def complete(self, model: ModelCostEntry, prompt: str) -> str:
        self.calls.append((model.model_id, prompt))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.reply


class GatedProvider:
    """Provider that blocks until released, then succeeds or fails."""

    def __init__(self, fail: bool) -> None:
        self.fail = fail
        self.started = asyncio.Event()
        self.release = asyncio.Event()

    async def complete(self, model: ModelCostEntry, prompt: str) -> str:
        self.started.set()
        await self.release.wait()
        if self.fail:
            raise RuntimeError("upstream reset")
        return "late reply"


class InterleavingStore(InMemoryLedgerStore):
    """In-memory store that yields to the event loop on reads, forcing CAS races."""

    async def get_balance(self, user_id: str, model_id: str) -> int | None:
        await asyncio.sleep(0)
        return await super().get_balance(user_id, model_id)


class RefundRejectingStore(InMemoryLedgerStore):
    """Loses every compare-and-swap that would raise a balance."""

    async def set_balance(
        self, user_id: str, model_id: str, new_value: int, expected_previous: int
    ) -> bool:
        if new_value > expected_previous:
            return False
        return await super().set_balance(user_id, model_id, new_value, expected_previous)


class UnavailableStore(RefundRejectingStore):
    """Refunds never commit and pending refunds cannot be written until `recover()`."""

    def __init__(self) -> None:
        super().__init__()
        self.available = False

    def recover(self) -> None:
        self.available = True

    async def add_pending_refund(self, refund: PendingRefund) -> None:
        if not self.available:
            raise ConnectionError("ledger database unavailable")
        await super().add_pending_refund(refund)


class SlowCommitStore(InMemoryLedgerStore):
    """Commits a balance write, then blocks before returning (session close)."""

    def __init__(self) -> None:
        super().__init__()
        self.committed = asyncio.Event()
        self.release = asyncio.Event()

    async def set_balance(
        self, user_id: str, model_id: str, new_value: int, expected_previous: int
    ) -> bool:
        written = await super().set_balance(user_id, model_id, new_value, expected_previous)
        if new_value < expected_previous:
            self.committed.set()
            await self.release.wait()
        return written
