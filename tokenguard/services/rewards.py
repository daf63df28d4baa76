"""
Reward Granter - Credit tokens for completed rewarded ads.

NO DICTIONARIES - Results are RewardResult dataclasses.

Pattern:
1. Resolve the model (unknown models are rejected)
2. Duplicate key inside the idempotency window -> return balance unchanged
3. Enforce the per-user rolling cap
4. Record the ad view (unique key), credit, confirm
5. If the credit fails, remove the ad view and re-raise
"""

from datetime import datetime, timedelta
from uuid import uuid4

from structlog import get_logger

from tokenguard.config import settings
from tokenguard.db.models import utc_now
from tokenguard.exceptions import TooManyRewardsError
from tokenguard.models.domain import AdViewRecord, RewardResult
from tokenguard.observability.metrics import metrics
from tokenguard.services.ledger import LedgerService
from tokenguard.services.model_catalog import ModelCatalog

logger = get_logger(__name__)

PRUNE_INTERVAL = timedelta(minutes=5)


class RewardGranter:
    """Idempotent, rate-capped ad reward crediting."""

    def __init__(
        self,
        ledger: LedgerService,
        catalog: ModelCatalog,
        window_seconds: int | None = None,
        max_rewards_per_window: int | None = None,
        idempotency_ttl_seconds: int | None = None,
    ) -> None:
        self.ledger = ledger
        self.store = ledger.store
        self.catalog = catalog
        self.window = timedelta(seconds=window_seconds or settings.reward_window_seconds)
        self.max_rewards = max_rewards_per_window or settings.max_rewards_per_window
        self.idempotency_ttl = timedelta(
            seconds=idempotency_ttl_seconds or settings.reward_idempotency_ttl_seconds
        )
        self._last_prune: datetime | None = None

    async def grant_ad_reward(
        self,
        user_id: str,
        preferred_model: str,
        idempotency_key: str | None = None,
        now: datetime | None = None,
    ) -> RewardResult:
        """
        Credit the model's ad reward once per idempotency key.

        Raises:
            UnknownModelError: preferred_model not in the catalog
            TooManyRewardsError: Rolling-window cap reached
            LedgerConflictError: Credit could not be committed
        """
        now = now or utc_now()
        entry = self.catalog.get(preferred_model)

        await self._prune_expired(now)

        if idempotency_key:
            existing = await self.store.find_ad_view(idempotency_key, now - self.idempotency_ttl)
            if existing is not None:
                return await self._duplicate(user_id, existing)

        recent = await self.store.count_ad_views_since(user_id, now - self.window)
        if recent >= self.max_rewards:
            metrics.record_reward(entry.model_id, "capped")
            logger.warning(
                "ad_reward_capped",
                user_id=user_id,
                model_id=entry.model_id,
                recent=recent,
                limit=self.max_rewards,
            )
            raise TooManyRewardsError(self.max_rewards, int(self.window.total_seconds()))

        key = idempotency_key or f"srv-{uuid4()}"
        record = AdViewRecord(
            user_id=user_id,
            model_id=entry.model_id,
            tokens_granted=entry.ad_reward,
            idempotency_key=key,
            created_at=now,
        )
        if not await self.store.add_ad_view(record):
            # Concurrent request with the same key won the insert
            return await self._duplicate(user_id, record)

        try:
            change = await self.ledger.credit(user_id, entry, entry.ad_reward)
        except Exception:
            await self.store.remove_ad_view(key)
            logger.error(
                "ad_reward_credit_failed",
                user_id=user_id,
                model_id=entry.model_id,
                idempotency_key=key,
                exc_info=True,
            )
            raise

        await self.store.confirm_ad_view(key, change.balance_after)
        metrics.record_reward(entry.model_id, "granted")
        logger.info(
            "ad_reward_granted",
            user_id=user_id,
            model_id=entry.model_id,
            tokens_granted=entry.ad_reward,
            balance_after=change.balance_after,
        )
        return RewardResult(
            new_balance=change.balance_after,
            tokens_granted=entry.ad_reward,
            model_id=entry.model_id,
        )

    async def _duplicate(self, user_id: str, existing: AdViewRecord) -> RewardResult:
        if existing.user_id != user_id:
            logger.warning(
                "ad_reward_key_reused_across_users",
                user_id=user_id,
                owner_user_id=existing.user_id,
            )
        entry = self.catalog.get(existing.model_id)
        balance = await self.ledger.balance(user_id, entry)
        metrics.record_reward(entry.model_id, "duplicate")
        logger.info(
            "ad_reward_duplicate",
            user_id=user_id,
            model_id=entry.model_id,
            idempotency_key=existing.idempotency_key,
        )
        return RewardResult(
            new_balance=balance,
            tokens_granted=0,
            model_id=entry.model_id,
            duplicate=True,
        )

    async def _prune_expired(self, now: datetime) -> None:
        if self._last_prune is not None and now - self._last_prune < PRUNE_INTERVAL:
            return
        self._last_prune = now
        removed = await self.store.prune_ad_views(now - max(self.idempotency_ttl, self.window))
        if removed:
            logger.info("ad_views_pruned", removed=removed)
