"""
Status Reporter - Balances, messages remaining and warnings for a user.

Read-only: balances without a stored row report the model's starting grant and
no row is created.
"""

from datetime import datetime

from tokenguard.config import settings
from tokenguard.db.ledger_store import LedgerStore
from tokenguard.db.models import utc_now
from tokenguard.models.domain import UserStatus
from tokenguard.services.entitlement import low_token_models, messages_remaining, paid_expiry
from tokenguard.services.model_catalog import ModelCatalog


class StatusReporter:
    """Projects ledger and subscription state into a UserStatus."""

    def __init__(
        self,
        store: LedgerStore,
        catalog: ModelCatalog,
        low_token_threshold: int | None = None,
        expiry_warning_days: int | None = None,
    ) -> None:
        self.store = store
        self.catalog = catalog
        self.low_token_threshold = (
            settings.low_token_message_threshold
            if low_token_threshold is None
            else low_token_threshold
        )
        self.expiry_warning_days = (
            settings.expiry_warning_days if expiry_warning_days is None else expiry_warning_days
        )

    async def get_status(self, user_id: str, now: datetime | None = None) -> UserStatus:
        now = now or utc_now()
        stored = await self.store.list_balances(user_id)
        subscription = await self.store.get_subscription(user_id)
        paid = subscription.is_active(now)

        balances = {
            entry.model_id: stored.get(entry.model_id, entry.starting_grant)
            for entry in self.catalog
        }
        remaining = {
            entry.model_id: messages_remaining(balances[entry.model_id], entry.token_cost)
            for entry in self.catalog
        }

        low_models = (
            [] if paid else low_token_models(balances, self.catalog, self.low_token_threshold)
        )
        expiry = paid_expiry(subscription, now, self.expiry_warning_days)

        return UserStatus(
            balances=balances,
            messages_remaining=remaining,
            is_paid_user=paid,
            paid_until=subscription.paid_until,
            low_token_warning=bool(low_models),
            low_token_models=low_models,
            paid_expiry_warning=expiry.warning,
            paid_expiry_days_left=expiry.days_left,
        )
