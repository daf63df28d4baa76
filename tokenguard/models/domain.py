"""
Domain Models - Internal business logic models using dataclasses.

NO DICTIONARIES - All data structures are strongly typed immutable dataclasses.
"""

from dataclasses import dataclass, field
from datetime import datetime
from uuid import UUID

from tokenguard.models.api import UsageStatus


@dataclass(frozen=True)
class ModelCostEntry:
    """Immutable cost table entry for one chat model."""

    model_id: str
    name: str
    token_cost: int
    ad_reward: int
    starting_grant: int = 0
    description: str = ""
    api_model: str | None = None
    available: bool = True

    def __post_init__(self) -> None:
        """Validate cost table constraints."""
        if not self.model_id:
            raise ValueError("model_id cannot be empty")
        if self.token_cost <= 0:
            raise ValueError(f"Token cost must be positive: {self.model_id}={self.token_cost}")
        if self.ad_reward <= 0:
            raise ValueError(f"Ad reward must be positive: {self.model_id}={self.ad_reward}")
        if self.starting_grant < 0:
            raise ValueError(
                f"Starting grant cannot be negative: {self.model_id}={self.starting_grant}"
            )

    @property
    def upstream_model(self) -> str:
        """Model name sent to the provider."""
        return self.api_model or self.model_id


@dataclass(frozen=True)
class SubscriptionState:
    """Subscription fields read from the user record."""

    is_paid_user: bool = False
    paid_until: datetime | None = None

    def is_active(self, now: datetime) -> bool:
        """Paid flag set and paid_until still in the future. No expiry means not paid."""
        if not self.is_paid_user or self.paid_until is None:
            return False
        return self.paid_until > now


@dataclass(frozen=True)
class LengthLimits:
    """Per-location defaults plus per-field overrides for the defense filter."""

    body: int = 10000
    query: int = 2048
    params: int = 256
    field_overrides: dict[str, int] = field(default_factory=dict)

    def limit_for(self, location: str, field_name: str) -> int:
        """Field override wins over the location default."""
        override = self.field_overrides.get(field_name)
        if override is not None:
            return override
        return getattr(self, location)


@dataclass(frozen=True)
class EntitlementDecision:
    """Result of evaluating one metered action."""

    allowed: bool
    reason: str | None = None
    shortfall: int = 0


@dataclass(frozen=True)
class BalanceChange:
    """A committed balance mutation."""

    user_id: str
    model_id: str
    balance_before: int
    balance_after: int
    attempts: int = 1

    def __post_init__(self) -> None:
        """Validate balance constraints."""
        if self.balance_after < 0:
            raise ValueError(f"Balance cannot be negative: {self.balance_after}")

    @property
    def delta(self) -> int:
        return self.balance_after - self.balance_before


@dataclass(frozen=True)
class ChatPayload:
    """What the client asked the model."""

    message: str
    conversation_id: str | None = None


@dataclass(frozen=True)
class ChatResult:
    """A produced completion and what it cost."""

    conversation_id: str
    user_message: str
    bot_message: str
    timestamp: datetime
    model_id: str
    tokens_charged: int
    balance_after: int | None


@dataclass(frozen=True)
class AdViewRecord:
    """Persisted ad-view completion used for duplicate suppression."""

    user_id: str
    model_id: str
    tokens_granted: int
    idempotency_key: str
    created_at: datetime
    balance_after: int | None = None


@dataclass(frozen=True)
class RewardResult:
    """Outcome of an ad reward grant."""

    new_balance: int
    tokens_granted: int
    model_id: str
    duplicate: bool = False


@dataclass(frozen=True)
class UsageRecord:
    """Audit row for a metered chat request."""

    user_id: str
    model_id: str
    tokens_used: int
    status: UsageStatus
    created_at: datetime
    conversation_id: str | None = None


@dataclass(frozen=True)
class PendingRefund:
    """A debit whose refund could not be committed; settled by refund recovery."""

    refund_id: UUID
    user_id: str
    model_id: str
    amount: int
    created_at: datetime
    conversation_id: str | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class UserStatus:
    """Balances and warnings projected for the client."""

    balances: dict[str, int]
    messages_remaining: dict[str, int]
    is_paid_user: bool
    paid_until: datetime | None
    low_token_warning: bool
    low_token_models: list[str]
    paid_expiry_warning: bool
    paid_expiry_days_left: int | None


@dataclass(frozen=True)
class ExpiryWarning:
    """Subscription expiry projection."""

    warning: bool = False
    days_left: int | None = None
