"""
Entitlement Evaluator - Pure decisions over balances and subscriptions.

No I/O, no side effects. Callers supply balances read from the ledger.
"""

import math
from collections.abc import Iterable, Mapping
from datetime import datetime, timedelta

from tokenguard.models.domain import (
    EntitlementDecision,
    ExpiryWarning,
    ModelCostEntry,
    SubscriptionState,
)

INSUFFICIENT_TOKENS = "insufficient tokens"

_ONE_DAY_SECONDS = 86400


def evaluate(balance: int, is_paid_user: bool, model_cost: int) -> EntitlementDecision:
    """Decide whether one message may be sent."""
    if is_paid_user:
        return EntitlementDecision(allowed=True)
    if balance >= model_cost:
        return EntitlementDecision(allowed=True)
    return EntitlementDecision(
        allowed=False,
        reason=INSUFFICIENT_TOKENS,
        shortfall=model_cost - balance,
    )


def messages_remaining(balance: int, model_cost: int) -> int:
    """Whole messages the balance can pay for. model_cost is always positive."""
    return balance // model_cost


def is_low_on_tokens(balance: int, model_cost: int, threshold: int) -> bool:
    return messages_remaining(balance, model_cost) <= threshold


def low_token_models(
    balances: Mapping[str, int],
    entries: Iterable[ModelCostEntry],
    threshold: int,
) -> list[str]:
    """Models whose balance covers no more than `threshold` messages, in catalog order."""
    return [
        entry.model_id
        for entry in entries
        if entry.model_id in balances
        and is_low_on_tokens(balances[entry.model_id], entry.token_cost, threshold)
    ]


def paid_expiry(
    subscription: SubscriptionState, now: datetime, warning_days: int
) -> ExpiryWarning:
    """
    Expiry warning for an active subscription.

    days_left is the remaining time rounded up to whole days; it is only set
    for currently paid users.
    """
    if not subscription.is_active(now) or subscription.paid_until is None:
        return ExpiryWarning()

    remaining = subscription.paid_until - now
    days_left = math.ceil(remaining.total_seconds() / _ONE_DAY_SECONDS)
    return ExpiryWarning(
        warning=remaining <= timedelta(days=warning_days),
        days_left=days_left,
    )
