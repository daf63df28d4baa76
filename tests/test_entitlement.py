"""
Tests for the entitlement evaluator.

Pure functions: property-based coverage for arithmetic, examples for warnings.
"""

from datetime import UTC, datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from tokenguard.models.domain import ModelCostEntry, SubscriptionState
from tokenguard.services.entitlement import (
    INSUFFICIENT_TOKENS,
    evaluate,
    is_low_on_tokens,
    low_token_models,
    messages_remaining,
    paid_expiry,
)
from tokenguard.services.model_catalog import BUILTIN_MODELS

balances = st.integers(min_value=0, max_value=10_000_000)
costs = st.integers(min_value=1, max_value=100_000)

NOW = datetime(2026, 10, 19, 12, 0, tzinfo=UTC)


class TestEvaluate:
    """Allow/deny decisions."""

    @given(balance=balances, cost=costs)
    def test_free_tier_allowed_iff_balance_covers_cost(self, balance: int, cost: int):
        decision = evaluate(balance, False, cost)
        assert decision.allowed == (balance >= cost)

    @given(balance=balances, cost=costs)
    def test_paid_always_allowed(self, balance: int, cost: int):
        decision = evaluate(balance, True, cost)
        assert decision.allowed is True
        assert decision.shortfall == 0

    @given(balance=balances, cost=costs)
    def test_denial_reports_shortfall(self, balance: int, cost: int):
        decision = evaluate(balance, False, cost)
        if not decision.allowed:
            assert decision.reason == INSUFFICIENT_TOKENS
            assert decision.shortfall == cost - balance
            assert decision.shortfall > 0

    def test_exact_balance_allowed(self):
        assert evaluate(20, False, 20).allowed is True

    def test_one_short_denied(self):
        decision = evaluate(19, False, 20)
        assert decision.allowed is False
        assert decision.shortfall == 1


class TestMessagesRemaining:
    """Integer division of balance by cost."""

    @given(balance=balances, cost=costs)
    def test_floor_division(self, balance: int, cost: int):
        assert messages_remaining(balance, cost) == balance // cost

    @given(balance=balances, cost=costs)
    def test_remaining_messages_are_affordable(self, balance: int, cost: int):
        remaining = messages_remaining(balance, cost)
        assert remaining * cost <= balance < (remaining + 1) * cost


class TestLowTokenWarning:
    """Threshold 3 with the nano cost of 20."""

    def test_80_tokens_is_not_low(self):
        assert is_low_on_tokens(80, 20, 3) is False

    def test_60_tokens_is_low(self):
        assert is_low_on_tokens(60, 20, 3) is True

    def test_low_models_in_catalog_order(self):
        result = low_token_models(
            {"gpt-4.1": 0, "gpt-4.1-mini": 10_000, "gpt-4.1-nano": 40},
            BUILTIN_MODELS,
            3,
        )
        assert result == ["gpt-4.1", "gpt-4.1-nano"]

    def test_models_without_balance_skipped(self):
        entries = [ModelCostEntry(model_id="m", name="M", token_cost=10, ad_reward=10)]
        assert low_token_models({}, entries, 3) == []


class TestPaidExpiry:
    """Expiry warning and whole days left."""

    def test_two_days_left_warns(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW + timedelta(days=2))
        result = paid_expiry(sub, NOW, 3)

        assert result.warning is True
        assert result.days_left == 2

    def test_ten_days_left_no_warning(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW + timedelta(days=10))
        result = paid_expiry(sub, NOW, 3)

        assert result.warning is False
        assert result.days_left == 10

    def test_partial_day_rounds_up(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW + timedelta(hours=36))
        assert paid_expiry(sub, NOW, 3).days_left == 2

    def test_exactly_at_threshold_warns(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW + timedelta(days=3))
        assert paid_expiry(sub, NOW, 3).warning is True

    def test_expired_subscription_has_no_warning(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW - timedelta(seconds=1))
        result = paid_expiry(sub, NOW, 3)

        assert result.warning is False
        assert result.days_left is None

    def test_free_user_has_no_warning(self):
        result = paid_expiry(SubscriptionState(), NOW, 3)
        assert result.warning is False
        assert result.days_left is None

    def test_paid_flag_without_expiry_has_no_warning(self):
        result = paid_expiry(SubscriptionState(is_paid_user=True), NOW, 3)
        assert result.warning is False
        assert result.days_left is None


class TestSubscriptionState:
    """Currently-paid rule."""

    def test_active_until_expiry(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW + timedelta(minutes=1))
        assert sub.is_active(NOW) is True

    def test_expiry_instant_is_inactive(self):
        sub = SubscriptionState(is_paid_user=True, paid_until=NOW)
        assert sub.is_active(NOW) is False

    def test_flag_off_is_inactive(self):
        sub = SubscriptionState(is_paid_user=False, paid_until=NOW + timedelta(days=30))
        assert sub.is_active(NOW) is False

    def test_flag_without_expiry_is_inactive(self):
        assert SubscriptionState(is_paid_user=True).is_active(NOW) is False
