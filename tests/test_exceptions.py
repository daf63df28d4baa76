"""
Tests for exception classes.

Covers the guard exception hierarchy, attributes and messages.
"""

import pytest

from tokenguard.exceptions import (
    FieldTooLongError,
    GuardError,
    InsufficientTokensError,
    LedgerConflictError,
    ModelCatalogError,
    ProviderError,
    ProviderTimeoutError,
    TooManyRewardsError,
    UnknownModelError,
    WriteVerificationError,
)


class TestHierarchy:
    @pytest.mark.parametrize(
        "exc",
        [
            FieldTooLongError("body", "message", 8000, 8001),
            UnknownModelError("m"),
            InsufficientTokensError(0, 20),
            ProviderError("x"),
            ProviderTimeoutError(10.0),
            TooManyRewardsError(10, 3600),
            LedgerConflictError("u", "m", 5),
            ModelCatalogError("x"),
            WriteVerificationError("x"),
        ],
    )
    def test_all_are_guard_errors(self, exc: GuardError):
        assert isinstance(exc, GuardError)

    def test_timeout_is_provider_error(self):
        assert issubclass(ProviderTimeoutError, ProviderError)

    def test_retryable_flags(self):
        assert ProviderError("x").retryable is True
        assert ProviderTimeoutError(1.0).retryable is True
        assert LedgerConflictError("u", "m", 1).retryable is True
        assert InsufficientTokensError(0, 20).retryable is False
        assert UnknownModelError("m").retryable is False


class TestFieldTooLongError:
    def test_message_names_field_location_and_sizes(self):
        exc = FieldTooLongError("query", "q", 2048, 5000)

        assert str(exc) == 'Field "q" in query exceeds limit of 2048 characters (received 5000).'
        assert exc.location == "query"
        assert exc.limit == 2048
        assert exc.actual == 5000


class TestInsufficientTokensError:
    def test_attributes(self):
        exc = InsufficientTokensError(balance=5, required=20, model_id="gpt-4.1-nano")

        assert exc.balance == 5
        assert exc.required == 20
        assert exc.model_id == "gpt-4.1-nano"
        assert exc.shortfall == 15
        assert str(exc) == "Insufficient tokens. Balance: 5, Required: 20"

    def test_shortfall_never_negative(self):
        assert InsufficientTokensError(balance=50, required=20).shortfall == 0


class TestProviderErrors:
    def test_timeout_message(self):
        exc = ProviderTimeoutError(2.5)

        assert exc.timeout_seconds == 2.5
        assert "2.5s" in str(exc)

    def test_provider_message_prefixed(self):
        assert str(ProviderError("upstream returned 503")) == (
            "Model provider error: upstream returned 503"
        )


class TestOtherErrors:
    def test_unknown_model(self):
        exc = UnknownModelError("gpt-9000")
        assert exc.model_id == "gpt-9000"
        assert "gpt-9000" in str(exc)

    def test_too_many_rewards(self):
        exc = TooManyRewardsError(10, 3600)
        assert exc.limit == 10
        assert exc.window_seconds == 3600

    def test_ledger_conflict(self):
        exc = LedgerConflictError("u1", "gpt-4.1", 5)
        assert exc.attempts == 5
        assert "u1/gpt-4.1" in str(exc)
