"""
Tests for application settings.

FAIL FAST validation and derived values.
"""

import pytest

from tokenguard.config import ConfigurationError, Settings


def _settings(**overrides) -> Settings:
    values = {
        "ledger_backend": "memory",
        "session_jwt_secret": "secret",
        **overrides,
    }
    return Settings(_env_file=None, **values)


class TestCriticalConfig:
    def test_memory_backend_needs_no_database(self):
        settings = _settings(database_url="")
        assert settings.ledger_backend == "memory"

    def test_postgres_requires_database_url(self):
        with pytest.raises(ConfigurationError, match="DATABASE_URL is required"):
            _settings(ledger_backend="postgres", database_url="")

    def test_postgres_rejects_other_databases(self):
        with pytest.raises(ConfigurationError, match="must be a PostgreSQL URL"):
            _settings(ledger_backend="postgres", database_url="mysql://u:p@db/x")

    def test_session_secret_required(self):
        with pytest.raises(ConfigurationError, match="SESSION_JWT_SECRET"):
            _settings(session_jwt_secret="")

    def test_timeout_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="PROVIDER_TIMEOUT_SECONDS"):
            _settings(provider_timeout_seconds=0)

    def test_retry_budgets_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="LEDGER_MAX_ATTEMPTS"):
            _settings(refund_max_attempts=0)

    def test_field_limits_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="FIELD_LENGTH_OVERRIDES"):
            _settings(field_length_overrides={"message": 0})

    @pytest.mark.parametrize(
        ("field", "env_name"),
        [
            ("length_limit_body", "LENGTH_LIMIT_BODY"),
            ("length_limit_query", "LENGTH_LIMIT_QUERY"),
            ("length_limit_params", "LENGTH_LIMIT_PARAMS"),
        ],
    )
    def test_location_limits_must_be_positive(self, field: str, env_name: str):
        with pytest.raises(ConfigurationError, match=env_name):
            _settings(**{field: 0})

    def test_refund_recovery_interval_must_be_positive(self):
        with pytest.raises(ConfigurationError, match="REFUND_RECOVERY_INTERVAL_SECONDS"):
            _settings(refund_recovery_interval_seconds=0)


class TestDefaults:
    def test_field_overrides(self):
        overrides = _settings().field_length_overrides

        assert overrides["message"] == 8000
        assert overrides["email"] == 254
        assert overrides["conversationId"] == 64

    def test_location_defaults(self):
        settings = _settings()

        assert settings.length_limit_body == 10000
        assert settings.length_limit_query == 2048
        assert settings.length_limit_params == 256

    def test_allowed_origins_split(self):
        settings = _settings(cors_allow_origins="https://a.example, https://b.example,")
        assert settings.allowed_origins == ["https://a.example", "https://b.example"]
