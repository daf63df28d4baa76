"""
Application Configuration - Pydantic Settings for type-safe config.

NO DICTIONARIES - All configuration is strongly typed.
FAIL FAST - Critical config is validated at startup.
"""

import sys
from typing import Literal

from pydantic import Field, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


def _default_field_length_overrides() -> dict[str, int]:
    return {
        "email": 254,
        "password": 1024,
        "name": 100,
        "title": 200,
        "message": 8000,
        "token": 512,
        "model": 100,
        "conversationId": 64,
    }


class ConfigurationError(Exception):
    """Raised when critical configuration is missing or invalid."""

    pass


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Ledger backend - "memory" is for local development only
    ledger_backend: Literal["postgres", "memory"] = "postgres"

    # Database Configuration - NO DEFAULT for production safety
    database_url: str = ""
    database_pool_size: int = 25
    database_max_overflow: int = 10
    database_pool_timeout: int = 30
    database_pool_recycle: int = 3600
    run_migrations_on_startup: bool = True

    # API Configuration
    api_host: str = "0.0.0.0"
    api_port: int = 8000
    api_title: str = "Token Guard API"
    api_version: str = "0.1.0"
    api_description: str = "Per-model token entitlement and usage guard for chat completions"
    cors_allow_origins: str = "*"  # Comma-separated

    # Session verification (issuance is owned by the auth service)
    session_jwt_secret: str = ""
    session_jwt_algorithm: str = "HS256"

    # Logging
    log_level: str = "INFO"
    log_format: str = "json"  # json or console

    # Observability - Metrics
    metrics_enabled: bool = True

    # Observability - Tracing
    tracing_enabled: bool = True
    otlp_endpoint: str = "http://otel-collector:4317"
    otlp_insecure: bool = True
    service_name: str = "tokenguard-api"

    # Model catalog
    default_model: str = "gpt-4.1-nano"
    model_catalog_path: str | None = None  # JSON file; built-in table when unset
    model_catalog_fallback: Literal["builtin", "fail"] = "builtin"

    # Model provider (OpenAI-compatible chat completions)
    provider_base_url: str = "https://api.together.xyz/v1"
    provider_api_key: str = ""
    provider_timeout_seconds: float = 10.0

    # Ledger
    ledger_max_attempts: int = 5
    refund_max_attempts: int = 20
    refund_recovery_interval_seconds: float = 30.0

    # Warnings
    low_token_message_threshold: int = 3
    expiry_warning_days: int = 3

    # Ad rewards
    reward_window_seconds: int = 3600
    max_rewards_per_window: int = 10
    reward_idempotency_ttl_seconds: int = 86400

    # Request defense filter
    length_limit_body: int = 10000
    length_limit_query: int = 2048
    length_limit_params: int = 256
    field_length_overrides: dict[str, int] = Field(default_factory=_default_field_length_overrides)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
    )

    @model_validator(mode="after")
    def validate_critical_config(self) -> "Settings":
        """
        FAIL FAST: Validate critical configuration at startup.

        The app MUST NOT start if critical config is missing.
        This prevents silent failures that only manifest at runtime.
        """
        errors: list[str] = []

        if self.ledger_backend == "postgres":
            if not self.database_url:
                errors.append("DATABASE_URL is required but empty or missing")
            elif not self.database_url.startswith(("postgresql", "postgres")):
                errors.append(
                    f"DATABASE_URL must be a PostgreSQL URL, got: {self.database_url[:20]}..."
                )

        if not self.session_jwt_secret:
            errors.append("SESSION_JWT_SECRET is required but empty or missing")

        if self.provider_timeout_seconds <= 0:
            errors.append("PROVIDER_TIMEOUT_SECONDS must be positive")

        if self.ledger_max_attempts < 1 or self.refund_max_attempts < 1:
            errors.append("LEDGER_MAX_ATTEMPTS and REFUND_MAX_ATTEMPTS must be at least 1")

        if self.refund_recovery_interval_seconds <= 0:
            errors.append("REFUND_RECOVERY_INTERVAL_SECONDS must be positive")

        if self.low_token_message_threshold < 0:
            errors.append("LOW_TOKEN_MESSAGE_THRESHOLD cannot be negative")

        for name, limit in (
            ("LENGTH_LIMIT_BODY", self.length_limit_body),
            ("LENGTH_LIMIT_QUERY", self.length_limit_query),
            ("LENGTH_LIMIT_PARAMS", self.length_limit_params),
        ):
            if limit <= 0:
                errors.append(f"{name} must be positive")

        if any(limit <= 0 for limit in self.field_length_overrides.values()):
            errors.append("FIELD_LENGTH_OVERRIDES limits must be positive")

        if errors:
            error_msg = "\n".join(
                [
                    "",
                    "=" * 60,
                    "CRITICAL CONFIGURATION ERROR - APPLICATION CANNOT START",
                    "=" * 60,
                    *[f"  ✗ {e}" for e in errors],
                    "=" * 60,
                    "",
                ]
            )
            print(error_msg, file=sys.stderr)
            raise ConfigurationError(error_msg)

        return self

    @property
    def allowed_origins(self) -> list[str]:
        """CORS origins as a list."""
        return [origin.strip() for origin in self.cors_allow_origins.split(",") if origin.strip()]


# Global settings instance - validates at import time
settings = Settings()
