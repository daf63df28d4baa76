"""
Structured Logging with Structlog.

Event-style JSON logs. Request-scoped fields (request_id, user_id) are bound
through contextvars so every event inside a request carries them. Prompt text,
replies and credentials are never written to logs.
"""

import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from typing import Any

import structlog
from structlog.types import EventDict, Processor

from tokenguard.config import settings

REDACTED = "[redacted]"

# Keys whose values must not reach log sinks
SENSITIVE_KEYS = frozenset(
    {
        "authorization",
        "api_key",
        "session_token",
        "message",
        "prompt",
        "reply",
    }
)

# Libraries that log every outbound or inbound request at INFO
_CHATTY_LOGGERS = ("httpx", "httpcore", "uvicorn.access")


def add_app_context(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    """Stamp service identity and ledger backend on every entry."""
    event_dict.setdefault("service", settings.service_name)
    event_dict.setdefault("version", settings.api_version)
    event_dict.setdefault("ledger_backend", settings.ledger_backend)
    return event_dict


def redact_sensitive(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
    for key in SENSITIVE_KEYS.intersection(event_dict):
        event_dict[key] = REDACTED
    return event_dict


def setup_logging() -> None:
    """
    Configure structlog on top of stdlib logging.

    A JSON entry looks like:
    {
        "event": "chat_request_debited",
        "level": "info",
        "timestamp": "2026-10-19T12:00:00.123456Z",
        "logger": "tokenguard.services.usage_guard",
        "service": "tokenguard-api",
        "request_id": "req-123",
        "user_id": "user-1",
        "model_id": "gpt-4.1-nano",
        "charged": 20,
        "balance_after": 80
    }
    """
    level = getattr(logging, settings.log_level.upper())
    logging.basicConfig(format="%(message)s", stream=sys.stdout, level=level)
    for name in _CHATTY_LOGGERS:
        logging.getLogger(name).setLevel(max(level, logging.WARNING))

    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        add_app_context,
        redact_sensitive,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    if settings.log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=sys.stdout.isatty()))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str) -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)  # type: ignore[no-any-return]


@contextmanager
def log_context(**fields: Any) -> Iterator[None]:
    """
    Bind fields to every log entry emitted inside the block.

    Usage:
        with log_context(request_id="req-123", user_id="user-1"):
            logger.info("chat_request_completed")
    """
    bound = {key: value for key, value in fields.items() if value is not None}
    with structlog.contextvars.bound_contextvars(**bound):
        yield
