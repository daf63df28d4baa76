"""
Observability module - Logging, Metrics, and Tracing.
"""

from tokenguard.observability.logging import get_logger, log_context, setup_logging
from tokenguard.observability.metrics import metrics
from tokenguard.observability.tracing import setup_tracing

__all__ = [
    "get_logger",
    "log_context",
    "setup_logging",
    "metrics",
    "setup_tracing",
]
