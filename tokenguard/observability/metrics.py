"""
Metrics Collection with Prometheus.

Exposes guard and system metrics for monitoring.
"""

from prometheus_client import Counter, Gauge, Histogram, Info

from tokenguard.config import settings


class MetricLabels:
    """Label names shared by guard metrics."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    MODEL = "model"
    OUTCOME = "outcome"
    ERROR_TYPE = "error_type"


class GuardMetrics:
    """
    Centralized metrics for the token guard.

    Minimum viable metrics covering:
    - HTTP requests (rate, duration, errors)
    - Entitlement decisions (allowed/denied per model)
    - Ledger mutations (debits, refunds, credits, CAS conflicts)
    - Ad rewards (granted, duplicate, capped)
    - Model provider calls (latency, failures, timeouts)
    """

    def __init__(self) -> None:
        """Initialize all Prometheus metrics."""

        # ====================================================================
        # Service Info
        # ====================================================================
        self.service_info = Info(
            "tokenguard_service",
            "Service information",
        )
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # ====================================================================
        # HTTP Metrics
        # ====================================================================
        self.http_requests_total = Counter(
            "tokenguard_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )

        self.http_request_duration_seconds = Histogram(
            "tokenguard_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )

        self.http_requests_in_progress = Gauge(
            "tokenguard_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # ====================================================================
        # Entitlement Metrics
        # ====================================================================
        self.entitlement_decisions_total = Counter(
            "tokenguard_entitlement_decisions_total",
            "Chat entitlement decisions",
            [MetricLabels.MODEL, "allowed", "tier"],
        )

        # ====================================================================
        # Ledger Metrics
        # ====================================================================
        self.ledger_mutations_total = Counter(
            "tokenguard_ledger_mutations_total",
            "Committed balance mutations",
            [MetricLabels.OPERATION, MetricLabels.MODEL],
        )

        self.ledger_tokens_total = Counter(
            "tokenguard_ledger_tokens_total",
            "Tokens moved by committed balance mutations",
            [MetricLabels.OPERATION, MetricLabels.MODEL],
        )

        self.ledger_cas_conflicts_total = Counter(
            "tokenguard_ledger_cas_conflicts_total",
            "Compare-and-swap attempts lost to a concurrent writer",
            [MetricLabels.OPERATION],
        )

        self.pending_refunds_total = Counter(
            "tokenguard_pending_refunds_total",
            "Refunds deferred to recovery and their settlement",
            [MetricLabels.MODEL, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Reward Metrics
        # ====================================================================
        self.rewards_total = Counter(
            "tokenguard_ad_rewards_total",
            "Ad reward requests by outcome",
            [MetricLabels.MODEL, MetricLabels.OUTCOME],
        )

        # ====================================================================
        # Provider Metrics
        # ====================================================================
        self.provider_calls_total = Counter(
            "tokenguard_provider_calls_total",
            "Model provider calls by outcome",
            [MetricLabels.MODEL, MetricLabels.OUTCOME],
        )

        self.provider_duration_seconds = Histogram(
            "tokenguard_provider_duration_seconds",
            "Model provider call duration in seconds",
            [MetricLabels.MODEL],
            buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
        )

        # ====================================================================
        # Error Metrics
        # ====================================================================
        self.errors_total = Counter(
            "tokenguard_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    # ========================================================================
    # Helper Methods
    # ========================================================================

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        """Record HTTP request metrics."""
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_entitlement(self, model_id: str, allowed: bool, paid: bool) -> None:
        """Record an entitlement decision."""
        self.entitlement_decisions_total.labels(
            model=model_id, allowed=str(allowed), tier="paid" if paid else "free"
        ).inc()

    def record_ledger_mutation(self, operation: str, model_id: str, amount: int) -> None:
        """Record a committed debit, refund or credit."""
        self.ledger_mutations_total.labels(operation=operation, model=model_id).inc()
        self.ledger_tokens_total.labels(operation=operation, model=model_id).inc(amount)

    def record_cas_conflict(self, operation: str) -> None:
        """Record a lost compare-and-swap."""
        self.ledger_cas_conflicts_total.labels(operation=operation).inc()

    def record_pending_refund(self, model_id: str, outcome: str) -> None:
        """Record a deferred refund outcome (queued, settled, failed)."""
        self.pending_refunds_total.labels(model=model_id, outcome=outcome).inc()

    def record_reward(self, model_id: str, outcome: str) -> None:
        """Record an ad reward outcome (granted, duplicate, capped)."""
        self.rewards_total.labels(model=model_id, outcome=outcome).inc()

    def record_provider_call(self, model_id: str, outcome: str, duration: float) -> None:
        """Record a provider call outcome (success, error, timeout)."""
        self.provider_calls_total.labels(model=model_id, outcome=outcome).inc()
        self.provider_duration_seconds.labels(model=model_id).observe(duration)

    def record_error(self, error_type: str, operation: str) -> None:
        """Record error occurrence."""
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = GuardMetrics()
