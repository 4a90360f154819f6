"""
Metrics Collection with Prometheus.

Exposes business and system metrics for monitoring.
"""

from enum import Enum

from prometheus_client import Counter, Gauge, Histogram, Info

from license_portal.config import settings


class MetricLabels(str, Enum):
    """Standard metric label names."""

    ENDPOINT = "endpoint"
    METHOD = "method"
    STATUS_CODE = "status_code"
    OPERATION = "operation"
    RESOURCE_KIND = "resource_kind"
    SERVICE = "service"
    ERROR_TYPE = "error_type"


class PortalMetrics:
    """
    Centralized metrics for the license portal.

    Covers:
    - HTTP requests (rate, duration, errors)
    - Entitlement decisions (allowed/denied by reason)
    - Provisioning (resources created, credits spent)
    - External calls (GenzAuth, UID API, payment processor)
    - Payments and reconciliation records
    """

    def __init__(self) -> None:
        self.service_info = Info("portal_service", "Service information")
        self.service_info.info(
            {
                "version": settings.api_version,
                "service_name": settings.service_name,
            }
        )

        # HTTP
        self.http_requests_total = Counter(
            "portal_http_requests_total",
            "Total HTTP requests",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD, MetricLabels.STATUS_CODE],
        )
        self.http_request_duration_seconds = Histogram(
            "portal_http_request_duration_seconds",
            "HTTP request duration in seconds",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
            buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
        )
        self.http_requests_in_progress = Gauge(
            "portal_http_requests_in_progress",
            "Number of HTTP requests currently being processed",
            [MetricLabels.ENDPOINT, MetricLabels.METHOD],
        )

        # Entitlement
        self.entitlement_checks_total = Counter(
            "portal_entitlement_checks_total",
            "Entitlement guard decisions",
            [MetricLabels.RESOURCE_KIND, "allowed", "reason"],
        )

        # Provisioning
        self.resources_provisioned_total = Counter(
            "portal_resources_provisioned_total",
            "Resources provisioned",
            [MetricLabels.RESOURCE_KIND],
        )
        self.credits_spent_total = Counter(
            "portal_credits_spent_total",
            "Credits debited for provisioning",
            [MetricLabels.RESOURCE_KIND],
        )
        self.reconciliation_records_total = Counter(
            "portal_reconciliation_records_total",
            "External resources left without a local record",
            [MetricLabels.RESOURCE_KIND],
        )

        # External services
        self.external_calls_total = Counter(
            "portal_external_calls_total",
            "Calls to external provisioning and payment services",
            [MetricLabels.SERVICE, MetricLabels.OPERATION, "outcome"],
        )
        self.external_call_duration_seconds = Histogram(
            "portal_external_call_duration_seconds",
            "External call duration in seconds",
            [MetricLabels.SERVICE],
            buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 15.0),
        )

        # Payments
        self.payments_total = Counter(
            "portal_payments_total",
            "Payment lifecycle events",
            ["event"],
        )
        self.credits_purchased_total = Counter(
            "portal_credits_purchased_total",
            "Credits granted by completed payments",
        )

        # Errors
        self.errors_total = Counter(
            "portal_errors_total",
            "Total errors by type",
            [MetricLabels.ERROR_TYPE, MetricLabels.OPERATION],
        )

    def record_http_request(
        self, endpoint: str, method: str, status_code: int, duration: float
    ) -> None:
        self.http_requests_total.labels(
            endpoint=endpoint, method=method, status_code=status_code
        ).inc()
        self.http_request_duration_seconds.labels(endpoint=endpoint, method=method).observe(
            duration
        )

    def record_entitlement(self, kind: str, allowed: bool, reason: str | None) -> None:
        self.entitlement_checks_total.labels(
            resource_kind=kind, allowed=str(allowed), reason=reason or "none"
        ).inc()

    def record_provisioned(self, kind: str, credits_spent: int, count: int = 1) -> None:
        self.resources_provisioned_total.labels(resource_kind=kind).inc(count)
        if credits_spent:
            self.credits_spent_total.labels(resource_kind=kind).inc(credits_spent)

    def record_reconciliation(self, kind: str) -> None:
        self.reconciliation_records_total.labels(resource_kind=kind).inc()

    def record_external_call(
        self, service: str, operation: str, outcome: str, duration: float
    ) -> None:
        self.external_calls_total.labels(
            service=service, operation=operation, outcome=outcome
        ).inc()
        self.external_call_duration_seconds.labels(service=service).observe(duration)

    def record_payment(self, event: str, credits: int = 0) -> None:
        self.payments_total.labels(event=event).inc()
        if credits:
            self.credits_purchased_total.inc(credits)

    def record_error(self, error_type: str, operation: str) -> None:
        self.errors_total.labels(error_type=error_type, operation=operation).inc()


# Global metrics instance
metrics = PortalMetrics()

