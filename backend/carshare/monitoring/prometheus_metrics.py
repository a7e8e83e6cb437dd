"""
Prometheus metrics module for the booking engine.

Service timings come from the @measure_operation decorator; the booking
and payment counters are incremented by the lifecycle and payment layers.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "carshare_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "carshare_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "carshare_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

booking_transitions_total = Counter(
    "carshare_booking_transitions_total",
    "Committed booking lifecycle transitions",
    ["from_status", "to_status", "action"],
    registry=REGISTRY,
)

payment_operations_total = Counter(
    "carshare_payment_operations_total",
    "Payment gateway operations by outcome",
    ["operation", "outcome"],  # outcome: success | declined | failed | timeout | invalid_state
    registry=REGISTRY,
)

payment_discrepancies_total = Counter(
    "carshare_payment_discrepancies_total",
    "Payment operations queued for reconciliation",
    ["operation"],
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Thin static facade over the registry, mirrors how services record metrics."""

    @staticmethod
    def record_service_operation(
        service: str,
        operation: str,
        duration: float,
        status: str = "success",
        error_type: Optional[str] = None,
    ) -> None:
        """
        Record service operation metrics from @measure_operation decorator.

        Args:
            service: Service name (e.g., 'BookingService')
            operation: Operation/method name (e.g., 'create_booking_request')
            duration: Operation duration in seconds
            status: Operation status ('success' or 'error')
            error_type: Type of error if status is 'error'
        """
        service_operation_duration_seconds.labels(service=service, operation=operation).observe(
            duration
        )
        service_operations_total.labels(service=service, operation=operation, status=status).inc()
        if status == "error" and error_type:
            errors_total.labels(service=service, operation=operation, error_type=error_type).inc()

    @staticmethod
    def record_booking_transition(from_status: str, to_status: str, action: str) -> None:
        booking_transitions_total.labels(
            from_status=from_status, to_status=to_status, action=action
        ).inc()

    @staticmethod
    def record_payment_operation(operation: str, outcome: str) -> None:
        payment_operations_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_payment_discrepancy(operation: str) -> None:
        payment_discrepancies_total.labels(operation=operation).inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
