"""
Prometheus metrics for the StudySphere messaging core.

Service timings come from the @measure_operation decorator; the realtime
delivery bus reports delivered and dropped events and live sessions.
"""

from typing import Optional, cast

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

# Create a custom registry to avoid conflicts with default metrics
REGISTRY = CollectorRegistry()

service_operation_duration_seconds = Histogram(
    "studysphere_service_operation_duration_seconds",
    "Service operation duration in seconds",
    ["service", "operation"],
    registry=REGISTRY,
    buckets=(0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

service_operations_total = Counter(
    "studysphere_service_operations_total",
    "Total number of service operations",
    ["service", "operation", "status"],
    registry=REGISTRY,
)

errors_total = Counter(
    "studysphere_errors_total",
    "Total number of errors",
    ["service", "operation", "error_type"],
    registry=REGISTRY,
)

realtime_events_delivered_total = Counter(
    "studysphere_realtime_events_delivered_total",
    "Realtime events queued to a live session",
    ["event_type"],
    registry=REGISTRY,
)

realtime_events_dropped_total = Counter(
    "studysphere_realtime_events_dropped_total",
    "Realtime events dropped because a session queue was full",
    ["event_type"],
    registry=REGISTRY,
)

realtime_sessions_active = Gauge(
    "studysphere_realtime_sessions_active",
    "Live realtime sessions registered in this worker",
    registry=REGISTRY,
)

maintenance_records_total = Counter(
    "studysphere_maintenance_records_total",
    "Per-record outcomes of conversation maintenance jobs",
    ["step", "outcome"],
    registry=REGISTRY,
)

broadcast_relay_restarts_total = Counter(
    "studysphere_broadcast_relay_restarts_total",
    "Times the broadcast relay task crashed and was restarted",
    registry=REGISTRY,
)


class PrometheusMetrics:
    """Manages Prometheus metrics collection and exposure."""

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
            service: Service name (e.g., 'MessageService')
            operation: Operation/method name (e.g., 'send_message')
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
    def record_realtime_delivery(event_type: str, delivered: bool) -> None:
        if delivered:
            realtime_events_delivered_total.labels(event_type=event_type).inc()
        else:
            realtime_events_dropped_total.labels(event_type=event_type).inc()

    @staticmethod
    def set_active_sessions(count: int) -> None:
        realtime_sessions_active.set(count)

    @staticmethod
    def record_maintenance_outcome(step: str, outcome: str, amount: int = 1) -> None:
        if amount:
            maintenance_records_total.labels(step=step, outcome=outcome).inc(amount)

    @staticmethod
    def record_relay_restart() -> None:
        broadcast_relay_restarts_total.inc()

    @staticmethod
    def get_metrics() -> bytes:
        """Generate Prometheus metrics in exposition format."""
        return cast(bytes, generate_latest(REGISTRY))

    @staticmethod
    def get_content_type() -> str:
        """Get the content type for Prometheus metrics."""
        return cast(str, CONTENT_TYPE_LATEST)


prometheus_metrics = PrometheusMetrics()
