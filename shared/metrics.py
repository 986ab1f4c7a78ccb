"""
Shared metrics configuration for the Plan Approvals core.
"""

import time
from contextlib import contextmanager
from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Metrics are unregistered unless a ``registry`` is supplied, so several
    collectors can coexist in one process (tests build many).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._metrics["business_events_total"] = Counter(
            "business_events_total",
            "Total business events",
            ["event_type", "service"],
            registry=self.registry
        )

        self._metrics["approval_operations_total"] = Counter(
            "approval_operations_total",
            "Orchestrator operations by outcome",
            ["operation", "outcome"],
            registry=self.registry
        )

        self._metrics["version_conflicts_total"] = Counter(
            "version_conflicts_total",
            "Approvals voided because the golden record changed",
            ["conflict_type"],
            registry=self.registry
        )

        self._metrics["external_call_duration_seconds"] = Histogram(
            "external_call_duration_seconds",
            "Duration of calls to external systems",
            ["system", "operation"],
            registry=self.registry
        )

        self._metrics["rules_compiled_total"] = Counter(
            "rules_compiled_total",
            "Rule descriptions compiled to decision tables",
            ["rule_type", "outcome"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    def record_business_event(self, event_type: str, service: Optional[str] = None):
        """Record business event metrics."""
        service_name = service or self.service_name
        self._metrics["business_events_total"].labels(event_type=event_type, service=service_name).inc()

    def record_operation(self, operation: str, outcome: str):
        """Record one orchestrator operation and how it ended."""
        self._metrics["approval_operations_total"].labels(operation=operation, outcome=outcome).inc()

    def record_conflict(self, conflict_type: str):
        self._metrics["version_conflicts_total"].labels(conflict_type=conflict_type).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).inc()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
