"""
Shared metrics configuration for the rules persistence services.
"""

from typing import Any, Dict, Optional, Tuple
import time
import threading
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services."""

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        if self.service_name == "rules":
            self._setup_rules_metrics()

    def _setup_rules_metrics(self):
        """Set up store-operation metrics for the rules service."""
        self._metrics["store_operations_total"] = Counter(
            "store_operations_total",
            "Total store operations",
            ["store", "operation", "status"],
            registry=self.registry
        )

        self._metrics["store_operation_duration_seconds"] = Histogram(
            "store_operation_duration_seconds",
            "Store operation duration in seconds",
            ["store", "operation"],
            registry=self.registry
        )

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_store_operation(self, store: str, operation: str):
        """Time a store operation and count it as ok or error."""
        start_time = time.time()
        status = "error"
        try:
            yield
            status = "ok"
        finally:
            duration = time.time() - start_time
            if "store_operations_total" in self._metrics:
                self._metrics["store_operations_total"].labels(
                    store=store, operation=operation, status=status
                ).inc()
                self._metrics["store_operation_duration_seconds"].labels(
                    store=store, operation=operation
                ).observe(duration)


_collectors: Dict[Tuple[str, CollectorRegistry], MetricsCollector] = {}
_collectors_lock = threading.Lock()


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """
    Get a metrics collector for a service.

    One collector exists per (service, registry); a registry accepts each
    metric name once. Without a registry the metrics are unregistered and
    a fresh collector is returned.
    """
    if registry is None:
        return MetricsCollector(service_name)
    key = (service_name, registry)
    with _collectors_lock:
        if key not in _collectors:
            _collectors[key] = MetricsCollector(service_name, registry)
        return _collectors[key]
