"""
Shared metrics configuration for the policy resolver.
"""

from prometheus_client import Counter, Histogram, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector for the decision core.

    Metrics are only registered when a ``CollectorRegistry`` is supplied, so
    several collectors can coexist in one process (tests, multi-tenant hosts).
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up common metrics for the service."""

        # Service info
        self._metrics["service_info"] = Info(
            "service_info",
            "Service information",
            registry=self.registry
        )
        self._metrics["service_info"].info({
            "service": self.service_name,
            "version": "1.0.0"
        })

        # Error metrics
        self._metrics["errors_total"] = Counter(
            "errors_total",
            "Total errors",
            ["error_type", "service"],
            registry=self.registry
        )

        self._setup_conflict_metrics()
        self._setup_attribute_metrics()
        self._setup_expression_metrics()

    def _setup_conflict_metrics(self):
        """Set up detection, resolution and combination metrics."""
        self._metrics["conflicts_detected_total"] = Counter(
            "conflicts_detected_total",
            "Total conflicts detected",
            ["conflict_type", "severity"],
            registry=self.registry
        )

        self._metrics["resolutions_total"] = Counter(
            "resolutions_total",
            "Total conflict resolutions",
            ["strategy", "decision"],
            registry=self.registry
        )

        self._metrics["strategy_failures_total"] = Counter(
            "strategy_failures_total",
            "Total resolution strategy failures",
            ["strategy"],
            registry=self.registry
        )

        self._metrics["decisions_total"] = Counter(
            "decisions_total",
            "Total combined decisions",
            ["decision", "mode"],
            registry=self.registry
        )

        self._metrics["combine_duration_seconds"] = Histogram(
            "combine_duration_seconds",
            "Policy combination duration in seconds",
            registry=self.registry
        )

    def _setup_attribute_metrics(self):
        """Set up attribute resolver metrics."""
        self._metrics["attribute_resolutions_total"] = Counter(
            "attribute_resolutions_total",
            "Total attribute resolutions",
            ["status"],
            registry=self.registry
        )

        self._metrics["attribute_cache_hits_total"] = Counter(
            "attribute_cache_hits_total",
            "Total attribute cache hits",
            registry=self.registry
        )

        self._metrics["attribute_cache_misses_total"] = Counter(
            "attribute_cache_misses_total",
            "Total attribute cache misses",
            registry=self.registry
        )

    def _setup_expression_metrics(self):
        """Set up expression sandbox metrics."""
        self._metrics["expression_evaluations_total"] = Counter(
            "expression_evaluations_total",
            "Total sandboxed expression evaluations",
            ["status"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_error(self, error_type: str, service: Optional[str] = None):
        """Record error metrics."""
        service_name = service or self.service_name
        self._metrics["errors_total"].labels(error_type=error_type, service=service_name).inc()

    @contextmanager
    def time_operation(self, operation_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.time()
        try:
            yield
        finally:
            duration = time.time() - start_time
            self.observe_histogram(operation_name, duration, **labels)

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).observe(value)


def get_metrics_collector(service_name: str = "policy_resolver",
                          registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)

