"""
Shared metrics configuration for the admission layer.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional
import time
import threading
from contextlib import contextmanager


class MetricsCollector:
    """Centralized metrics collector for the admission layer.

    Each collector owns its registry unless one is passed in, so several
    gateways (or test cases) in one process never collide on metric names.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
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

        self._setup_admission_metrics()

    def _setup_admission_metrics(self):
        """Set up admission-specific metrics."""
        self._metrics["admission_decisions_total"] = Counter(
            "admission_decisions_total",
            "Admission decisions by outcome",
            ["operation", "tier", "outcome"],
            registry=self.registry
        )

        self._metrics["admission_check_duration_seconds"] = Histogram(
            "admission_check_duration_seconds",
            "Admission check duration in seconds",
            ["operation"],
            registry=self.registry
        )

        # Sustained growth here means throttling is silently disabled
        self._metrics["store_failures_total"] = Counter(
            "store_failures_total",
            "Counter store failures converted to fail-open decisions",
            ["component"],
            registry=self.registry
        )

        self._metrics["duplicates_suppressed_total"] = Counter(
            "duplicates_suppressed_total",
            "Messages suppressed as duplicates",
            registry=self.registry
        )

        self._metrics["debounce_superseded_total"] = Counter(
            "debounce_superseded_total",
            "Messages dropped because a newer message superseded them",
            registry=self.registry
        )

        self._metrics["channel_rejections_total"] = Counter(
            "channel_rejections_total",
            "Edge rejections per ingress channel",
            ["channel"],
            registry=self.registry
        )

        self._metrics["usage_tokens_total"] = Counter(
            "usage_tokens_total",
            "Tokens reported by completed downstream calls",
            ["operation", "tier"],
            registry=self.registry
        )

        self._metrics["system_load"] = Gauge(
            "system_load",
            "Last computed system load in [0, 1]",
            registry=self.registry
        )

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
            if operation_name in self._metrics:
                self._metrics[operation_name].labels(**labels).observe(duration)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        with self._lock:
            if labels:
                metric.labels(**labels).inc(amount)
            else:
                metric.inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric.labels(**labels).set(value)
        else:
            metric.set(value)

    def sample(self, name: str, **labels) -> float:
        """Read the current value of a sample, 0.0 when never recorded."""
        value = self.registry.get_sample_value(name, labels or None)
        return value if value is not None else 0.0
