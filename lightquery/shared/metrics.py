"""
Shared metrics configuration for lightquery.
"""

import threading
from typing import Any, Dict, Optional

from prometheus_client import CollectorRegistry, Counter, Gauge, Histogram

from lightquery.shared.logging import get_logger


class MetricsCollector:
    """Centralized metrics collector for the query engine."""

    def __init__(self, namespace: str = "lightquery", registry: Optional[CollectorRegistry] = None):
        self.namespace = namespace
        self.registry = registry if registry is not None else CollectorRegistry()
        self.logger = get_logger("lightquery.metrics")
        self._metrics: Dict[str, Any] = {}
        self._lock = threading.Lock()
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up engine metrics."""

        # Query metrics
        self._metrics["query_fetch_total"] = Counter(
            "query_fetch_total",
            "Total query operation completions",
            ["result"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["query_fetch_duration_seconds"] = Histogram(
            "query_fetch_duration_seconds",
            "Query operation duration in seconds, retries included",
            namespace=self.namespace,
            registry=self.registry
        )

        # Cache metrics
        self._metrics["query_cache_entries"] = Gauge(
            "query_cache_entries",
            "Number of entries in the query cache",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["query_evictions_total"] = Counter(
            "query_evictions_total",
            "Total entries evicted after their cache time elapsed",
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["query_subscriber_errors_total"] = Counter(
            "query_subscriber_errors_total",
            "Total subscriber callbacks that raised during notification",
            namespace=self.namespace,
            registry=self.registry
        )

        # Mutation metrics
        self._metrics["mutations_total"] = Counter(
            "mutations_total",
            "Total mutations",
            ["result"],
            namespace=self.namespace,
            registry=self.registry
        )

        self._metrics["mutations_in_flight"] = Gauge(
            "mutations_in_flight",
            "Mutations currently running",
            namespace=self.namespace,
            registry=self.registry
        )

    def _get(self, metric_name: str) -> Optional[Any]:
        metric = self._metrics.get(metric_name)
        if metric is None:
            self.logger.debug("Unknown metric", metric=metric_name)
        return metric

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).inc()

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).observe(value)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._get(metric_name)
        if metric is None:
            return
        with self._lock:
            (metric.labels(**labels) if labels else metric).set(value)

    def get_sample(self, metric_name: str, **labels) -> Optional[float]:
        """Read the current value of a metric sample."""
        return self.registry.get_sample_value(f"{self.namespace}_{metric_name}", labels or None)
