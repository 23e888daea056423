"""
Shared metrics configuration for the entitlement sync client.
"""

from typing import Dict, Any, Optional
import time
from contextlib import contextmanager

from prometheus_client import Counter, Histogram, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector.

    Each collector owns its registry unless one is passed in, so several
    clients (or tests) can live in one process without name clashes.
    """

    def __init__(self, component_name: str, registry: Optional[CollectorRegistry] = None):
        self.component_name = component_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}
        self._setup_metrics()

    def _setup_metrics(self):
        """Set up the sync subsystem metrics."""

        # Request execution layer
        self._metrics["sync_requests_total"] = Counter(
            "sync_requests_total",
            "Requests handled by the request executor",
            ["method", "outcome"],
            registry=self.registry
        )

        self._metrics["sync_request_retries_total"] = Counter(
            "sync_request_retries_total",
            "Retried HTTP attempts",
            ["reason"],
            registry=self.registry
        )

        # Resolver
        self._metrics["sync_resolutions_total"] = Counter(
            "sync_resolutions_total",
            "Access resolutions by deciding step",
            ["step"],
            registry=self.registry
        )

        self._metrics["sync_resolution_duration_seconds"] = Histogram(
            "sync_resolution_duration_seconds",
            "Access resolution duration in seconds",
            registry=self.registry
        )

        self._metrics["sync_cache_corrupt_total"] = Counter(
            "sync_cache_corrupt_total",
            "Unparseable persisted cache entries",
            registry=self.registry
        )

        # Realtime channel
        self._metrics["sync_push_events_total"] = Counter(
            "sync_push_events_total",
            "Push events received from the realtime channel",
            ["event"],
            registry=self.registry
        )

    def record_request(self, method: str, outcome: str):
        """Record a request executor outcome."""
        self._metrics["sync_requests_total"].labels(method=method, outcome=outcome).inc()

    def record_retry(self, reason: str):
        """Record a retried HTTP attempt."""
        self._metrics["sync_request_retries_total"].labels(reason=reason).inc()

    def record_resolution(self, step: str):
        """Record which resolution step produced the answer."""
        self._metrics["sync_resolutions_total"].labels(step=step).inc()

    def record_push_event(self, event: str):
        """Record a received push event."""
        self._metrics["sync_push_events_total"].labels(event=event).inc()

    def record_corrupt_entry(self):
        """Record a corrupt persisted cache entry."""
        self._metrics["sync_cache_corrupt_total"].inc()

    @contextmanager
    def time_operation(self, metric_name: str, **labels):
        """Context manager to time an operation."""
        start_time = time.perf_counter()
        try:
            yield
        finally:
            duration = time.perf_counter() - start_time
            metric = self._metrics.get(metric_name)
            if metric is not None:
                (metric.labels(**labels) if labels else metric).observe(duration)

    def sample(self, name: str, **labels) -> float:
        """Current value of a sample, 0.0 when never recorded."""
        value = self.registry.get_sample_value(name, labels or None)
        return value or 0.0
