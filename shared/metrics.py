"""
Prometheus metrics for the cache flush service.
"""

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry
from typing import Dict, Any, Optional, Sequence, Tuple, Type

MetricSpec = Tuple[Type, str, str, Sequence[str]]

# (type, name, help, labels)
HTTP_METRICS: Sequence[MetricSpec] = (
    (Counter, "http_requests_total", "HTTP requests by route and status", ("method", "endpoint", "status_code")),
    (Histogram, "http_request_duration_seconds", "HTTP request latency by route", ("method", "endpoint")),
    (Counter, "health_check_total", "Health probes by outcome", ("status",)),
    (Counter, "errors_total", "Rejected or failed requests by error code", ("error_type", "service")),
    (Counter, "business_events_total", "Domain events", ("event_type", "service")),
)

CACHE_FLUSH_METRICS: Sequence[MetricSpec] = (
    (Counter, "cache_flush_operations_total", "Flush operations by terminal status", ("operation_type", "status")),
    (Counter, "cache_layer_flush_total", "Per-layer flush attempts by outcome", ("layer", "status")),
    (Histogram, "cache_layer_flush_duration_seconds", "Per-layer flush duration", ("layer",)),
    (Counter, "cache_items_cleared_total", "Cache entries removed", ("layer",)),
    (Counter, "cache_rebuild_tasks_total", "Rebuild tasks run by outcome", ("task", "status")),
    (Gauge, "cache_rebuild_queue_depth", "Rebuild jobs waiting in the queue", ()),
)


class MetricsCollector:
    """Owns one CollectorRegistry and the metrics registered on it.

    A private registry per collector lets several service instances live in
    one process (tests, embedded workers) without duplicate-timeseries errors.
    Unknown metric names are ignored by the generic helpers.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None,
                 version: str = "1.0.0"):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
        self._metrics: Dict[str, Any] = {}

        info = Info("service", "Service information", registry=self.registry)
        info.info({"service": service_name, "version": version})

        for spec in (*HTTP_METRICS, *CACHE_FLUSH_METRICS):
            self._register(*spec)

    def _register(self, metric_type: Type, name: str, documentation: str, labels: Sequence[str]):
        self._metrics[name] = metric_type(name, documentation, list(labels), registry=self.registry)

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record one served request; ``endpoint`` should be the route template."""
        self.increment_counter("http_requests_total", method=method, endpoint=endpoint, status_code=str(status_code))
        self.observe_histogram("http_request_duration_seconds", duration, method=method, endpoint=endpoint)

    def record_health_check(self, status: str):
        self.increment_counter("health_check_total", status=status)

    def record_error(self, error_type: str):
        self.increment_counter("errors_total", error_type=error_type, service=self.service_name)

    def record_business_event(self, event_type: str):
        self.increment_counter("business_events_total", event_type=event_type, service=self.service_name)

    def increment_counter(self, metric_name: str, amount: float = 1, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            self._child(metric, labels).inc(amount)

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            self._child(metric, labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        metric = self._metrics.get(metric_name)
        if metric is not None:
            self._child(metric, labels).observe(value)

    @staticmethod
    def _child(metric, labels: Dict[str, Any]):
        return metric.labels(**labels) if labels else metric


def get_metrics_collector(service_name: str) -> MetricsCollector:
    """Get a metrics collector for a service, on its own registry."""
    return MetricsCollector(service_name)
