"""
Shared metrics configuration for the invoice dispatch service.
"""

from typing import Dict, Any, Optional

from prometheus_client import Counter, Histogram, Gauge, Info, CollectorRegistry


class MetricsCollector:
    """Centralized metrics collector for services.

    Each collector owns its registry unless one is passed in, so several
    service instances can coexist in one process.
    """

    def __init__(self, service_name: str, registry: Optional[CollectorRegistry] = None):
        self.service_name = service_name
        self.registry = registry if registry is not None else CollectorRegistry()
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

        # HTTP metrics
        self._metrics["http_requests_total"] = Counter(
            "http_requests_total",
            "Total HTTP requests",
            ["method", "endpoint", "status_code"],
            registry=self.registry
        )

        self._metrics["http_request_duration_seconds"] = Histogram(
            "http_request_duration_seconds",
            "HTTP request duration in seconds",
            ["method", "endpoint"],
            registry=self.registry
        )

        self._metrics["health_check_total"] = Counter(
            "health_check_total",
            "Total health check requests",
            ["status"],
            registry=self.registry
        )

        self._setup_dispatch_metrics()

    def _setup_dispatch_metrics(self):
        """Set up dispatch pipeline metrics."""
        self._metrics["items_enqueued_total"] = Counter(
            "items_enqueued_total",
            "Work items published to the processing topic",
            ["result"],
            registry=self.registry
        )

        self._metrics["messages_processed_total"] = Counter(
            "messages_processed_total",
            "Consumed work items by call outcome",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["dead_letters_total"] = Counter(
            "dead_letters_total",
            "Dead-letter records written",
            ["failure_type"],
            registry=self.registry
        )

        self._metrics["credential_refresh_total"] = Counter(
            "credential_refresh_total",
            "Credential exchanges with the identity endpoint",
            ["result"],
            registry=self.registry
        )

        self._metrics["orchestration_runs_total"] = Counter(
            "orchestration_runs_total",
            "Completed orchestration runs",
            ["result"],
            registry=self.registry
        )

        self._metrics["scheduler_ticks_skipped_total"] = Counter(
            "scheduler_ticks_skipped_total",
            "Scheduler ticks skipped because a run was in flight",
            registry=self.registry
        )

        self._metrics["external_call_duration_seconds"] = Histogram(
            "external_call_duration_seconds",
            "Duration of resilient calls to the processing API",
            ["outcome"],
            registry=self.registry
        )

        self._metrics["circuit_breaker_open"] = Gauge(
            "circuit_breaker_open",
            "1 when the processing API circuit breaker is not closed",
            ["name"],
            registry=self.registry
        )

    def get_metric(self, name: str):
        """Get a metric by name."""
        return self._metrics.get(name)

    def record_http_request(self, method: str, endpoint: str, status_code: int, duration: float):
        """Record HTTP request metrics."""
        self._metrics["http_requests_total"].labels(
            method=method,
            endpoint=endpoint,
            status_code=str(status_code)
        ).inc()

        self._metrics["http_request_duration_seconds"].labels(
            method=method,
            endpoint=endpoint
        ).observe(duration)

    def record_health_check(self, status: str):
        """Record health check metrics."""
        self._metrics["health_check_total"].labels(status=status).inc()

    def increment_counter(self, metric_name: str, **labels):
        """Increment a counter metric."""
        metric = self._metrics.get(metric_name)
        if metric is None:
            return
        if labels:
            metric = metric.labels(**labels)
        metric.inc()

    def set_gauge(self, metric_name: str, value: float, **labels):
        """Set a gauge metric value."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).set(value)

    def observe_histogram(self, metric_name: str, value: float, **labels):
        """Observe a histogram metric."""
        if metric_name in self._metrics:
            self._metrics[metric_name].labels(**labels).observe(value)


def get_metrics_collector(service_name: str, registry: Optional[CollectorRegistry] = None) -> MetricsCollector:
    """Get a metrics collector for a service."""
    return MetricsCollector(service_name, registry)
