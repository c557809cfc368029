"""Prometheus self-metrics for the pipeline using prometheus_client."""
from typing import Optional
from prometheus_client import (
    Counter, Gauge, Histogram,
    CollectorRegistry, start_http_server
)
import logging

from apm_metrics.config import PrometheusExporterConfig

logger = logging.getLogger(__name__)

DURATION_BUCKETS = [0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0]


class SelfMetrics:
    """Self-monitoring metrics for normalization and aggregation."""

    def __init__(self, registry=None, prefix=""):
        if registry is None:
            registry = CollectorRegistry()
        self.registry = registry

        self.queries_total = Counter(
            f"{prefix}queries_total",
            "Total number of metric queries dispatched",
            ["metric_kind"],
            registry=registry
        )

        self.query_errors_total = Counter(
            f"{prefix}query_errors_total",
            "Total number of failed metric queries",
            ["metric_kind"],
            registry=registry
        )

        self.aggregation_duration_seconds = Histogram(
            f"{prefix}aggregation_duration_seconds",
            "Duration of each aggregation pass in seconds",
            ["entity_kind"],
            buckets=DURATION_BUCKETS,
            registry=registry
        )

        self.series_normalized_total = Counter(
            f"{prefix}series_normalized_total",
            "Total number of series produced by normalization",
            ["shape"],
            registry=registry
        )

        self.points_dropped_total = Counter(
            f"{prefix}points_dropped_total",
            "Total number of unparsable points dropped during normalization",
            ["shape"],
            registry=registry
        )

        self.entities_tracked = Gauge(
            f"{prefix}entities_tracked",
            "Number of entities in the latest aggregation pass",
            ["entity_kind"],
            registry=registry
        )

    def record_query(self, metric_kind: str):
        """Record a dispatched query."""
        self.queries_total.labels(metric_kind=metric_kind).inc()

    def record_query_error(self, metric_kind: str):
        """Record a failed query."""
        self.query_errors_total.labels(metric_kind=metric_kind).inc()

    def record_aggregation_duration(self, entity_kind: str, duration: float):
        """Record aggregation pass duration."""
        self.aggregation_duration_seconds.labels(entity_kind=entity_kind).observe(duration)

    def record_normalization(self, shape: str, series_count: int, dropped_points: int):
        """Record normalization output."""
        self.series_normalized_total.labels(shape=shape).inc(series_count)
        if dropped_points:
            self.points_dropped_total.labels(shape=shape).inc(dropped_points)

    def set_entities(self, entity_kind: str, count: int):
        """Set tracked entity count."""
        self.entities_tracked.labels(entity_kind=entity_kind).set(count)


def start_metrics_server(config: PrometheusExporterConfig, registry: CollectorRegistry) -> Optional[SelfMetrics]:
    """Expose self-metrics over HTTP when enabled."""
    if not config.enabled:
        logger.info("Prometheus self-metrics disabled")
        return None

    self_metrics = SelfMetrics(registry=registry, prefix=config.prefix)
    try:
        start_http_server(
            config.port,
            addr=config.bind_address,
            registry=registry
        )
        logger.info(
            f"Prometheus self-metrics listening on "
            f"{config.bind_address}:{config.port}/metrics"
        )
    except Exception as e:
        logger.error(f"Failed to start Prometheus HTTP server: {e}")
        raise
    return self_metrics
