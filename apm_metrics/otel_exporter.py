"""OpenTelemetry self-metrics pushed over OTLP."""
from typing import Optional
import logging

from opentelemetry import metrics
from opentelemetry.sdk.metrics import MeterProvider
from opentelemetry.sdk.metrics.export import PeriodicExportingMetricReader
from opentelemetry.sdk.metrics.view import ExplicitBucketHistogramAggregation, View
from opentelemetry.exporter.otlp.proto.grpc.metric_exporter import OTLPMetricExporter
from opentelemetry.sdk.resources import Resource

from apm_metrics.config import OTELExporterConfig
from apm_metrics.prom_exporter import DURATION_BUCKETS

logger = logging.getLogger(__name__)


class OTELExporter:
    """Owns the meter provider and OTLP exporter."""

    def __init__(self, config: OTELExporterConfig):
        self.config = config
        self.meter_provider: Optional[MeterProvider] = None
        self.meter = None

        if config.enabled:
            self._initialize_otel()

    def _initialize_otel(self):
        """Initialize OpenTelemetry SDK."""
        resource_attrs = {
            "service.name": "apm-metrics-pipeline",
            "deployment.environment": "dev",
        }
        resource_attrs.update(self.config.resource)

        resource = Resource.create(resource_attrs)

        exporter = OTLPMetricExporter(
            endpoint=self.config.endpoint,
            insecure=self.config.insecure,
            headers=tuple(self.config.headers.items()) if self.config.headers else None
        )

        reader = PeriodicExportingMetricReader(
            exporter,
            export_interval_millis=self.config.export_interval_s * 1000
        )

        # Same boundaries as the Prometheus histogram
        duration_view = View(
            instrument_name=f"{self.config.prefix}aggregation_duration_seconds",
            aggregation=ExplicitBucketHistogramAggregation(boundaries=DURATION_BUCKETS)
        )

        self.meter_provider = MeterProvider(
            resource=resource,
            metric_readers=[reader],
            views=[duration_view]
        )
        metrics.set_meter_provider(self.meter_provider)
        self.meter = metrics.get_meter(__name__)

        logger.info(f"OTEL exporter initialized, pushing to {self.config.endpoint}")

    def shutdown(self):
        """Shutdown OTEL exporter."""
        if self.meter_provider is not None:
            self.meter_provider.shutdown()
            logger.info("OTEL exporter shutdown complete")


class OTELSelfMetrics:
    """Self-monitoring metrics mirrored to OTEL; same interface as SelfMetrics."""

    def __init__(self, meter, prefix=""):
        self.prefix = prefix

        self.queries_counter = meter.create_counter(
            name=f"{prefix}queries_total",
            description="Total number of metric queries dispatched",
            unit="1"
        )

        self.query_errors_counter = meter.create_counter(
            name=f"{prefix}query_errors_total",
            description="Total number of failed metric queries",
            unit="1"
        )

        self.aggregation_duration_histogram = meter.create_histogram(
            name=f"{prefix}aggregation_duration_seconds",
            description="Duration of each aggregation pass in seconds",
            unit="s"
        )

        self.series_counter = meter.create_counter(
            name=f"{prefix}series_normalized_total",
            description="Total number of series produced by normalization",
            unit="1"
        )

        self.dropped_points_counter = meter.create_counter(
            name=f"{prefix}points_dropped_total",
            description="Total number of unparsable points dropped during normalization",
            unit="1"
        )

        self.entities_gauge = meter.create_up_down_counter(
            name=f"{prefix}entities_tracked",
            description="Number of entities in the latest aggregation pass",
            unit="1"
        )
        self._entities = {}

    def record_query(self, metric_kind: str):
        self.queries_counter.add(1, {"metric_kind": metric_kind})

    def record_query_error(self, metric_kind: str):
        self.query_errors_counter.add(1, {"metric_kind": metric_kind})

    def record_aggregation_duration(self, entity_kind: str, duration: float):
        self.aggregation_duration_histogram.record(duration, {"entity_kind": entity_kind})

    def record_normalization(self, shape: str, series_count: int, dropped_points: int):
        self.series_counter.add(series_count, {"shape": shape})
        if dropped_points:
            self.dropped_points_counter.add(dropped_points, {"shape": shape})

    def set_entities(self, entity_kind: str, count: int):
        # UpDownCounter has no set(); send the delta from the last value
        delta = count - self._entities.get(entity_kind, 0)
        if delta:
            self.entities_gauge.add(delta, {"entity_kind": entity_kind})
        self._entities[entity_kind] = count
