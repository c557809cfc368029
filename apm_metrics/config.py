"""Configuration models using Pydantic for validation."""
from typing import Dict, List, Optional, Literal
from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
import os

from apm_metrics.series import (
    DEFAULT_PALETTE, LATENCY_KINDS, UNKNOWN_SUB_KEY, EntityKind, MetricKind,
)


DEFAULT_LABEL_PRIORITY = [
    "remoteService",
    "operation",
    "service",
    "service_name",
    "method",
    "endpoint",
    "instance",
    "job",
    "__name__",
]


class SourceConfig(BaseModel):
    """Prometheus-compatible query backend."""
    url: str = "http://localhost:9090"
    timeout_s: float = 30.0
    step_s: Optional[int] = None  # None: derive from the window
    headers: Dict[str, str] = Field(default_factory=dict)


class PrometheusExporterConfig(BaseModel):
    """Self-metrics pull endpoint."""
    enabled: bool = False
    port: int = 8000
    prefix: str = "apm_"
    bind_address: str = "0.0.0.0"


class OTELExporterConfig(BaseModel):
    """Self-metrics OTLP push exporter."""
    enabled: bool = False
    endpoint: str = "localhost:4317"
    insecure: bool = True
    prefix: str = "apm_"
    export_interval_s: int = 10
    headers: Dict[str, str] = Field(default_factory=dict)
    resource: Dict[str, str] = Field(default_factory=dict)


class ExportersConfig(BaseModel):
    """Configuration for all exporters."""
    prometheus: PrometheusExporterConfig = Field(default_factory=PrometheusExporterConfig)
    otel: OTELExporterConfig = Field(default_factory=OTELExporterConfig)


class ChartConfig(BaseModel):
    """Series naming and colouring."""
    palette: List[str] = Field(default_factory=lambda: list(DEFAULT_PALETTE))
    placeholder_name: str = "value"
    label_priority: List[str] = Field(default_factory=lambda: list(DEFAULT_LABEL_PRIORITY))

    @field_validator("palette")
    @classmethod
    def validate_palette(cls, v):
        if not v:
            raise ValueError("Palette must contain at least one colour")
        return v


class AggregationConfig(BaseModel):
    """Per-entity metric aggregation."""
    instant_window_s: int = 300
    unknown_sub_key: str = UNKNOWN_SUB_KEY
    metric_scales: Dict[MetricKind, float] = Field(default_factory=dict)
    # Substituted into $name / ${name} placeholders of every query
    variables: Dict[str, str] = Field(default_factory=dict)
    # entity kind -> metric kind -> query text
    queries: Dict[EntityKind, Dict[MetricKind, str]] = Field(default_factory=dict)

    def scale_for(self, kind: MetricKind) -> float:
        return self.metric_scales.get(kind, 1.0)

    @field_validator("queries")
    @classmethod
    def validate_queries(cls, v):
        """Each configured entity kind needs a query for every metric kind."""
        for entity_kind, queries in v.items():
            missing = [k.value for k in MetricKind if k not in queries]
            if missing:
                raise ValueError(
                    f"Queries for '{entity_kind.value}' missing metric kinds: {missing}"
                )
        return v


class FilterConfig(BaseModel):
    """Faceted filter defaults."""
    default_latency_range: List[float] = Field(default_factory=lambda: [0.0, 10000.0])
    default_requests_range: List[float] = Field(default_factory=lambda: [0.0, 100000.0])
    default_percentile: MetricKind = MetricKind.P99_LATENCY
    health_metric: MetricKind = MetricKind.AVAILABILITY
    latency_unit: str = "ms"
    requests_unit: str = ""
    preserve_adjusted_ranges: bool = True

    @field_validator("default_percentile")
    @classmethod
    def validate_percentile(cls, v):
        if v not in LATENCY_KINDS:
            raise ValueError(f"Percentile must be a latency metric, got '{v.value}'")
        return v

    @field_validator("default_latency_range", "default_requests_range")
    @classmethod
    def validate_range(cls, v):
        if len(v) != 2 or v[0] >= v[1]:
            raise ValueError(f"Range must be [min, max] with min < max, got {v}")
        return v


class GlobalConfig(BaseModel):
    """Global configuration settings."""
    log_level: str = "INFO"
    log_format: Literal["json", "text"] = "text"
    control_api_port: int = 8081
    bind_address: str = "0.0.0.0"


class Config(BaseModel):
    """Root configuration model."""
    model_config = ConfigDict(populate_by_name=True)

    global_: GlobalConfig = Field(default_factory=GlobalConfig, alias="global")
    source: SourceConfig = Field(default_factory=SourceConfig)
    exporters: ExportersConfig = Field(default_factory=ExportersConfig)
    chart: ChartConfig = Field(default_factory=ChartConfig)
    aggregation: AggregationConfig = Field(default_factory=AggregationConfig)
    filters: FilterConfig = Field(default_factory=FilterConfig)

    @model_validator(mode="after")
    def validate_exporter_prefixes(self):
        """Both exporters publish the same instrument names; prefixes must agree."""
        prom, otel = self.exporters.prometheus, self.exporters.otel
        if prom.enabled and otel.enabled and prom.prefix != otel.prefix:
            raise ValueError(
                f"Exporter prefixes differ: prometheus='{prom.prefix}' otel='{otel.prefix}'"
            )
        return self


def load_config(config_path: str) -> Config:
    """Load and validate configuration from YAML file."""
    import yaml

    if not os.path.exists(config_path):
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw_config = yaml.safe_load(f) or {}

    # Apply environment variable overrides
    if env_url := os.getenv('PROMETHEUS_URL'):
        raw_config.setdefault('source', {})['url'] = env_url

    if env_endpoint := os.getenv('OTEL_ENDPOINT'):
        raw_config.setdefault('exporters', {}).setdefault('otel', {})['endpoint'] = env_endpoint

    if env_log_level := os.getenv('LOG_LEVEL'):
        raw_config.setdefault('global', {})['log_level'] = env_log_level

    try:
        return Config(**raw_config)
    except Exception as e:
        raise ValueError(f"Configuration validation failed: {e}")
