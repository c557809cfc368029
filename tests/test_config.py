"""Tests for configuration loading and validation."""
from pathlib import Path

import pytest

from apm_metrics.config import AggregationConfig, ChartConfig, Config, FilterConfig, load_config
from apm_metrics.series import EntityKind, MetricKind

DEFAULT_CONFIG = Path(__file__).parent.parent / "configs" / "default.yaml"


def test_default_config_loads():
    config = load_config(str(DEFAULT_CONFIG))

    assert isinstance(config, Config)
    assert config.global_.control_api_port == 8081
    assert set(config.aggregation.queries) == {EntityKind.OPERATION, EntityKind.DEPENDENCY}
    assert config.aggregation.scale_for(MetricKind.P99_LATENCY) == 1000
    assert config.aggregation.scale_for(MetricKind.AVAILABILITY) == 1.0
    assert config.filters.default_percentile == MetricKind.P99_LATENCY
    assert config.filters.preserve_adjusted_ranges is True
    assert config.aggregation.variables == {"service": "frontend"}


def test_defaults_without_file():
    config = Config()

    assert config.source.url == "http://localhost:9090"
    assert config.chart.placeholder_name == "value"
    assert config.filters.default_latency_range == [0.0, 10000.0]
    assert config.aggregation.instant_window_s == 300


def test_env_overrides(tmp_path, monkeypatch):
    path = tmp_path / "config.yaml"
    path.write_text("global:\n  log_level: INFO\n")
    monkeypatch.setenv("PROMETHEUS_URL", "http://prom:9090")
    monkeypatch.setenv("OTEL_ENDPOINT", "collector:4317")
    monkeypatch.setenv("LOG_LEVEL", "DEBUG")

    config = load_config(str(path))

    assert config.source.url == "http://prom:9090"
    assert config.exporters.otel.endpoint == "collector:4317"
    assert config.global_.log_level == "DEBUG"


def test_missing_file():
    with pytest.raises(FileNotFoundError):
        load_config("does/not/exist.yaml")


def test_validation_errors_surface_as_value_error(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("chart:\n  palette: []\n")

    with pytest.raises(ValueError):
        load_config(str(path))


def test_incomplete_queries_rejected():
    with pytest.raises(ValueError):
        AggregationConfig(queries={EntityKind.OPERATION: {MetricKind.P50_LATENCY: "q"}})


def test_filter_config_validation():
    with pytest.raises(ValueError):
        FilterConfig(default_percentile=MetricKind.REQUEST_COUNT)
    with pytest.raises(ValueError):
        FilterConfig(default_latency_range=[10, 10])


def test_exporter_prefixes_must_match():
    with pytest.raises(ValueError):
        Config(exporters={
            "prometheus": {"enabled": True, "prefix": "a_"},
            "otel": {"enabled": True, "prefix": "b_"},
        })


def test_chart_palette():
    assert ChartConfig(palette=["#fff"]).palette == ["#fff"]
