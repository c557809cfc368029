"""Control API for the metrics pipeline using FastAPI."""
from dataclasses import replace
from typing import Any, Dict, List, Literal, Optional
from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, ConfigDict, Field
import logging
import time

from apm_metrics.aggregator import MetricAggregator, metric_record_to_dict
from apm_metrics.config import Config
from apm_metrics.filters import (
    LATENCY,
    REQUESTS,
    FilterResult,
    build_entities,
    initial_state,
    layout_for,
    run_pipeline,
    select_values,
    set_latency_percentile,
    set_range,
    set_search_query,
    set_thresholds,
)
from apm_metrics.normalizer import create_normalizer, detect_shape, latest_value
from apm_metrics.query_client import PrometheusQueryRunner, QueryRunner
from apm_metrics.response_utils import (
    calculate_average,
    calculate_sum,
    extract_aggregated_data,
    extract_edge_data,
    extract_single_value,
)
from apm_metrics.series import EntityKind, EntityMetrics, MetricKind
from apm_metrics.time_range import resolve_time_range

logger = logging.getLogger(__name__)


class NormalizeRequest(BaseModel):
    """Raw backend response to convert into series."""
    response: Any = None
    label_field: Optional[str] = None


class ExtractRequest(BaseModel):
    """Raw backend response to reduce to a value."""
    response: Any = None
    mode: Literal["single", "aggregated", "edges"] = "single"


class AggregateRequest(BaseModel):
    """Per-entity metric aggregation over a time range."""
    model_config = ConfigDict(populate_by_name=True)

    entity_kind: EntityKind = EntityKind.OPERATION
    entities: List[str]
    from_: Optional[str] = Field(default=None, alias="from")
    to: str = "now"
    queries: Optional[Dict[MetricKind, str]] = None
    variables: Dict[str, str] = Field(default_factory=dict)


class FilterRequest(BaseModel):
    """Entities plus facet selections for one pipeline run."""
    model_config = ConfigDict(allow_inf_nan=False)

    entity_kind: EntityKind = EntityKind.OPERATION
    rows: List[Any] = Field(default_factory=list)
    metrics: Dict[str, Dict[str, float]] = Field(default_factory=dict)
    search_query: str = ""
    selections: Dict[str, List[str]] = Field(default_factory=dict)
    thresholds: Dict[str, List[str]] = Field(default_factory=dict)
    latency_percentile: Optional[MetricKind] = None
    latency_range: Optional[List[float]] = None
    requests_range: Optional[List[float]] = None


class LogLevelRequest(BaseModel):
    """Request to change log level."""
    level: str


def _metrics_from_dict(values: Dict[str, float]) -> EntityMetrics:
    metrics = EntityMetrics()
    for name, value in values.items():
        setattr(metrics, MetricKind(name).field_name, value)
    return metrics


def _filter_response(result: FilterResult) -> Dict[str, Any]:
    return {
        "entities": [
            {
                "key": e.key,
                "name": e.name,
                "attributes": e.attributes,
                "metrics": e.metrics.to_dict() if e.metrics else None,
            }
            for e in result.filtered
        ],
        "bounds": {k: {"min": b.min, "max": b.max} for k, b in result.bounds.items()},
        "active": {k: result.is_active(k) for k in result.bounds},
        "badges": [
            {"key": b.key, "category": b.category, "values": list(b.values), "label": b.label}
            for b in result.badges
        ],
        "auto_selected": result.auto_selected,
    }


class ControlAPI:
    """FastAPI-based control API over normalization, aggregation and filtering."""

    def __init__(
        self,
        config: Config,
        runner: Optional[QueryRunner] = None,
        self_metrics=None,
        otel_self_metrics=None,
    ):
        """
        Initialize control API.

        Args:
            config: Root configuration
            runner: Query runner; defaults to the configured Prometheus source
            self_metrics: Optional Prometheus self-metrics
            otel_self_metrics: Optional OTEL self-metrics
        """
        self.config = config
        self.runner = runner or PrometheusQueryRunner(config.source)
        self.self_metrics = self_metrics
        self.otel_self_metrics = otel_self_metrics
        self.app = FastAPI(title="APM Metrics Pipeline Control API")

        self.start_time = time.time()
        self.normalize_count = 0
        self.aggregators: Dict[EntityKind, MetricAggregator] = {}

        self._setup_routes()

    def _recorders(self):
        return [m for m in (self.self_metrics, self.otel_self_metrics) if m is not None]

    def _aggregator_for(self, request: AggregateRequest) -> MetricAggregator:
        if request.queries is not None:
            return MetricAggregator(
                self.runner, request.queries, request.entity_kind,
                self.config.aggregation, self.self_metrics, self.otel_self_metrics,
            )

        if request.entity_kind not in self.aggregators:
            queries = self.config.aggregation.queries.get(request.entity_kind)
            if not queries:
                raise HTTPException(
                    status_code=404,
                    detail=f"No queries configured for entity kind '{request.entity_kind.value}'"
                )
            self.aggregators[request.entity_kind] = MetricAggregator(
                self.runner, queries, request.entity_kind,
                self.config.aggregation, self.self_metrics, self.otel_self_metrics,
            )
        return self.aggregators[request.entity_kind]

    def _setup_routes(self):
        """Setup API routes."""

        @self.app.get("/healthz")
        async def healthz():
            """Health check endpoint."""
            return {"status": "healthy", "timestamp": time.time()}

        @self.app.get("/status")
        async def status():
            """Pipeline status and the latest aggregation state per entity kind."""
            aggregations = {}
            for kind, aggregator in self.aggregators.items():
                state = aggregator.state
                aggregations[kind.value] = {
                    "generation": state.generation,
                    "is_loading": state.is_loading,
                    "error": str(state.error) if state.error else None,
                    "entities": len(state.metrics),
                }

            return {
                "uptime_seconds": time.time() - self.start_time,
                "normalize_count": self.normalize_count,
                "aggregations": aggregations,
                "configured_entity_kinds": [k.value for k in self.config.aggregation.queries],
                "config": {
                    "source_url": self.config.source.url,
                    "instant_window_s": self.config.aggregation.instant_window_s,
                },
            }

        @self.app.post("/normalize")
        async def normalize_response(request: NormalizeRequest):
            """Normalize a raw response into named, coloured series."""
            shape = detect_shape(request.response)
            normalizer = create_normalizer(shape, self.config.chart)
            try:
                series_list = normalizer.normalize(request.response, request.label_field)
            except Exception as e:
                logger.warning(f"Failed to normalize {shape.value} response: {e}")
                series_list = []

            self.normalize_count += 1
            for recorder in self._recorders():
                recorder.record_normalization(shape.value, len(series_list), normalizer.dropped_points)

            return {
                "shape": shape.value,
                "series": [
                    {
                        "name": s.name,
                        "color": s.color,
                        "points": [[p.timestamp, p.value] for p in s.points],
                    }
                    for s in series_list
                ],
                "latest_value": latest_value(series_list),
                "dropped_points": normalizer.dropped_points,
            }

        @self.app.post("/extract")
        async def extract(request: ExtractRequest):
            """Reduce a raw response to a single value, an aggregate or edge values."""
            if request.mode == "single":
                return {"mode": request.mode, "value": extract_single_value(request.response)}

            if request.mode == "edges":
                return {"mode": request.mode, "edges": extract_edge_data(request.response)}

            points = extract_aggregated_data(request.response)
            return {
                "mode": request.mode,
                "points": [[p.timestamp, p.value] for p in points],
                "average": calculate_average(points),
                "sum": calculate_sum(points),
            }

        @self.app.post("/aggregate")
        async def aggregate(request: AggregateRequest):
            """Aggregate the seven metric kinds for each requested entity."""
            try:
                aggregator = self._aggregator_for(request)
            except ValueError as e:
                raise HTTPException(status_code=400, detail=str(e))

            start_time = end_time = None
            if request.from_ is not None:
                try:
                    start_time, end_time = resolve_time_range(request.from_, request.to)
                except ValueError as e:
                    raise HTTPException(status_code=400, detail=str(e))

            state = await aggregator.refresh(request.entities, start_time, end_time, request.variables)
            if state.error is not None:
                logger.error(f"Aggregation failed: {state.error}")
                raise HTTPException(status_code=502, detail=str(state.error))

            return {
                "entity_kind": request.entity_kind.value,
                "generation": state.generation,
                "metrics": metric_record_to_dict(state.metrics),
            }

        @self.app.post("/filter")
        async def filter_entities(request: FilterRequest):
            """Run the faceted filter pipeline over the supplied entities."""
            try:
                record = {key: _metrics_from_dict(values) for key, values in request.metrics.items()}
                entities = build_entities(request.entity_kind, request.rows, record)
                layout = layout_for(request.entity_kind)

                state = initial_state(self.config.filters)
                state = set_search_query(state, request.search_query)
                for facet_key, values in request.selections.items():
                    state = select_values(state, facet_key, values)
                for facet_key, labels in request.thresholds.items():
                    state = set_thresholds(state, facet_key, labels)
                if request.latency_percentile is not None:
                    state = set_latency_percentile(state, request.latency_percentile)

                result = run_pipeline(entities, state, layout, self.config.filters)

                # Ranges are relative to the bounds of the first run
                ranges = ((LATENCY, request.latency_range), (REQUESTS, request.requests_range))
                if any(selected for _, selected in ranges):
                    state = replace(result.state, auto_selected=None, has_auto_selected=False)
                    for key, selected in ranges:
                        if selected:
                            if len(selected) != 2:
                                raise ValueError(f"Range '{key}' must be [min, max]")
                            state = set_range(state, key, selected[0], selected[1])
                    result = run_pipeline(entities, state, layout, self.config.filters)

            except (ValueError, AttributeError) as e:
                raise HTTPException(status_code=400, detail=str(e))

            return _filter_response(result)

        @self.app.post("/control/loglevel")
        async def set_log_level(request: LogLevelRequest):
            """Change log level at runtime."""
            try:
                level = request.level.upper()

                if level not in ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]:
                    raise HTTPException(
                        status_code=400,
                        detail=f"Invalid log level: {level}"
                    )

                logging.getLogger().setLevel(getattr(logging, level))
                logger.info(f"Log level changed to: {level}")

                return {
                    "status": "log_level_changed",
                    "level": level,
                    "timestamp": time.time()
                }

            except HTTPException:
                raise
            except Exception as e:
                logger.error(f"Error changing log level: {e}")
                raise HTTPException(status_code=500, detail=str(e))

    def run(self, host: str = "0.0.0.0", port: int = 8081):
        """Run the API server."""
        import uvicorn
        uvicorn.run(self.app, host=host, port=port, log_level="info")
