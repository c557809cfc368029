"""Per-entity metric aggregation across parallel metric queries."""
import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from apm_metrics.config import AggregationConfig
from apm_metrics.normalizer import label_keyed_results, parse_value
from apm_metrics.query_client import QueryRequest, QueryRunner, render_query
from apm_metrics.response_utils import instant_rows, latest_pair_value
from apm_metrics.series import (
    EntityKind,
    EntityMetrics,
    MetricKind,
    MetricRecord,
    UNKNOWN_SUB_KEY,
)
from apm_metrics.time_range import instant_window

logger = logging.getLogger(__name__)


class AggregationError(Exception):
    """Single failure state for a whole aggregation pass."""

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message)
        self.cause = cause


def wrap_error(error: BaseException) -> AggregationError:
    """Return the error as an AggregationError, wrapping it if needed."""
    if isinstance(error, AggregationError):
        return error
    return AggregationError(str(error) or type(error).__name__, cause=error)


def entity_key_for(
    labels: Mapping[str, Any],
    entity_kind: EntityKind,
    unknown_sub_key: str = UNKNOWN_SUB_KEY,
) -> Optional[str]:
    """EntityKey for a response row, or None when the row names no entity."""
    if entity_kind == EntityKind.OPERATION:
        operation = labels.get("operation")
        return str(operation) if operation else None

    remote_service = labels.get("remoteService")
    if not remote_service:
        return None
    remote_operation = labels.get("remoteOperation") or unknown_sub_key
    return f"{remote_service}:{remote_operation}"


def extract_entity_values(
    response: Any,
    entity_kind: EntityKind,
    unknown_sub_key: str = UNKNOWN_SUB_KEY,
) -> List[Tuple[str, float]]:
    """
    (EntityKey, value) pairs from one metric response.

    Accepts instant-query rows or label-keyed series (latest value wins).
    Unparsable or non-finite values come back as 0.
    """
    pairs: List[Tuple[str, float]] = []

    rows = instant_rows(response)
    if rows is not None:
        for row in rows:
            if not isinstance(row, dict):
                continue
            key = entity_key_for(row, entity_kind, unknown_sub_key)
            if key is None:
                continue
            pairs.append((key, _finite_or_zero(parse_value(row.get("Value")))))
        return pairs

    results = label_keyed_results(response)
    if results is None:
        logger.warning(f"Unrecognised metric response: {type(response).__name__}")
        return pairs

    for item in results:
        if not isinstance(item, dict):
            continue
        labels = item.get("metric") or item.get("labels") or {}
        key = entity_key_for(labels, entity_kind, unknown_sub_key)
        if key is None:
            continue
        value = latest_pair_value(item)
        if value is None:
            continue
        pairs.append((key, _finite_or_zero(value)))

    return pairs


def _finite_or_zero(value: float) -> float:
    return value if math.isfinite(value) else 0.0


class MetricRecordBuilder:
    """Builds a MetricRecord from a default-filled map and per-response merges."""

    def __init__(self, entity_kind: EntityKind, config: Optional[AggregationConfig] = None):
        self.entity_kind = entity_kind
        self.config = config or AggregationConfig()

    def start(self, entities: Iterable[str]) -> MetricRecord:
        """Every entity gets a zeroed record before any response is merged."""
        return {key: EntityMetrics() for key in entities}

    def merge(self, record: MetricRecord, kind: MetricKind, response: Any) -> MetricRecord:
        """Return a new record with this response's values written to ``kind``."""
        merged = dict(record)
        scale = self.config.scale_for(kind)
        skipped = 0

        for key, value in extract_entity_values(response, self.entity_kind, self.config.unknown_sub_key):
            if key not in merged:
                skipped += 1
                continue
            metrics = merged[key].copy()
            setattr(metrics, kind.field_name, value * scale)
            merged[key] = metrics

        if skipped:
            logger.debug(f"{kind.value}: skipped {skipped} rows for unknown entities")
        return merged

    def build(self, entities: Iterable[str], responses: Mapping[MetricKind, Any]) -> MetricRecord:
        record = self.start(entities)
        for kind in MetricKind:
            if kind in responses:
                record = self.merge(record, kind, responses[kind])
        return record


@dataclass
class AggregationState:
    """What the presentation layer sees for the latest requested pass."""
    metrics: MetricRecord = field(default_factory=dict)
    is_loading: bool = False
    error: Optional[AggregationError] = None
    generation: int = 0


class MetricAggregator:
    """Issues one query per MetricKind and merges the results per entity."""

    def __init__(
        self,
        runner: QueryRunner,
        queries: Mapping[MetricKind, str],
        entity_kind: EntityKind,
        config: Optional[AggregationConfig] = None,
        self_metrics=None,
        otel_self_metrics=None,
    ):
        missing = [k.value for k in MetricKind if k not in queries]
        if missing:
            raise ValueError(f"Missing queries for metric kinds: {missing}")

        self.runner = runner
        self.queries = dict(queries)
        self.entity_kind = entity_kind
        self.config = config or AggregationConfig()
        self.builder = MetricRecordBuilder(entity_kind, self.config)
        self.self_metrics = self_metrics
        self.otel_self_metrics = otel_self_metrics

        self.state = AggregationState()
        self._generation = 0

    def _recorders(self):
        return [m for m in (self.self_metrics, self.otel_self_metrics) if m is not None]

    async def _run_query(self, kind: MetricKind, request: QueryRequest) -> Any:
        for recorder in self._recorders():
            recorder.record_query(kind.value)
        try:
            return await self.runner(request)
        except Exception:
            for recorder in self._recorders():
                recorder.record_query_error(kind.value)
            raise

    async def aggregate(
        self,
        entities: Sequence[str],
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        variables: Optional[Mapping[str, str]] = None,
    ) -> MetricRecord:
        """
        Fetch all seven metric kinds for ``entities`` in parallel.

        Args:
            entities: EntityKeys to report on; the result has exactly these keys
            start_time: Window start (epoch seconds); defaults to the instant window
            end_time: Window end (epoch seconds)
            variables: Placeholder values, layered over ``config.variables``

        Returns:
            MetricRecord keyed by every input entity

        Raises:
            AggregationError: if any of the queries fails
        """
        entities = list(dict.fromkeys(entities))
        if not entities:
            return {}

        if start_time is None or end_time is None:
            start_time, end_time = instant_window(self.config.instant_window_s)

        merged = {**self.config.variables, **(variables or {})}
        kinds = list(MetricKind)
        requests = [
            QueryRequest(
                query=render_query(self.queries[kind], merged),
                start_time=start_time,
                end_time=end_time,
            )
            for kind in kinds
        ]

        pass_start = time.time()
        results = await asyncio.gather(
            *(self._run_query(kind, request) for kind, request in zip(kinds, requests)),
            return_exceptions=True,
        )

        for kind, result in zip(kinds, results):
            if isinstance(result, asyncio.CancelledError):
                raise result
            if isinstance(result, BaseException):
                logger.error(f"Metric query for {kind.value} failed: {result}")
                error = wrap_error(result)
                raise error from (None if error is result else result)

        record = self.builder.build(entities, dict(zip(kinds, results)))

        duration = time.time() - pass_start
        for recorder in self._recorders():
            recorder.record_aggregation_duration(self.entity_kind.value, duration)
            recorder.set_entities(self.entity_kind.value, len(record))

        logger.info(
            f"Aggregated {len(record)} {self.entity_kind.value} entities in {duration:.3f}s"
        )
        return record

    async def refresh(
        self,
        entities: Sequence[str],
        start_time: Optional[int] = None,
        end_time: Optional[int] = None,
        variables: Optional[Mapping[str, str]] = None,
    ) -> AggregationState:
        """
        Run a pass and publish it to ``state`` unless a newer pass was requested.

        Superseded passes are not cancelled; their results are dropped on arrival.
        """
        self._generation += 1
        generation = self._generation
        self.state = AggregationState(
            metrics=self.state.metrics, is_loading=True, error=None, generation=generation
        )

        try:
            metrics = await self.aggregate(entities, start_time, end_time, variables)
        except AggregationError as e:
            if generation == self._generation:
                self.state = AggregationState(
                    metrics=self.state.metrics, is_loading=False, error=e, generation=generation
                )
            return self.state

        if generation != self._generation:
            logger.debug(f"Dropping superseded aggregation pass {generation}")
            return self.state

        self.state = AggregationState(metrics=metrics, is_loading=False, error=None, generation=generation)
        return self.state


async def aggregate(
    entities: Sequence[str],
    runner: QueryRunner,
    queries: Mapping[MetricKind, str],
    entity_kind: EntityKind = EntityKind.OPERATION,
    config: Optional[AggregationConfig] = None,
    start_time: Optional[int] = None,
    end_time: Optional[int] = None,
    variables: Optional[Mapping[str, str]] = None,
) -> MetricRecord:
    """One-shot aggregation without keeping state."""
    aggregator = MetricAggregator(runner, queries, entity_kind, config)
    return await aggregator.aggregate(entities, start_time, end_time, variables)


def metric_record_to_dict(record: MetricRecord) -> Dict[str, Dict[str, float]]:
    """JSON-friendly view of a MetricRecord."""
    return {key: metrics.to_dict() for key, metrics in record.items()}
