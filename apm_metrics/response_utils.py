"""Single-value and aggregate extraction from metric query responses."""
from typing import Any, Dict, List, Optional, Sequence
import math

from apm_metrics.labels import parse_label_string
from apm_metrics.normalizer import (
    ResponseShape,
    detect_shape,
    label_keyed_results,
    parse_timestamp_ms,
    parse_value,
)
from apm_metrics.series import DataPoint

DEFAULT_ENVIRONMENT = "generic:default"


def instant_rows(response: Any) -> Optional[List[Dict[str, Any]]]:
    """Row dicts of an instant-query data frame (``meta.instantData.rows``)."""
    if not isinstance(response, dict):
        return None
    meta = response.get("meta")
    if not isinstance(meta, dict):
        return None
    instant = meta.get("instantData")
    if not isinstance(instant, dict):
        return None
    rows = instant.get("rows")
    return rows if isinstance(rows, list) else None


def latest_pair_value(item: Dict[str, Any]) -> Optional[float]:
    """Latest value of a label-keyed entry: last of ``values`` or the instant ``value``."""
    values = item.get("values")
    if isinstance(values, list) and values:
        last = values[-1]
        if isinstance(last, (list, tuple)) and len(last) >= 2:
            return parse_value(last[1])
    value = item.get("value")
    if isinstance(value, (list, tuple)) and len(value) >= 2:
        return parse_value(value[1])
    return None


def _or_zero(value: Optional[float]) -> float:
    if value is None or not math.isfinite(value):
        return 0.0
    return value


def _field_values(response: Dict[str, Any], name: str) -> Optional[list]:
    for field in response.get("fields") or []:
        if isinstance(field, dict) and field.get("name") == name:
            return field.get("values") or []
    return None


def extract_single_value(response: Any) -> float:
    """Latest value of the first row or series; 0 when there is none."""
    if not response:
        return 0.0

    if detect_shape(response) == ResponseShape.COLUMNAR:
        values = _field_values(response, "Value")
        if values:
            return _or_zero(parse_value(values[-1]))

    rows = instant_rows(response)
    if rows:
        first = rows[0]
        if isinstance(first, dict) and first.get("Value") is not None:
            return _or_zero(parse_value(first["Value"]))

    results = label_keyed_results(response) or []
    if results and isinstance(results[0], dict):
        return _or_zero(latest_pair_value(results[0]))

    return 0.0


def extract_aggregated_data(response: Any) -> List[DataPoint]:
    """
    Points of an ungrouped (single-series) aggregate query.

    Data frame and instant-row timestamps are millis; label-keyed
    timestamps stay in the response's seconds.
    """
    if not response:
        return []

    if detect_shape(response) == ResponseShape.COLUMNAR:
        times = _field_values(response, "Time")
        values = _field_values(response, "Value")
        if times is not None and values is not None:
            points = []
            for raw_time, raw_value in zip(times, values):
                value = parse_value(raw_value)
                timestamp = parse_timestamp_ms(raw_time)
                if math.isfinite(value) and timestamp is not None:
                    points.append(DataPoint(timestamp, value))
            return points

    rows = instant_rows(response)
    if rows:
        return [
            DataPoint(parse_timestamp_ms(row.get("Time")) or 0, _or_zero(parse_value(row.get("Value"))))
            for row in rows if isinstance(row, dict)
        ]

    results = label_keyed_results(response) or []
    if not results or not isinstance(results[0], dict):
        return []

    aggregated = results[0]
    pairs = aggregated.get("values")
    if pairs is None and aggregated.get("value") is not None:
        pairs = [aggregated["value"]]
    return [
        DataPoint(parse_timestamp_ms(pair[0]) or 0, _or_zero(parse_value(pair[1])))
        for pair in pairs or []
        if isinstance(pair, (list, tuple)) and len(pair) >= 2
    ]


def parse_edge_key(series_label: str) -> Optional[str]:
    """
    Edge key from a series label string.

    '{service="ad",environment="generic:default",remoteService="frontend"}'
    becomes 'ad::generic:default->frontend'.
    """
    labels = parse_label_string(series_label)
    return _edge_key(labels)


def _edge_key(labels: Dict[str, Any]) -> Optional[str]:
    service = labels.get("service")
    remote_service = labels.get("remoteService")
    if not service or not remote_service:
        return None
    environment = labels.get("environment") or DEFAULT_ENVIRONMENT
    return f"{service}::{environment}->{remote_service}"


def extract_edge_data(response: Any) -> Dict[str, float]:
    """Map of edge key to value for service-to-service metrics."""
    edges: Dict[str, float] = {}
    if not response:
        return edges

    if detect_shape(response) == ResponseShape.COLUMNAR:
        labels = _field_values(response, "Series")
        values = _field_values(response, "Value")
        if labels is not None and values is not None:
            for raw_label, raw_value in zip(labels, values):
                key = parse_edge_key(str(raw_label or ""))
                if key:
                    # Multiple samples per edge: keep the largest
                    edges[key] = max(edges.get(key, 0.0), _or_zero(parse_value(raw_value)))
            return edges

    rows = instant_rows(response)
    if rows is not None:
        for row in rows:
            if isinstance(row, dict):
                key = _edge_key(row)
                if key:
                    edges[key] = _or_zero(parse_value(row.get("Value")))
        return edges

    for item in label_keyed_results(response) or []:
        if not isinstance(item, dict):
            continue
        key = _edge_key(item.get("metric") or item.get("labels") or {})
        value = latest_pair_value(item)
        if key and value is not None:
            edges[key] = _or_zero(value)

    return edges


def _finite_values(points: Sequence[DataPoint]) -> List[float]:
    return [p.value for p in points if math.isfinite(p.value)]


def calculate_average(points: Sequence[DataPoint]) -> float:
    """Mean of the finite values; 0 for no data."""
    values = _finite_values(points)
    if not values:
        return 0.0
    return sum(values) / len(values)


def calculate_sum(points: Sequence[DataPoint]) -> float:
    """Sum of the finite values."""
    return float(sum(_finite_values(points)))
