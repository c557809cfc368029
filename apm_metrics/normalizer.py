"""Normalization of backend metric responses into named series."""
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple
import logging
import math

from apm_metrics.config import ChartConfig
from apm_metrics.labels import label_for
from apm_metrics.series import DataPoint, Series

logger = logging.getLogger(__name__)

TIME_FIELD_ALIASES = ("Time", "time", "@timestamp")
SERIES_FIELD_ALIASES = ("Series", "series", "Metric")
VALUE_FIELD_ALIASES = ("Value", "value")

TIME_COLUMN_ALIASES = ("@timestamp", "time", "timestamp", "Time")
VALUE_COLUMN_ALIASES = ("value", "Value")

# One observation before grouping: (label source, timestamp ms, value)
Observation = Tuple[Any, Optional[int], float]


class ResponseShape(str, Enum):
    """Wire formats returned by the metrics query backend."""
    COLUMNAR = "columnar"
    TABULAR = "tabular"
    LABEL_KEYED = "label_keyed"
    UNKNOWN = "unknown"


def parse_value(raw: Any) -> float:
    """Parse a backend value as float64; anything unparsable becomes NaN."""
    if raw is None or isinstance(raw, bool):
        return float("nan")
    try:
        return float(raw)
    except (TypeError, ValueError):
        return float("nan")


def parse_timestamp_ms(raw: Any) -> Optional[int]:
    """Epoch millis from a number or an ISO-8601 string."""
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, (int, float)):
        if not math.isfinite(raw):
            return None
        return int(raw)
    if isinstance(raw, str):
        text = raw.strip()
        try:
            return parse_timestamp_ms(float(text))
        except ValueError:
            pass
        try:
            parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
        except ValueError:
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp() * 1000)
    return None


def label_keyed_results(response: Any) -> Optional[List[Dict[str, Any]]]:
    """Locate the label-keyed result list, if the response has one."""
    if isinstance(response, list):
        return response
    if not isinstance(response, dict):
        return None
    for container in (response.get("body"), response):
        if not isinstance(container, dict):
            continue
        data = container.get("data")
        if isinstance(data, dict) and isinstance(data.get("result"), list):
            return data["result"]
    if isinstance(response.get("result"), list):
        return response["result"]
    return None


def detect_shape(response: Any) -> ResponseShape:
    """Discriminate the response's wire format."""
    if isinstance(response, dict):
        fields = response.get("fields")
        if isinstance(fields, list) and response.get("type", "data_frame") == "data_frame":
            return ResponseShape.COLUMNAR
        if isinstance(response.get("schema"), list) and isinstance(response.get("datarows"), list):
            return ResponseShape.TABULAR
    if label_keyed_results(response) is not None:
        return ResponseShape.LABEL_KEYED
    return ResponseShape.UNKNOWN


class ResponseNormalizer(ABC):
    """Base class for per-shape normalizers."""

    shape = ResponseShape.UNKNOWN

    def __init__(self, config: Optional[ChartConfig] = None):
        self.config = config or ChartConfig()
        self.dropped_points = 0

    @abstractmethod
    def observations(self, response: Any) -> Iterable[Observation]:
        """Yield (label source, timestamp ms, value) for every row."""
        pass

    def normalize(self, response: Any, label_field: Optional[str] = None) -> List[Series]:
        """Group observations by derived name and order points by time."""
        grouped: Dict[str, List[DataPoint]] = {}
        self.dropped_points = 0

        for raw_label, timestamp, value in self.observations(response):
            if timestamp is None or not math.isfinite(value):
                self.dropped_points += 1
                continue
            name = label_for(
                raw_label,
                label_field,
                priority=self.config.label_priority,
                placeholder=self.config.placeholder_name,
            ) or self.config.placeholder_name
            grouped.setdefault(name, []).append(DataPoint(timestamp, value))

        series_list = []
        for color_index, (name, points) in enumerate(grouped.items()):
            points.sort(key=lambda p: p.timestamp)
            series_list.append(Series(name, points, color_index, self.config.palette))

        if self.dropped_points:
            logger.debug(
                f"Dropped {self.dropped_points} unparsable points from {self.shape.value} response"
            )
        return series_list


class ColumnarNormalizer(ResponseNormalizer):
    """Data frame with parallel Time/Series/Value field arrays."""

    shape = ResponseShape.COLUMNAR

    def observations(self, response: Dict[str, Any]) -> Iterable[Observation]:
        fields = response.get("fields") or []
        time_field = _find_field(fields, TIME_FIELD_ALIASES)
        series_field = _find_field(fields, SERIES_FIELD_ALIASES)
        value_field = _find_field(fields, VALUE_FIELD_ALIASES)

        if time_field is None or value_field is None:
            logger.warning(
                f"Data frame missing Time or Value field: {[f.get('name') for f in fields]}"
            )
            return

        timestamps = time_field.get("values") or []
        values = value_field.get("values") or []
        labels = series_field.get("values") if series_field else None

        for i in range(min(len(timestamps), len(values))):
            raw_label = labels[i] if labels and i < len(labels) else None
            yield (
                raw_label or self.config.placeholder_name,
                parse_timestamp_ms(timestamps[i]),
                parse_value(values[i]),
            )


class TabularNormalizer(ResponseNormalizer):
    """Schema plus row arrays; non time/value columns are labels."""

    shape = ResponseShape.TABULAR

    def observations(self, response: Dict[str, Any]) -> Iterable[Observation]:
        schema = response.get("schema") or []
        names = [col.get("name") if isinstance(col, dict) else None for col in schema]

        time_idx = _find_column(names, TIME_COLUMN_ALIASES)
        value_idx = _find_column(names, VALUE_COLUMN_ALIASES)
        if time_idx is None or value_idx is None:
            logger.warning(f"Tabular response missing timestamp or value column: {names}")
            return

        label_columns = [
            (idx, name) for idx, name in enumerate(names)
            if name is not None and idx not in (time_idx, value_idx)
        ]

        for row in response.get("datarows") or []:
            if not isinstance(row, (list, tuple)) or len(row) <= max(time_idx, value_idx):
                self.dropped_points += 1
                continue
            labels = {
                name: str(row[idx]) for idx, name in label_columns
                if idx < len(row) and row[idx] is not None
            }
            yield labels, parse_timestamp_ms(row[time_idx]), parse_value(row[value_idx])


class LabelKeyedNormalizer(ResponseNormalizer):
    """Native time-series result: label map plus [seconds, "value"] pairs."""

    shape = ResponseShape.LABEL_KEYED

    def observations(self, response: Any) -> Iterable[Observation]:
        for item in label_keyed_results(response) or []:
            if not isinstance(item, dict):
                continue
            labels = item.get("metric")
            if labels is None:
                labels = item.get("labels")
            labels = labels or {}

            pairs = item.get("values")
            if pairs is None and item.get("value") is not None:
                pairs = [item["value"]]

            for pair in pairs or []:
                if not isinstance(pair, (list, tuple)) or len(pair) < 2:
                    continue
                seconds = parse_value(pair[0])
                timestamp = int(round(seconds * 1000)) if math.isfinite(seconds) else None
                yield labels, timestamp, parse_value(pair[1])


class UnknownShapeNormalizer(ResponseNormalizer):
    """Unrecognised payloads normalize to no data."""

    def observations(self, response: Any) -> Iterable[Observation]:
        logger.warning(f"Unknown response format: {type(response).__name__}")
        return ()


_NORMALIZERS = {
    ResponseShape.COLUMNAR: ColumnarNormalizer,
    ResponseShape.TABULAR: TabularNormalizer,
    ResponseShape.LABEL_KEYED: LabelKeyedNormalizer,
    ResponseShape.UNKNOWN: UnknownShapeNormalizer,
}


def create_normalizer(shape: ResponseShape, config: Optional[ChartConfig] = None) -> ResponseNormalizer:
    """Factory function to create the normalizer for a shape."""
    return _NORMALIZERS[shape](config)


def normalize(
    response: Any,
    label_field: Optional[str] = None,
    config: Optional[ChartConfig] = None,
) -> List[Series]:
    """
    Convert a raw backend response into canonical series.

    Never raises: malformed payloads degrade to an empty list.
    """
    shape = detect_shape(response)
    normalizer = create_normalizer(shape, config)
    try:
        return normalizer.normalize(response, label_field)
    except Exception as e:
        logger.warning(f"Failed to normalize {shape.value} response: {e}")
        return []


def latest_value(series_list: Sequence[Series]) -> Optional[float]:
    """Latest value of the first series, used for single-stat readings."""
    if not series_list:
        return None
    return series_list[0].latest_value()


def _find_field(fields: List[Any], aliases: Sequence[str]) -> Optional[Dict[str, Any]]:
    for alias in aliases:
        for field in fields:
            if isinstance(field, dict) and field.get("name") == alias:
                return field
    return None


def _find_column(names: List[Optional[str]], aliases: Sequence[str]) -> Optional[int]:
    for alias in aliases:
        if alias in names:
            return names.index(alias)
    return None
