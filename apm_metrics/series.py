"""Data structures for normalized series and per-entity metrics."""
from dataclasses import dataclass, field, fields
from enum import Enum
from typing import Dict, List, Optional, Sequence

DEFAULT_PALETTE = (
    "#54B399",  # Green
    "#6092C0",  # Blue
    "#D36086",  # Pink
    "#9170B8",  # Purple
    "#CA8EAE",  # Light Pink
    "#D6BF57",  # Yellow
    "#B9A888",  # Tan
    "#DA8B45",  # Orange
    "#AA6556",  # Brown
    "#E7664C",  # Red-Orange
)

UNKNOWN_SUB_KEY = "unknown"


@dataclass
class DataPoint:
    """A single observation: epoch millis and a finite value."""
    timestamp: int
    value: float


@dataclass
class Series:
    """A named, time-ordered sequence of data points."""
    name: str
    points: List[DataPoint] = field(default_factory=list)
    color_index: int = 0
    palette: Sequence[str] = field(default=DEFAULT_PALETTE, repr=False, compare=False)

    @property
    def color(self) -> str:
        return self.palette[self.color_index % len(self.palette)]

    def latest_value(self) -> Optional[float]:
        """Value of the most recent point, or None for an empty series."""
        if not self.points:
            return None
        return self.points[-1].value


class MetricKind(str, Enum):
    """The seven statistics tracked for every operation or dependency."""
    P50_LATENCY = "p50Latency"
    P90_LATENCY = "p90Latency"
    P99_LATENCY = "p99Latency"
    FAULT_RATE = "faultRate"
    ERROR_RATE = "errorRate"
    AVAILABILITY = "availability"
    REQUEST_COUNT = "requestCount"

    @property
    def field_name(self) -> str:
        return _FIELD_NAMES[self]


_FIELD_NAMES = {
    MetricKind.P50_LATENCY: "p50_latency",
    MetricKind.P90_LATENCY: "p90_latency",
    MetricKind.P99_LATENCY: "p99_latency",
    MetricKind.FAULT_RATE: "fault_rate",
    MetricKind.ERROR_RATE: "error_rate",
    MetricKind.AVAILABILITY: "availability",
    MetricKind.REQUEST_COUNT: "request_count",
}

LATENCY_KINDS = (MetricKind.P50_LATENCY, MetricKind.P90_LATENCY, MetricKind.P99_LATENCY)


class EntityKind(str, Enum):
    """Row-level subject of a metrics table."""
    OPERATION = "operation"
    DEPENDENCY = "dependency"


@dataclass
class EntityMetrics:
    """One value per MetricKind, zeroed until a response fills it in."""
    p50_latency: float = 0.0
    p90_latency: float = 0.0
    p99_latency: float = 0.0
    fault_rate: float = 0.0
    error_rate: float = 0.0
    availability: float = 0.0
    request_count: float = 0.0

    def get(self, kind: MetricKind) -> float:
        return getattr(self, kind.field_name)

    def to_dict(self) -> Dict[str, float]:
        """Serialize keyed by MetricKind value (camelCase)."""
        return {kind.value: self.get(kind) for kind in MetricKind}

    def copy(self) -> "EntityMetrics":
        return EntityMetrics(**{f.name: getattr(self, f.name) for f in fields(self)})


# EntityKey -> metrics
MetricRecord = Dict[str, EntityMetrics]


def dependency_key(service_name: str, remote_operation: Optional[str]) -> str:
    """Composite key for a dependency: ``service:remoteOperation``."""
    return f"{service_name}:{remote_operation or UNKNOWN_SUB_KEY}"
