"""Faceted filtering of operations and dependencies with data-driven ranges.

The pipeline runs in four stages over an entity list:

1. category/text filter (search, facet selections, threshold buckets)
2. bounds from the stage-1 subset for each ranged metric
3. range filter, applied only while a range differs from its bounds
4. range rebasing when bounds move

Everything here is pure: ``run_pipeline`` takes a ``FilterState`` and returns
a ``FilterResult`` carrying the next state. ``FilterSession`` is a thin
stateful wrapper for callers that want one object per view.
"""
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple
import logging
import math

import numpy as np

from apm_metrics.config import FilterConfig
from apm_metrics.series import (
    LATENCY_KINDS,
    EntityKind,
    EntityMetrics,
    MetricKind,
    MetricRecord,
    dependency_key,
)

logger = logging.getLogger(__name__)

LATENCY = "latency"
REQUESTS = "requests"
SEARCH = "search"


@dataclass(frozen=True)
class ThresholdBucket:
    """Named interval over a percentage metric."""
    label: str
    lower: Optional[float] = None
    lower_inclusive: bool = True
    upper: Optional[float] = None
    upper_inclusive: bool = False

    def contains(self, value: Optional[float]) -> bool:
        if value is None or math.isnan(value):
            return False
        if self.lower is not None:
            if value < self.lower or (value == self.lower and not self.lower_inclusive):
                return False
        if self.upper is not None:
            if value > self.upper or (value == self.upper and not self.upper_inclusive):
                return False
        return True


# Values are percentages (0-100)
AVAILABILITY_BUCKETS = (
    ThresholdBucket("< 95%", upper=95),
    ThresholdBucket("95-99%", lower=95, upper=99),
    ThresholdBucket("≥ 99%", lower=99),
)

RATE_BUCKETS = (
    ThresholdBucket("< 1%", upper=1),
    ThresholdBucket("1-5%", lower=1, upper=5, upper_inclusive=True),
    ThresholdBucket("> 5%", lower=5, lower_inclusive=False),
)


def matches_threshold(value: Optional[float], label: str, buckets: Sequence[ThresholdBucket]) -> bool:
    """True if ``value`` falls in the bucket named ``label``; unknown labels never match."""
    for bucket in buckets:
        if bucket.label == label:
            return bucket.contains(value)
    return False


@dataclass(frozen=True)
class CategoryFacet:
    key: str
    display_name: str
    attribute: str


@dataclass(frozen=True)
class ThresholdFacet:
    key: str
    display_name: str
    metric: MetricKind
    buckets: Tuple[ThresholdBucket, ...]


@dataclass(frozen=True)
class FacetLayout:
    """Which facets a view offers and which attributes free text searches."""
    category_facets: Tuple[CategoryFacet, ...]
    threshold_facets: Tuple[ThresholdFacet, ...]
    search_attributes: Tuple[str, ...]

    def category(self, key: str) -> Optional[CategoryFacet]:
        return next((f for f in self.category_facets if f.key == key), None)

    def threshold(self, key: str) -> Optional[ThresholdFacet]:
        return next((f for f in self.threshold_facets if f.key == key), None)


_THRESHOLD_FACETS = (
    ThresholdFacet("availability", "Availability", MetricKind.AVAILABILITY, AVAILABILITY_BUCKETS),
    ThresholdFacet("errorRate", "Error rate", MetricKind.ERROR_RATE, RATE_BUCKETS),
    ThresholdFacet("faultRate", "Fault rate", MetricKind.FAULT_RATE, RATE_BUCKETS),
)

OPERATION_LAYOUT = FacetLayout(
    category_facets=(CategoryFacet("operations", "Operation", "name"),),
    threshold_facets=_THRESHOLD_FACETS,
    search_attributes=("name",),
)

DEPENDENCY_LAYOUT = FacetLayout(
    category_facets=(
        CategoryFacet("dependencies", "Dependency", "serviceName"),
        CategoryFacet("serviceOperations", "Service Op", "serviceOperations"),
        CategoryFacet("remoteOperations", "Remote Op", "remoteOperation"),
    ),
    threshold_facets=_THRESHOLD_FACETS,
    search_attributes=("serviceName", "remoteOperation", "serviceOperations"),
)


def layout_for(entity_kind: EntityKind) -> FacetLayout:
    if entity_kind == EntityKind.DEPENDENCY:
        return DEPENDENCY_LAYOUT
    return OPERATION_LAYOUT


@dataclass
class Entity:
    """One filterable row: identity, category attributes and metrics."""
    key: str
    name: str
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    metrics: Optional[EntityMetrics] = None

    def values(self, attribute: str) -> List[str]:
        if attribute == "name":
            return [self.name]
        return self.attributes.get(attribute, [])

    def metric(self, kind: MetricKind) -> Optional[float]:
        if self.metrics is None:
            return None
        return self.metrics.get(kind)


def build_entities(
    entity_kind: EntityKind,
    rows: Iterable[Any],
    record: Optional[MetricRecord] = None,
) -> List[Entity]:
    """
    Join an entity source with aggregated metrics.

    Operation rows are names or ``{"operationName": ...}``; dependency rows
    carry ``serviceName``, ``remoteOperation`` and ``serviceOperations``.
    """
    record = record or {}
    entities = []
    for row in rows:
        if entity_kind == EntityKind.OPERATION:
            name = row if isinstance(row, str) else row.get("operationName") or row.get("name")
            if not name:
                continue
            entities.append(Entity(key=name, name=name, metrics=record.get(name)))
            continue

        service_name = row.get("serviceName")
        if not service_name:
            continue
        remote_operation = row.get("remoteOperation") or ""
        key = dependency_key(service_name, remote_operation)
        attributes = {
            "serviceName": [service_name],
            "remoteOperation": [remote_operation] if remote_operation else [],
            "serviceOperations": list(row.get("serviceOperations") or []),
        }
        entities.append(Entity(key=key, name=service_name, attributes=attributes, metrics=record.get(key)))
    return entities


@dataclass(frozen=True)
class Bounds:
    min: float
    max: float


@dataclass(frozen=True)
class RangeSelection:
    """Selected range plus the bounds it was last rebased against."""
    selected: Optional[Tuple[float, float]] = None
    bounds: Optional[Bounds] = None
    adjusted: bool = False


@dataclass(frozen=True)
class FilterBadge:
    key: str
    category: str
    values: Tuple[str, ...]

    @property
    def label(self) -> str:
        return f"{self.category}: {', '.join(self.values)}"


class SessionPhase(str, Enum):
    INITIAL = "initial"
    LOADED = "loaded"
    FILTERED = "filtered"


@dataclass(frozen=True)
class FilterState:
    search_query: str = ""
    selections: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    thresholds: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    latency_percentile: MetricKind = MetricKind.P99_LATENCY
    # Percentile the latency bounds were last computed for
    bounds_percentile: Optional[MetricKind] = None
    ranges: Mapping[str, RangeSelection] = field(default_factory=dict)
    auto_selected: Optional[str] = None
    has_auto_selected: bool = False
    phase: SessionPhase = SessionPhase.INITIAL

    def range(self, key: str) -> RangeSelection:
        return self.ranges.get(key, RangeSelection())


@dataclass
class FilterResult:
    state: FilterState
    category_filtered: List[Entity]
    filtered: List[Entity]
    bounds: Dict[str, Bounds]
    badges: List[FilterBadge]
    auto_selected: Optional[str]

    def is_active(self, range_key: str) -> bool:
        selection = self.state.range(range_key)
        return is_range_active(selection.selected, self.bounds[range_key])


def initial_state(config: Optional[FilterConfig] = None) -> FilterState:
    config = config or FilterConfig()
    return FilterState(latency_percentile=config.default_percentile)


# Stage 1

def _matches_search(entity: Entity, query: str, layout: FacetLayout) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    return any(
        needle in value.lower()
        for attribute in layout.search_attributes
        for value in entity.values(attribute)
    )


def apply_category_filters(entities: Sequence[Entity], state: FilterState, layout: FacetLayout) -> List[Entity]:
    """Search, category facets (AND across facets) and threshold buckets (OR within a facet)."""
    result = []
    for entity in entities:
        if not _matches_search(entity, state.search_query, layout):
            continue

        passes = True
        for facet in layout.category_facets:
            selected = state.selections.get(facet.key)
            if selected and not set(entity.values(facet.attribute)) & set(selected):
                passes = False
                break
        if not passes:
            continue

        for facet in layout.threshold_facets:
            selected = state.thresholds.get(facet.key)
            if selected and not any(
                matches_threshold(entity.metric(facet.metric), label, facet.buckets)
                for label in selected
            ):
                passes = False
                break

        if passes:
            result.append(entity)
    return result


# Stage 2

def compute_bounds(values: Iterable[Optional[float]], default: Sequence[float]) -> Bounds:
    """
    Floor of the minimum and ceiling of the maximum observed value.

    No usable values gives the default range; a single-valued set is
    widened by one unit so a slider keeps some extent.
    """
    finite = np.array([v for v in values if v is not None and math.isfinite(v)], dtype=float)
    if finite.size == 0:
        return Bounds(float(default[0]), float(default[1]))
    low = float(np.floor(finite.min()))
    high = float(np.ceil(finite.max()))
    return Bounds(low, max(high, low + 1))


def _latency_values(entities: Sequence[Entity], percentile: MetricKind) -> List[Optional[float]]:
    return [e.metric(percentile) for e in entities]


def _request_values(entities: Sequence[Entity]) -> List[float]:
    return [e.metric(MetricKind.REQUEST_COUNT) or 0.0 for e in entities]


# Stage 3

def is_range_active(selected: Optional[Tuple[float, float]], bounds: Bounds) -> bool:
    """A range filters only when it differs from the bounds on either edge."""
    if selected is None:
        return False
    return selected[0] != bounds.min or selected[1] != bounds.max


def apply_range_filters(
    entities: Sequence[Entity],
    state: FilterState,
    bounds: Mapping[str, Bounds],
) -> List[Entity]:
    latency = state.range(LATENCY).selected
    requests = state.range(REQUESTS).selected
    latency_active = is_range_active(latency, bounds[LATENCY])
    requests_active = is_range_active(requests, bounds[REQUESTS])

    result = []
    for entity in entities:
        if latency_active:
            value = entity.metric(state.latency_percentile)
            if value is None or value < latency[0] or value > latency[1]:
                continue
        if requests_active:
            value = entity.metric(MetricKind.REQUEST_COUNT) or 0.0
            if value < requests[0] or value > requests[1]:
                continue
        result.append(entity)
    return result


# Stage 4

def rebase_range(
    selection: RangeSelection,
    bounds: Bounds,
    force: bool = False,
    preserve_adjusted: bool = True,
) -> RangeSelection:
    """
    Move a range onto new bounds.

    Ranges still at their edges follow the data; a range the user moved
    is kept unless ``force`` (percentile change) or preservation is off.
    """
    reset = RangeSelection(selected=(bounds.min, bounds.max), bounds=bounds, adjusted=False)

    if selection.selected is None:
        return reset
    if selection.bounds == bounds and not force:
        return selection
    if force or not (selection.adjusted and preserve_adjusted):
        return reset

    logger.debug(f"Keeping adjusted range {selection.selected} across new bounds {bounds}")
    return replace(selection, bounds=bounds)


# Badges and auto-selection

def _format_range(selected: Tuple[float, float], unit: str) -> str:
    return f"{selected[0]:.0f}-{selected[1]:.0f}{unit}"


def derive_badges(
    state: FilterState,
    bounds: Mapping[str, Bounds],
    layout: FacetLayout,
    config: FilterConfig,
) -> List[FilterBadge]:
    """One badge per facet that differs from its default."""
    badges = []

    if state.search_query.strip():
        badges.append(FilterBadge(SEARCH, "Search", (state.search_query.strip(),)))

    for facet in layout.category_facets:
        selected = state.selections.get(facet.key)
        if selected:
            badges.append(FilterBadge(facet.key, facet.display_name, tuple(selected)))

    for facet in layout.threshold_facets:
        selected = state.thresholds.get(facet.key)
        if selected:
            badges.append(FilterBadge(facet.key, facet.display_name, tuple(selected)))

    for key, display_name, unit in (
        (LATENCY, "Latency", config.latency_unit),
        (REQUESTS, "Requests", config.requests_unit),
    ):
        selected = state.range(key).selected
        if is_range_active(selected, bounds[key]):
            badges.append(FilterBadge(key, display_name, (_format_range(selected, unit),)))

    return badges


def pick_default_selection(entities: Sequence[Entity], health_metric: MetricKind) -> Optional[str]:
    """Entity with the lowest health value; first minimum wins, undefined never wins."""
    best_key = None
    best_value = math.inf
    for entity in entities:
        value = entity.metric(health_metric)
        if value is None or math.isnan(value):
            continue
        if value < best_value:
            best_key, best_value = entity.key, value
    return best_key


def run_pipeline(
    entities: Sequence[Entity],
    state: FilterState,
    layout: FacetLayout = OPERATION_LAYOUT,
    config: Optional[FilterConfig] = None,
    is_loading: bool = False,
) -> FilterResult:
    """Run all four stages and return the result with the next state."""
    config = config or FilterConfig()
    percentile = state.latency_percentile

    category_filtered = apply_category_filters(entities, state, layout)

    bounds = {
        LATENCY: compute_bounds(_latency_values(category_filtered, percentile), config.default_latency_range),
        REQUESTS: compute_bounds(_request_values(category_filtered), config.default_requests_range),
    }

    percentile_changed = state.bounds_percentile is not None and state.bounds_percentile != percentile
    ranges = dict(state.ranges)
    ranges[LATENCY] = rebase_range(
        state.range(LATENCY), bounds[LATENCY],
        force=percentile_changed, preserve_adjusted=config.preserve_adjusted_ranges,
    )
    ranges[REQUESTS] = rebase_range(
        state.range(REQUESTS), bounds[REQUESTS],
        preserve_adjusted=config.preserve_adjusted_ranges,
    )
    state = replace(state, ranges=ranges, bounds_percentile=percentile, phase=SessionPhase.FILTERED)

    filtered = apply_range_filters(category_filtered, state, bounds)

    if not state.has_auto_selected and not is_loading and filtered:
        selected = pick_default_selection(filtered, config.health_metric)
        if selected is not None:
            state = replace(state, auto_selected=selected, has_auto_selected=True)

    return FilterResult(
        state=state,
        category_filtered=category_filtered,
        filtered=filtered,
        bounds=bounds,
        badges=derive_badges(state, bounds, layout, config),
        auto_selected=state.auto_selected,
    )


# Facet mutations

def set_search_query(state: FilterState, query: str) -> FilterState:
    return replace(state, search_query=query)


def select_values(state: FilterState, facet_key: str, values: Iterable[str]) -> FilterState:
    selections = dict(state.selections)
    values = tuple(dict.fromkeys(values))
    if values:
        selections[facet_key] = values
    else:
        selections.pop(facet_key, None)
    return replace(state, selections=selections)


def toggle_value(state: FilterState, facet_key: str, value: str) -> FilterState:
    current = list(state.selections.get(facet_key, ()))
    if value in current:
        current.remove(value)
    else:
        current.append(value)
    return select_values(state, facet_key, current)


def set_thresholds(state: FilterState, facet_key: str, labels: Iterable[str]) -> FilterState:
    thresholds = dict(state.thresholds)
    labels = tuple(dict.fromkeys(labels))
    if labels:
        thresholds[facet_key] = labels
    else:
        thresholds.pop(facet_key, None)
    return replace(state, thresholds=thresholds)


def set_latency_percentile(state: FilterState, percentile: MetricKind) -> FilterState:
    if percentile not in LATENCY_KINDS:
        raise ValueError(f"Not a latency percentile: {percentile}")
    return replace(state, latency_percentile=percentile)


def set_range(state: FilterState, key: str, low: float, high: float) -> FilterState:
    """Explicit user range; marks the range adjusted unless it sits on the bounds."""
    if key not in (LATENCY, REQUESTS):
        raise ValueError(f"Unknown range facet: {key}")
    if low > high:
        raise ValueError(f"Range min {low} is greater than max {high}")
    current = state.range(key)
    adjusted = current.bounds is None or is_range_active((low, high), current.bounds)
    ranges = dict(state.ranges)
    ranges[key] = replace(current, selected=(low, high), adjusted=adjusted)
    return replace(state, ranges=ranges)


def clear_facet(state: FilterState, key: str) -> FilterState:
    """Reset one facet to its default: empty selection, or bounds for a range."""
    if key == SEARCH:
        return set_search_query(state, "")
    if key in (LATENCY, REQUESTS):
        current = state.range(key)
        selected = (current.bounds.min, current.bounds.max) if current.bounds else None
        ranges = dict(state.ranges)
        ranges[key] = replace(current, selected=selected, adjusted=False)
        return replace(state, ranges=ranges)
    if key in state.thresholds:
        return set_thresholds(state, key, ())
    return select_values(state, key, ())


def clear_all(state: FilterState) -> FilterState:
    for key in [SEARCH, LATENCY, REQUESTS, *state.selections.keys(), *state.thresholds.keys()]:
        state = clear_facet(state, key)
    return state


class FilterSession:
    """One filter session per view: Initial -> Loaded -> Filtered."""

    def __init__(self, entity_kind: EntityKind = EntityKind.OPERATION, config: Optional[FilterConfig] = None):
        self.layout = layout_for(entity_kind)
        self.config = config or FilterConfig()
        self.state = initial_state(self.config)
        self.entities: List[Entity] = []
        self.is_loading = False
        self.result: Optional[FilterResult] = None

    @property
    def phase(self) -> SessionPhase:
        return self.state.phase

    def load(self, entities: Sequence[Entity], is_loading: bool = False) -> FilterResult:
        """New data arrived; re-run every stage."""
        self.entities = list(entities)
        self.is_loading = is_loading
        if self.state.phase == SessionPhase.INITIAL:
            self.state = replace(self.state, phase=SessionPhase.LOADED)
        return self._run()

    def apply(self, mutation: Callable[..., FilterState], *args) -> Optional[FilterResult]:
        """Apply a facet mutation; re-runs once data has been loaded."""
        self.state = mutation(self.state, *args)
        if self.state.phase == SessionPhase.INITIAL:
            return None
        return self._run()

    def _run(self) -> FilterResult:
        self.result = run_pipeline(self.entities, self.state, self.layout, self.config, self.is_loading)
        self.state = self.result.state
        return self.result
