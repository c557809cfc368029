"""Tests for response normalization across the three wire formats."""
import math

from apm_metrics.config import ChartConfig
from apm_metrics.normalizer import (
    ResponseShape,
    create_normalizer,
    detect_shape,
    latest_value,
    normalize,
    parse_timestamp_ms,
    parse_value,
)
from apm_metrics.series import DEFAULT_PALETTE, DataPoint


def columnar(times, labels, values):
    return {
        "type": "data_frame",
        "fields": [
            {"name": "Time", "values": times},
            {"name": "Series", "values": labels},
            {"name": "Value", "values": values},
        ],
    }


def test_columnar_nan_dropped():
    """One NaN observation contributes nothing and leaves the rest intact."""
    response = columnar([1000, 2000], ["a", "a"], [5, float("nan")])

    series = normalize(response)

    assert len(series) == 1
    assert series[0].name == "a"
    assert series[0].points == [DataPoint(1000, 5.0)]


def test_columnar_points_sorted_and_grouped():
    response = columnar(
        [3000, 1000, 2000],
        ['{operation="GET /cart"}', '{operation="GET /cart"}', '{operation="POST /cart"}'],
        [3, 1, 2],
    )

    series = normalize(response)

    assert [s.name for s in series] == ["GET /cart", "POST /cart"]
    assert [p.timestamp for p in series[0].points] == [1000, 3000]
    assert [p.value for p in series[0].points] == [1.0, 3.0]


def test_columnar_missing_series_field_uses_placeholder():
    response = {
        "fields": [
            {"name": "time", "values": [1000, 2000]},
            {"name": "value", "values": [1, 2]},
        ]
    }

    series = normalize(response)

    assert len(series) == 1
    assert series[0].name == "value"
    assert len(series[0].points) == 2


def test_columnar_missing_value_field_is_empty():
    response = {"fields": [{"name": "Time", "values": [1000]}]}
    assert normalize(response) == []


def test_tabular_labels_and_iso_timestamps():
    response = {
        "schema": [{"name": "@timestamp"}, {"name": "service"}, {"name": "value"}],
        "datarows": [
            ["2024-01-01T00:01:00Z", "cart", "2.5"],
            ["2024-01-01T00:00:00Z", "cart", 1.5],
            ["2024-01-01T00:02:00Z", "cart", "not-a-number"],
        ],
    }

    series = normalize(response)

    assert detect_shape(response) == ResponseShape.TABULAR
    assert len(series) == 1
    assert series[0].name == "cart"
    assert [p.value for p in series[0].points] == [1.5, 2.5]
    assert series[0].points[0].timestamp == 1704067200000


def test_tabular_nan_dropped():
    response = {
        "schema": [{"name": "timestamp"}, {"name": "method"}, {"name": "Value"}],
        "datarows": [[1000, "GET", "NaN"], [2000, "GET", 4]],
    }

    series = normalize(response)

    assert series[0].points == [DataPoint(2000, 4.0)]


def test_label_keyed_seconds_scaled_to_millis():
    response = {
        "status": "success",
        "data": {
            "resultType": "matrix",
            "result": [
                {
                    "metric": {"operation": "GET /"},
                    "values": [[1700000000, "1"], [1700000060, "NaN"], [1700000120, "3"]],
                }
            ],
        },
    }

    series = normalize(response)

    assert detect_shape(response) == ResponseShape.LABEL_KEYED
    assert series[0].name == "GET /"
    assert series[0].points == [DataPoint(1700000000000, 1.0), DataPoint(1700000120000, 3.0)]


def test_label_keyed_bare_list_with_labels_key():
    response = [
        {"labels": {"remoteService": "payments"}, "values": [[1.5, "7"]]},
        {"labels": {"remoteService": "inventory"}, "value": [2, "8"]},
    ]

    series = normalize(response)

    assert [s.name for s in series] == ["payments", "inventory"]
    assert series[0].points == [DataPoint(1500, 7.0)]
    assert series[1].points == [DataPoint(2000, 8.0)]


def test_label_field_overrides_priority():
    response = [{"metric": {"operation": "GET /", "instance": "i-1"}, "values": [[1, "1"]]}]

    assert normalize(response)[0].name == "GET /"
    assert normalize(response, label_field="instance")[0].name == "i-1"


def test_unknown_shape_is_empty():
    assert normalize({"unexpected": True}) == []
    assert normalize(None) == []
    assert normalize("garbage") == []
    assert detect_shape(42) == ResponseShape.UNKNOWN


def test_colors_cycle_after_palette_exhausted():
    names = [f"s{i}" for i in range(len(DEFAULT_PALETTE) + 1)]
    response = columnar(list(range(len(names))), names, [1] * len(names))

    series = normalize(response)

    colors = [s.color for s in series]
    assert len(set(colors[:len(DEFAULT_PALETTE)])) == len(DEFAULT_PALETTE)
    assert colors[-1] == colors[0]
    assert [s.color_index for s in series] == list(range(len(names)))


def test_custom_palette():
    config = ChartConfig(palette=["#000000", "#ffffff"])
    response = columnar([1, 2, 3], ["a", "b", "c"], [1, 2, 3])

    series = normalize(response, config=config)

    assert [s.color for s in series] == ["#000000", "#ffffff", "#000000"]


def test_dropped_points_counted():
    normalizer = create_normalizer(ResponseShape.COLUMNAR)
    normalizer.normalize(columnar([1, 2, None], ["a", "a", "a"], [None, "x", 1]))

    assert normalizer.dropped_points == 3


def test_latest_value():
    series = normalize(columnar([1000, 2000], ["a", "a"], [5, 9]))

    assert latest_value(series) == 9.0
    assert latest_value([]) is None


def test_parse_helpers():
    assert parse_value("1.5") == 1.5
    assert math.isnan(parse_value("abc"))
    assert math.isnan(parse_value(None))
    assert parse_timestamp_ms(1000) == 1000
    assert parse_timestamp_ms("1970-01-01T00:00:01Z") == 1000
    assert parse_timestamp_ms("yesterday") is None


def test_infinite_values_dropped():
    response = [{"metric": {"operation": "GET /"}, "values": [[1, "+Inf"], [2, "3"], [3, "-Inf"]]}]

    series = normalize(response)

    assert series[0].points == [DataPoint(2000, 3.0)]


def test_infinite_timestamp_dropped_without_losing_other_rows():
    response = columnar([float("inf"), 1000], ["a", "a"], [1, 5])

    series = normalize(response)

    assert len(series) == 1
    assert series[0].points == [DataPoint(1000, 5.0)]


def test_infinite_timestamp_strings():
    assert parse_timestamp_ms("inf") is None
    assert parse_timestamp_ms("-Infinity") is None
    assert parse_timestamp_ms(float("nan")) is None
    assert parse_timestamp_ms("2500") == 2500

    response = [{"metric": {"operation": "GET /"}, "values": [["Infinity", "1"], [4, "2"]]}]
    assert normalize(response)[0].points == [DataPoint(4000, 2.0)]
