"""Tests for single-value, aggregate and edge extraction."""
from apm_metrics.response_utils import (
    calculate_average,
    calculate_sum,
    extract_aggregated_data,
    extract_edge_data,
    extract_single_value,
    parse_edge_key,
)
from apm_metrics.series import DataPoint


def instant_frame(rows):
    return {"fields": [], "meta": {"instantData": {"rows": rows}}}


def test_single_value_from_data_frame():
    response = {
        "fields": [
            {"name": "Time", "values": [1000, 2000]},
            {"name": "Value", "values": [3, 4]},
        ]
    }
    assert extract_single_value(response) == 4.0


def test_single_value_from_instant_rows():
    response = {"meta": {"instantData": {"rows": [{"Time": 1000, "Value": "12.5"}]}}}
    assert extract_single_value(response) == 12.5


def test_single_value_from_label_keyed():
    response = {"data": {"result": [{"metric": {}, "value": [1, "42"]}]}}
    assert extract_single_value(response) == 42.0


def test_single_value_defaults_to_zero():
    assert extract_single_value(None) == 0.0
    assert extract_single_value({"data": {"result": []}}) == 0.0
    assert extract_single_value({"data": {"result": [{"value": [1, "NaN"]}]}}) == 0.0


def test_aggregated_data_from_data_frame_skips_nan():
    response = {
        "fields": [
            {"name": "Time", "values": [1000, 2000, 3000]},
            {"name": "Value", "values": [1, "NaN", 3]},
        ]
    }
    assert extract_aggregated_data(response) == [DataPoint(1000, 1.0), DataPoint(3000, 3.0)]


def test_aggregated_data_from_label_keyed_keeps_seconds():
    response = {"data": {"result": [{"metric": {}, "values": [[10, "1"], [20, "2"]]}]}}
    assert extract_aggregated_data(response) == [DataPoint(10, 1.0), DataPoint(20, 2.0)]


def test_parse_edge_key():
    label = '{service="ad",environment="generic:default",remoteService="frontend"}'
    assert parse_edge_key(label) == "ad::generic:default->frontend"
    assert parse_edge_key('{service="ad"}') is None


def test_edge_data_from_data_frame_keeps_max():
    response = {
        "fields": [
            {"name": "Series", "values": [
                '{service="ad",remoteService="frontend"}',
                '{service="ad",remoteService="frontend"}',
                '{service="cart"}',
            ]},
            {"name": "Value", "values": [2, 5, 9]},
        ]
    }
    assert extract_edge_data(response) == {"ad::generic:default->frontend": 5.0}


def test_edge_data_from_instant_rows_and_label_keyed():
    rows = instant_frame([
        {"service": "cart", "environment": "eks:prod", "remoteService": "redis", "Value": "3"},
    ])
    assert extract_edge_data(rows) == {"cart::eks:prod->redis": 3.0}

    result = {"data": {"result": [
        {"metric": {"service": "cart", "remoteService": "db"}, "values": [[1, "1"], [2, "6"]]},
    ]}}
    assert extract_edge_data(result) == {"cart::generic:default->db": 6.0}


def test_average_and_sum_ignore_non_finite():
    points = [DataPoint(1, 2.0), DataPoint(2, float("nan")), DataPoint(3, 4.0), DataPoint(4, float("inf"))]
    assert calculate_average(points) == 3.0
    assert calculate_sum(points) == 6.0
    assert calculate_average([]) == 0.0
    assert calculate_sum([]) == 0.0


def test_infinite_values_become_zero_or_are_skipped():
    assert extract_single_value({"data": {"result": [{"value": [1, "+Inf"]}]}}) == 0.0

    response = {
        "fields": [
            {"name": "Time", "values": [1000, 2000]},
            {"name": "Value", "values": ["+Inf", 2]},
        ]
    }
    assert extract_aggregated_data(response) == [DataPoint(2000, 2.0)]
