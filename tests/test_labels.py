"""Tests for series name derivation."""
from apm_metrics.labels import format_label_map, label_for, parse_label_string, resolve_label


def test_requested_field_from_label_string():
    raw = '{remoteService="cart", operation="AddItem"}'
    assert label_for(raw, requested_field="remoteService") == "cart"
    assert label_for(raw, requested_field="operation") == "AddItem"


def test_priority_order():
    raw = '{instance="i-1", operation="AddItem", service="frontend"}'
    # operation ranks above service and instance
    assert label_for(raw) == "AddItem"


def test_missing_requested_field_falls_back_to_priority():
    assert label_for('{service="frontend"}', requested_field="remoteService") == "frontend"


def test_single_label_fallback():
    assert label_for('{zone="us-east-1a"}') == "us-east-1a"
    assert label_for({"zone": "us-east-1a"}) == "us-east-1a"


def test_unresolvable_string_returned_unchanged():
    raw = '{zone="a", rack="b"}'
    assert label_for(raw) == raw
    assert label_for("plain-name") == "plain-name"


def test_unresolvable_map_is_formatted():
    assert label_for({"zone": "a", "rack": "b"}) == '{zone="a", rack="b"}'


def test_empty_inputs_use_placeholder():
    assert label_for("") == "value"
    assert label_for(None) == "value"
    assert label_for({}) == "value"
    assert label_for("", placeholder="series") == "series"


def test_parse_label_string():
    assert parse_label_string('{a="1", b="2"}') == {"a": "1", "b": "2"}
    assert parse_label_string("no labels here") == {}
    assert format_label_map({"a": "1"}) == '{a="1"}'


def test_resolve_label_custom_priority():
    labels = {"job": "api", "method": "GET"}
    assert resolve_label(labels, priority=["job"]) == "api"
    assert resolve_label(labels, priority=[]) is None
