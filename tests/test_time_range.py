"""Tests for time-range resolution."""
import pytest

from apm_metrics.time_range import instant_window, parse_time_expression, resolve_time_range

NOW = 1_700_000_000


def test_relative_expressions():
    assert parse_time_expression("now", NOW) == NOW
    assert parse_time_expression("now-15m", NOW) == NOW - 900
    assert parse_time_expression("now - 2h", NOW) == NOW - 7200
    assert parse_time_expression("now-7d", NOW) == NOW - 7 * 86400
    assert parse_time_expression("now-1w", NOW) == NOW - 604800


def test_absolute_expressions():
    assert parse_time_expression("2024-01-01T00:00:00Z", NOW) == 1704067200
    assert parse_time_expression("2024-01-01T00:00:00", NOW) == 1704067200
    assert parse_time_expression(1704067200, NOW) == 1704067200
    assert parse_time_expression(1704067200000, NOW) == 1704067200
    assert parse_time_expression("1704067200", NOW) == 1704067200


def test_invalid_expressions():
    for expression in ("later", "now-5y", "", True):
        with pytest.raises(ValueError):
            parse_time_expression(expression, NOW)


def test_resolve_time_range():
    assert resolve_time_range("now-1h", "now", NOW) == (NOW - 3600, NOW)

    with pytest.raises(ValueError):
        resolve_time_range("now", "now-1h", NOW)


def test_instant_window():
    assert instant_window(300, NOW) == (NOW - 300, NOW)


def test_infinite_epoch_rejected():
    for expression in ("inf", float("inf"), "-inf"):
        with pytest.raises(ValueError):
            parse_time_expression(expression, NOW)
