"""Resolution of relative and absolute time-range expressions."""
from datetime import datetime, timezone
from typing import Optional, Tuple, Union
import math
import re
import time

RELATIVE_PATTERN = re.compile(r"^now(?:\s*-\s*(\d+)\s*([smhdw]))?$")

UNIT_SECONDS = {
    "s": 1,
    "m": 60,
    "h": 3600,
    "d": 86400,
    "w": 604800,
}


def parse_time_expression(expression: Union[str, int, float], now: Optional[float] = None) -> int:
    """
    Convert a time expression to epoch seconds.

    Supported: ``now``, ``now-15m`` style offsets, ISO-8601 strings, and
    epoch numbers (values above 1e11 are treated as millis).
    """
    if now is None:
        now = time.time()

    if isinstance(expression, bool):
        raise ValueError(f"Invalid time expression: {expression!r}")

    if isinstance(expression, (int, float)):
        return _from_epoch(expression)

    text = str(expression).strip()
    match = RELATIVE_PATTERN.match(text)
    if match:
        amount, unit = match.groups()
        offset = int(amount) * UNIT_SECONDS[unit] if amount else 0
        return int(now) - offset

    try:
        return _from_epoch(float(text))
    except ValueError:
        pass

    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        raise ValueError(f"Invalid time expression: {expression!r}")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return int(parsed.timestamp())


def resolve_time_range(
    from_: Union[str, int, float],
    to: Union[str, int, float] = "now",
    now: Optional[float] = None,
) -> Tuple[int, int]:
    """Resolve a (from, to) pair into (start, end) epoch seconds."""
    if now is None:
        now = time.time()
    start = parse_time_expression(from_, now)
    end = parse_time_expression(to, now)
    if start > end:
        raise ValueError(f"Time range start {start} is after end {end}")
    return start, end


def instant_window(window_s: int, now: Optional[float] = None) -> Tuple[int, int]:
    """Short trailing window that stands in for an instant query."""
    if now is None:
        now = time.time()
    end = int(now)
    return end - window_s, end


def _from_epoch(value: float) -> int:
    if not math.isfinite(value):
        raise ValueError(f"Invalid epoch time: {value!r}")
    if value > 1e11:
        return int(value / 1000)
    return int(value)
