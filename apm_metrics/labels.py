"""Series naming from label maps and embedded label strings."""
from typing import Dict, Mapping, Optional, Sequence, Union
import re

from apm_metrics.config import DEFAULT_LABEL_PRIORITY

LABEL_PAIR_PATTERN = re.compile(r'(\w+)="([^"]+)"')

PLACEHOLDER_NAME = "value"


def parse_label_string(label_string: str) -> Dict[str, str]:
    """
    Parse every ``key="value"`` pair found in a label string.

    Args:
        label_string: Raw series identifier, e.g. '{service="cart", operation="Add"}'

    Returns:
        Label map in order of appearance (later duplicates win)
    """
    if not label_string:
        return {}
    return {key: value for key, value in LABEL_PAIR_PATTERN.findall(label_string)}


def format_label_map(labels: Mapping[str, str]) -> str:
    """Render a label map back into the ``{k="v", ...}`` form."""
    pairs = ", ".join(f'{k}="{v}"' for k, v in labels.items())
    return "{" + pairs + "}"


def resolve_label(
    labels: Mapping[str, str],
    requested_field: Optional[str] = None,
    priority: Sequence[str] = DEFAULT_LABEL_PRIORITY,
) -> Optional[str]:
    """
    Pick a display value from a label map.

    Requested field first, then the priority list, then the only label
    when there is exactly one. Returns None when nothing resolves.
    """
    if requested_field and labels.get(requested_field):
        return str(labels[requested_field])

    for label_name in priority:
        if labels.get(label_name):
            return str(labels[label_name])

    if len(labels) == 1:
        value = next(iter(labels.values()))
        if value not in (None, ""):
            return str(value)

    return None


def label_for(
    raw: Union[str, Mapping[str, str], None],
    requested_field: Optional[str] = None,
    priority: Sequence[str] = DEFAULT_LABEL_PRIORITY,
    placeholder: str = PLACEHOLDER_NAME,
) -> str:
    """
    Derive a human-readable series name.

    Accepts either a pre-parsed label map or a string carrying zero or more
    ``key="value"`` pairs. Unresolvable strings come back unchanged; only
    empty input falls back to the placeholder.
    """
    if raw is None:
        return placeholder

    if isinstance(raw, Mapping):
        if not raw:
            return placeholder
        resolved = resolve_label(raw, requested_field, priority)
        return resolved if resolved is not None else format_label_map(raw)

    raw_string = str(raw)
    if not raw_string or raw_string == placeholder:
        return raw_string or placeholder

    resolved = resolve_label(parse_label_string(raw_string), requested_field, priority)
    return resolved if resolved is not None else raw_string
