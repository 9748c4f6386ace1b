"""Generic structural checks for parsed JSON values."""

from __future__ import annotations

import math
import re
from typing import Any, Optional

from .rules import StructuralRule

_FENCE = re.compile(r"^```(?:json)?\s*([\s\S]*?)\s*```$", re.IGNORECASE)
_MISSING = object()


def strip_json_fence(text: str) -> str:
    trimmed = text.strip()
    match = _FENCE.match(trimmed)
    if match and match.group(1):
        return match.group(1).strip()
    return trimmed


def get_by_path(root: Any, path: str) -> Any:
    """Dot-path lookup; returns the ``_MISSING`` sentinel when a segment does not resolve."""

    current = root
    for part in (segment.strip() for segment in str(path or "").split(".")):
        if not part:
            continue
        if isinstance(current, dict):
            if part not in current:
                return _MISSING
            current = current[part]
        elif isinstance(current, list) and part.isdigit() and int(part) < len(current):
            current = current[int(part)]
        else:
            return _MISSING
    return current


def is_missing(value: Any) -> bool:
    return value is _MISSING


def matches_type(value: Any, expected: str) -> bool:
    if expected == "string":
        return isinstance(value, str)
    if expected == "number":
        return (
            isinstance(value, (int, float))
            and not isinstance(value, bool)
            and math.isfinite(value)
        )
    if expected == "boolean":
        return isinstance(value, bool)
    if expected == "array":
        return isinstance(value, list)
    if expected == "object":
        return isinstance(value, dict)
    return True


def check_structure(value: Any, rule: StructuralRule) -> Optional[str]:
    """Return the first violation reason, or ``None`` when ``value`` satisfies ``rule``."""

    if rule.root_type == "object" and not isinstance(value, dict):
        return "json_root_type_mismatch:object"
    if rule.root_type == "array" and not isinstance(value, list):
        return "json_root_type_mismatch:array"

    for path in rule.required_fields:
        if is_missing(get_by_path(value, path)):
            return f"missing_json_field:{path}"

    for path, raw_min in rule.array_min_items.items():
        try:
            minimum = float(raw_min)
        except (TypeError, ValueError):
            continue
        if not math.isfinite(minimum) or minimum < 0:
            continue
        found = get_by_path(value, path)
        if not isinstance(found, list) or len(found) < minimum:
            return f"json_array_too_short:{path}"

    for path, expected in rule.field_types.items():
        if not isinstance(expected, str) or not expected.strip():
            continue
        found = get_by_path(value, path)
        if is_missing(found):
            continue
        if not matches_type(found, expected.strip()):
            return f"json_field_type_mismatch:{path}:{expected}"
    return None
