"""Small helpers for loosely shaped JSON documents."""

from __future__ import annotations

from typing import Any, Iterable, Mapping


def deep_merge(base: Mapping[str, Any] | None, override: Mapping[str, Any] | None) -> dict[str, Any]:
    """Merge ``override`` onto ``base``; nested mappings merge, everything else replaces."""

    out: dict[str, Any] = dict(base or {})
    if not isinstance(override, Mapping):
        return out
    for key, value in override.items():
        if isinstance(value, Mapping):
            current = out.get(key)
            out[key] = deep_merge(current if isinstance(current, Mapping) else {}, value)
            continue
        out[key] = value
    return out


def as_string_list(value: Any) -> list[str]:
    """Trimmed, non-empty strings from a list; anything else yields ``[]``."""

    if not isinstance(value, (list, tuple)):
        return []
    out: list[str] = []
    for item in value:
        if isinstance(item, str) and item.strip():
            out.append(item.strip())
    return out


def unique_ordered(values: Iterable[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for value in values:
        if value in seen:
            continue
        seen.add(value)
        out.append(value)
    return out
