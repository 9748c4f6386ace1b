"""Trace identifier helpers."""

from __future__ import annotations

import secrets
import string
import time

_ALPHABET = string.digits + string.ascii_lowercase
MAX_TRACE_ID_LENGTH = 128


def _base36(value: int) -> str:
    if value <= 0:
        return "0"
    digits: list[str] = []
    while value:
        value, rem = divmod(value, 36)
        digits.append(_ALPHABET[rem])
    return "".join(reversed(digits))


def generate_trace_id() -> str:
    stamp = _base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(8))
    return f"trc_{stamp}_{suffix}"


def normalize_trace_id(value: object) -> str | None:
    """Return a caller-supplied trace id when it is usable, else ``None``."""

    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed or len(trimmed) > MAX_TRACE_ID_LENGTH:
        return None
    return trimmed
