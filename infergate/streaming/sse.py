"""Server-Sent Events wire format."""

from __future__ import annotations

import json
from typing import Any


def format_sse(event: str, data: Any) -> str:
    payload = json.dumps(data, ensure_ascii=False, separators=(",", ":"), default=str)
    return f"event: {event}\ndata: {payload}\n\n"


def retry_hint(retry_ms: int) -> str:
    return f"retry: {int(retry_ms)}\n\n"
