"""Bounded in-memory store of per-trace request state."""

from __future__ import annotations

import copy
import threading
from collections import OrderedDict
from datetime import datetime, timezone
from typing import Any, Optional


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class TraceStore:
    """Keeps the most recent ``max_entries`` trace records, oldest evicted first."""

    def __init__(self, max_entries: int = 10000) -> None:
        self._max_entries = max(1, int(max_entries))
        self._lock = threading.Lock()
        self._records: OrderedDict[str, dict[str, Any]] = OrderedDict()

    def upsert(self, trace_id: str, **fields: Any) -> dict[str, Any]:
        with self._lock:
            record = self._records.get(trace_id)
            if record is None:
                record = {"trace_id": trace_id, "created_at": _now_iso()}
                self._records[trace_id] = record
            record.update(copy.deepcopy(fields))
            record["updated_at"] = _now_iso()
            self._records.move_to_end(trace_id)
            while len(self._records) > self._max_entries:
                self._records.popitem(last=False)
            return copy.deepcopy(record)

    def get(self, trace_id: str) -> Optional[dict[str, Any]]:
        with self._lock:
            record = self._records.get(trace_id)
            return copy.deepcopy(record) if record is not None else None

    def __len__(self) -> int:
        with self._lock:
            return len(self._records)
