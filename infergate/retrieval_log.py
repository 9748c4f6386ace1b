"""Retrieval plan and outcome records routed to the retrieval log sink."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from .logging_utils import RETRIEVAL_COMPONENT, get_logger


class RetrievalLogger:
    """Emits one structured record per retrieval plan and per retrieval outcome.

    Records carry the ``retrieval`` component so ``configure_logging`` can route
    them to the dedicated JSONL sink.
    """

    def __init__(self, *, env: str) -> None:
        self._env = env
        self._log = get_logger(RETRIEVAL_COMPONENT)

    def _emit(self, event: str, fields: dict[str, Any]) -> dict[str, Any]:
        record = {
            **fields,
            "event": event,
            "env": self._env,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        self._log.bind(retrieval=record).info(
            "{} trace={} sub_type={} retry={}",
            event,
            fields.get("trace_id"),
            fields.get("sub_type"),
            fields.get("retry_index"),
        )
        return record

    def log_plan(self, **fields: Any) -> dict[str, Any]:
        return self._emit("retrieval_plan", fields)

    def log_outcome(self, **fields: Any) -> dict[str, Any]:
        return self._emit("retrieval_outcome", fields)
