"""Deterministic in-process stand-in for the workflow executor."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Mapping, Optional

from ..knowledge.models import KnowledgePlan
from ..knowledge.planner import planned_kb_hits
from ..streaming.bus import EventPublisher
from .base import WorkflowOutput, WorkflowProvider, WorkflowSubmission

OFFLINE_STAGES: tuple[tuple[str, int], ...] = (
    ("routing", 20),
    ("retrieval", 45),
    ("reasoning", 75),
    ("postprocess", 95),
)


def offline_confidence(threshold: float, sub_type: str | None) -> float:
    base = threshold - 0.04 if sub_type == "unknown" else threshold + 0.05
    return round(max(0.1, min(0.99, base)), 2)


class OfflineWorkflowProvider(WorkflowProvider):
    """Walks through staged progress and answers ``B`` with one evidence line.

    Confidence sits just above the pass threshold, or just below it for the
    ``unknown`` sub-type so that quality retries stay observable.
    """

    name = "offline"
    is_remote = False

    def __init__(self, bus: Optional[EventPublisher] = None, *, stage_delay_ms: int = 120) -> None:
        self._bus = bus
        self._stage_delay_s = max(0, stage_delay_ms) / 1000.0

    @property
    def timeout_ms(self) -> Optional[int]:
        return None

    def _progress(self, trace_id: str, stage: str, progress: int, message: str) -> None:
        if self._bus is None or not trace_id:
            return
        self._bus.publish(
            trace_id,
            "progress",
            {"trace_id": trace_id, "stage": stage, "progress": progress, "message": message},
        )

    async def submit(self, submission: WorkflowSubmission) -> WorkflowOutput:
        started = time.monotonic()
        trace_id = submission.trace_id
        self._progress(trace_id, "initializing", 5, "pipeline started")
        for stage, progress in OFFLINE_STAGES:
            if self._stage_delay_s:
                await asyncio.sleep(self._stage_delay_s)
            self._progress(trace_id, stage, progress, f"{stage} in progress")

        inputs = submission.inputs
        sub_type = inputs.get("sub_type") or "logic"
        quality = inputs.get("quality") if isinstance(inputs.get("quality"), Mapping) else {}
        threshold = float(quality.get("confidence_threshold") or 0.7)
        knowledge: Any = inputs.get("knowledge")
        plan = KnowledgePlan.from_dict(knowledge if isinstance(knowledge, Mapping) else {})
        provider_tag = str(inputs.get("provider_tag") or "router:offline")

        return WorkflowOutput(
            answer="B",
            evidence=["offline evidence from deterministic stand-in"],
            confidence=offline_confidence(threshold, sub_type),
            sub_type=sub_type,
            raw_outputs={},
            kb_hits=planned_kb_hits(plan),
            kb_hits_source="knowledge_plan",
            model_path=[provider_tag, "solver:offline"],
            latency_ms=round((time.monotonic() - started) * 1000, 1),
        )
