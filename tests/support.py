"""Fakes and builders shared by the test modules."""

from __future__ import annotations

import copy
import json
from pathlib import Path
from typing import Any

from infergate.dict_utils import deep_merge
from infergate.providers.base import WorkflowOutput, WorkflowProvider, WorkflowSubmission
from infergate.scenarios.models import ScenarioSpec

BASE_SCENARIO: dict[str, Any] = {
    "scenario_id": "exam_qa",
    "version": "1",
    "enabled": True,
    "workflow_binding": {
        "provider": "offline",
        "workflow_id": "wf_main",
        "fallback_workflow_id": "wf_fallback",
    },
    "sub_type_profiles": {
        "figure_reasoning": {
            "display_name": "Figure reasoning",
            "classifier_hints": {"keywords": ["图形"], "prefer_images": True, "image_only_default": True},
            "workflow_guidance": {"solving_steps": ["describe panels"]},
        },
        "logic": {
            "display_name": "Logic",
            "classifier_hints": {"keywords": ["premise", "conclusion"]},
        },
    },
    "knowledge_policy": {
        "enabled": True,
        "mode": "conditional",
        "default_kb_ids": ["kb_general"],
        "sub_type_kb_map": {"figure_reasoning": ["kb_figure"], "logic": ["kb_logic"]},
    },
    "quality_policy": {
        "confidence_threshold": 0.7,
        "max_retries": 1,
        "strict_output_validation": True,
        "quality_tiers": {
            "fast": {"confidence_threshold": 0.6, "max_retries": 0},
            "balanced": {"confidence_threshold": 0.7, "max_retries": 1},
            "strict": {"confidence_threshold": 0.85, "max_retries": 2},
        },
    },
    "output_constraints": {
        "defaults": {
            "mode": "single_option",
            "min_evidence": 1,
            "require_evidence": True,
            "enforce_sub_type_match": False,
        }
    },
    "latency_budget": {"total_ms": 10000},
    "input_schema": {"allow_text": True, "allow_images": True, "max_images": 3},
}

DEFAULT_REGISTRY: dict[str, Any] = {
    "version": "7",
    "updated_at": "2026-09-01T00:00:00Z",
    "items": [
        {"kb_id": "kb_general", "status": "active", "kb_version": "g1"},
        {"kb_id": "kb_figure", "status": "active", "kb_version": "f3"},
        {"kb_id": "kb_logic", "status": "active", "kb_version": "l2"},
        {"kb_id": "kb_1", "status": "inactive"},
    ],
}


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingPublisher:
    def __init__(self) -> None:
        self.events: list[tuple[str, str, dict[str, Any]]] = []

    def publish(self, trace_id: str, event_type: str, payload: dict[str, Any]) -> None:
        self.events.append((trace_id, event_type, copy.deepcopy(payload)))

    def stages(self) -> list[str]:
        return [payload.get("stage") for _, kind, payload in self.events if kind == "progress"]

    def types(self) -> list[str]:
        return [kind for _, kind, _ in self.events]


class FakeConnection:
    def __init__(self, *, fail_on_send: bool = False) -> None:
        self.frames: list[str] = []
        self.close_calls = 0
        self._closed = False
        self._fail_on_send = fail_on_send

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, frame: str) -> None:
        if self._fail_on_send:
            raise ConnectionResetError("peer went away")
        self.frames.append(frame)

    def close(self) -> None:
        self.close_calls += 1
        self._closed = True

    def events(self) -> list[str]:
        names = []
        for frame in self.frames:
            for line in frame.splitlines():
                if line.startswith("event: "):
                    names.append(line[len("event: "):])
        return names

    def payloads(self) -> list[dict[str, Any]]:
        out = []
        for frame in self.frames:
            for line in frame.splitlines():
                if line.startswith("data: "):
                    out.append(json.loads(line[len("data: "):]))
        return out


class ScriptedProvider(WorkflowProvider):
    """Replays scripted outputs (or raises scripted errors) one per pass."""

    def __init__(
        self,
        steps: list[Any],
        *,
        name: str = "scripted",
        remote: bool = False,
        timeout_ms: int | None = None,
        clock: FakeClock | None = None,
        advance_s: float = 0.0,
    ) -> None:
        self.name = name
        self.is_remote = remote
        self._steps = list(steps)
        self._timeout_ms = timeout_ms
        self._clock = clock
        self._advance_s = advance_s
        self.submissions: list[WorkflowSubmission] = []

    @property
    def timeout_ms(self) -> int | None:
        return self._timeout_ms

    async def submit(self, submission: WorkflowSubmission) -> WorkflowOutput:
        self.submissions.append(submission)
        if self._clock is not None and self._advance_s:
            self._clock.advance(self._advance_s)
        if not self._steps:
            raise AssertionError("no scripted step left")
        step = self._steps.pop(0) if len(self._steps) > 1 else self._steps[0]
        if isinstance(step, BaseException):
            raise step
        if callable(step):
            return step(submission)
        return copy.deepcopy(step)


def output(answer: Any = "B", confidence: Any = 0.9, **kwargs: Any) -> WorkflowOutput:
    kwargs.setdefault("evidence", ["premise 1 supports B"])
    kwargs.setdefault("model_path", ["provider:test"])
    return WorkflowOutput(answer=answer, confidence=confidence, **kwargs)


def make_scenario(**overrides: Any) -> ScenarioSpec:
    return ScenarioSpec.model_validate(deep_merge(copy.deepcopy(BASE_SCENARIO), overrides))


def write_json(path: Path, payload: Any) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(payload, ensure_ascii=False), encoding="utf-8")
    return path
