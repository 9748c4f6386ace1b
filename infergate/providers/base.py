"""Workflow provider contract."""

from __future__ import annotations

import abc
from dataclasses import dataclass, field
from typing import Any, Optional


@dataclass(frozen=True)
class WorkflowSubmission:
    workflow_id: Optional[str]
    inputs: dict[str, Any]
    files: list[dict[str, Any]] = field(default_factory=list)
    user_tag: str = "infergate"
    timeout_ms: Optional[int] = None
    trace_id: str = ""


@dataclass
class WorkflowOutput:
    answer: Any
    evidence: list[Any] = field(default_factory=list)
    confidence: Any = None
    sub_type: Optional[str] = None
    raw_outputs: dict[str, Any] = field(default_factory=dict)
    kb_hits: list[dict[str, Any]] = field(default_factory=list)
    kb_hits_source: Optional[str] = None
    model_path: list[str] = field(default_factory=list)
    latency_ms: float = 0.0


class WorkflowProvider(abc.ABC):
    """Executes one workflow pass and returns its raw output.

    Implementations raise :class:`~infergate.errors.UpstreamError` (or its
    timeout subclass) for transport, timeout and upstream failures.
    """

    name: str = "provider"
    is_remote: bool = False

    @property
    @abc.abstractmethod
    def timeout_ms(self) -> Optional[int]:
        """Configured upper bound for one call; ``None`` when unbounded."""

    @abc.abstractmethod
    async def submit(self, submission: WorkflowSubmission) -> WorkflowOutput:
        """Run ``submission`` and return the workflow output."""
