"""Per-request execution policy derived from request options and the scenario."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from .models import ExecutionRequest
from .scenarios.models import ScenarioSpec

QUALITY_TIERS = ("fast", "balanced", "strict")
DEFAULT_CONFIDENCE_THRESHOLD = 0.7
DEFAULT_TOTAL_LATENCY_MS = 8000


@dataclass(frozen=True)
class ExecutionPolicy:
    quality_tier: str
    confidence_threshold: float
    max_retries: int
    strict_output_validation: bool
    total_latency_budget_ms: int
    stage_budget_ms: dict[str, int] = field(default_factory=dict)
    timeout_strategy: str = "return_best_effort"

    def to_dict(self) -> dict[str, Any]:
        return {
            "quality_tier": self.quality_tier,
            "confidence_threshold": self.confidence_threshold,
            "max_retries": self.max_retries,
            "strict_output_validation": self.strict_output_validation,
            "total_latency_budget_ms": self.total_latency_budget_ms,
            "stage_budget_ms": dict(self.stage_budget_ms),
            "timeout_strategy": self.timeout_strategy,
        }


def resolve_quality_tier(request: ExecutionRequest, scenario: ScenarioSpec) -> str:
    requested = request.options.quality_tier
    if requested in QUALITY_TIERS:
        return requested
    if "balanced" in scenario.quality_policy.quality_tiers:
        return "balanced"
    return "fast"


def derive_policy(request: ExecutionRequest, scenario: ScenarioSpec) -> ExecutionPolicy:
    quality = scenario.quality_policy
    tier_name = resolve_quality_tier(request, scenario)
    tier = quality.quality_tiers.get(tier_name)

    threshold = tier.confidence_threshold if tier else None
    if not threshold:
        threshold = quality.confidence_threshold or DEFAULT_CONFIDENCE_THRESHOLD

    max_retries = tier.max_retries if tier and tier.max_retries is not None else None
    if max_retries is None:
        max_retries = quality.max_retries if quality.max_retries is not None else 0

    scenario_budget = scenario.latency_budget.total_ms or DEFAULT_TOTAL_LATENCY_MS
    requested_budget = request.options.latency_budget_ms or 0
    if requested_budget > 0:
        total_budget = min(requested_budget, scenario_budget)
    else:
        total_budget = scenario_budget

    return ExecutionPolicy(
        quality_tier=tier_name,
        confidence_threshold=float(threshold),
        max_retries=max(0, int(max_retries)),
        strict_output_validation=bool(quality.strict_output_validation),
        total_latency_budget_ms=int(total_budget),
        stage_budget_ms=dict(scenario.latency_budget.stage_budget_ms),
        timeout_strategy=scenario.latency_budget.on_timeout or "return_best_effort",
    )
