"""Workflow routing and prompt guidance for a classified sub-type."""

from __future__ import annotations

from typing import Any, Optional

from ..dict_utils import as_string_list
from ..scenarios.models import ScenarioSpec, SubTypeProfile


def resolve_sub_type_profile(scenario: ScenarioSpec, sub_type: str | None) -> Optional[SubTypeProfile]:
    if not sub_type:
        return None
    return scenario.sub_type_profiles.get(sub_type)


def resolve_workflow_id(scenario: ScenarioSpec, sub_type: str | None) -> Optional[str]:
    """Profile workflow, then the binding's sub-type route, then the main workflow."""

    profile = resolve_sub_type_profile(scenario, sub_type)
    if profile is not None and profile.workflow_id and profile.workflow_id.strip():
        return profile.workflow_id.strip()
    binding = scenario.workflow_binding
    if sub_type and binding.sub_type_routes.get(sub_type):
        return binding.sub_type_routes[sub_type]
    return binding.workflow_id or None


def build_prompt_plan(scenario: ScenarioSpec, sub_type: str | None) -> dict[str, Any]:
    name = sub_type or "unknown"
    profile = resolve_sub_type_profile(scenario, sub_type)
    if profile is None:
        return {
            "sub_type": name,
            "display_name": name,
            "solving_steps": [],
            "prompt_focus": [],
            "answer_constraints": [],
        }
    guidance = profile.workflow_guidance
    display_name = (profile.display_name or "").strip() or name
    return {
        "sub_type": name,
        "display_name": display_name,
        "solving_steps": as_string_list(guidance.solving_steps),
        "prompt_focus": as_string_list(guidance.prompt_focus),
        "answer_constraints": as_string_list(guidance.answer_constraints),
    }


def classifier_hints(scenario: ScenarioSpec) -> dict[str, dict[str, Any]]:
    hints: dict[str, dict[str, Any]] = {}
    for sub_type, profile in scenario.sub_type_profiles.items():
        profile_hints = profile.classifier_hints
        hints[sub_type] = {
            "keywords": as_string_list(profile_hints.keywords),
            "require_images": bool(profile_hints.require_images),
            "prefer_images": bool(profile_hints.prefer_images),
        }
    return hints
