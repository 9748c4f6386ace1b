"""Knowledge plan resolution and planned-versus-actual KB hit accounting."""

from __future__ import annotations

from typing import Any, Mapping

from ..dict_utils import as_string_list, unique_ordered
from ..scenarios.models import ScenarioSpec
from .models import DEFAULT_MAX_CONTEXT_CHARS, DEFAULT_TOP_K, EffectiveMapping, KnowledgePlan

PLANNED_FALLBACK_SOURCE = "planned_fallback"


def _first_set(*values: Any) -> Any:
    for value in values:
        if value is not None:
            return value
    return None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def resolve_plan(
    scenario: ScenarioSpec,
    sub_type: str,
    mapping: EffectiveMapping | None = None,
) -> KnowledgePlan:
    """Pick KB ids for ``sub_type``; a found mapping overrides scenario values."""

    policy = scenario.knowledge_policy
    mapping = mapping if mapping is not None and mapping.found else None

    top_k = _as_int(_first_set(mapping and mapping.top_k, policy.top_k), DEFAULT_TOP_K)
    rerank = bool(_first_set(mapping and mapping.rerank, policy.rerank, False))
    max_chars = _as_int(
        _first_set(mapping and mapping.max_context_chars, policy.max_context_chars),
        DEFAULT_MAX_CONTEXT_CHARS,
    )
    params = {"top_k": top_k, "rerank": rerank, "max_context_chars": max_chars}

    if not policy.enabled or policy.mode == "off":
        return KnowledgePlan.disabled(policy.mode or "off", **params)

    if policy.mode == "always":
        return KnowledgePlan(
            enabled=True,
            mode="always",
            kb_ids=tuple(as_string_list(policy.default_kb_ids)),
            **params,
        )

    if mapping is not None and mapping.sub_type_kb_map is not None:
        sub_type_map = mapping.sub_type_kb_map
    else:
        sub_type_map = policy.sub_type_kb_map
    selected = as_string_list(sub_type_map.get(sub_type))
    if not selected:
        if mapping is not None and mapping.default_kb_ids is not None:
            selected = list(mapping.default_kb_ids)
        else:
            selected = as_string_list(policy.default_kb_ids)
    return KnowledgePlan(enabled=True, mode="conditional", kb_ids=tuple(selected), **params)


def planned_kb_hits(plan: KnowledgePlan) -> list[dict[str, Any]]:
    """Synthesized hits standing in for retrieval when the executor reports none."""

    if not plan.enabled:
        return []
    if plan.kb_items:
        pairs = [(item.kb_id, item.kb_version) for item in plan.kb_items]
    else:
        pairs = [(kb_id, "unknown") for kb_id in plan.kb_ids]
    return [
        {
            "kb_id": kb_id,
            "kb_version": kb_version or "unknown",
            "chunk_id": f"planned_{idx}",
            "score": 0,
            "source": "knowledge_plan",
        }
        for idx, (kb_id, kb_version) in enumerate(pairs, start=1)
    ]


def kb_plan_actual_diff(plan: KnowledgePlan, debug: Mapping[str, Any] | None) -> dict[str, Any]:
    debug = debug or {}
    planned = unique_ordered(plan.kb_ids)
    hits = debug.get("kb_hits") if isinstance(debug.get("kb_hits"), list) else []
    actual = unique_ordered(
        str(hit["kb_id"]) for hit in hits if isinstance(hit, Mapping) and hit.get("kb_id")
    )
    source = debug.get("kb_hits_source") or None
    planned_set = set(planned)
    actual_set = set(actual)
    is_fallback = source == PLANNED_FALLBACK_SOURCE
    return {
        "planned_kb_ids": planned,
        "actual_kb_ids": actual,
        "kb_hits_source": source,
        "actual_is_planned_fallback": is_fallback,
        "planned_but_not_hit": [kb_id for kb_id in planned if kb_id not in actual_set],
        "hit_but_not_planned": [kb_id for kb_id in actual if kb_id not in planned_set],
        "match": None if is_fallback else planned_set == actual_set,
    }
