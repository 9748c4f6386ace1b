"""Declarative output constraint rules."""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from ..dict_utils import as_string_list
from ..scenarios.models import OutputConstraintRule, ScenarioSpec

AnswerMode = Literal["single_option", "multi_option", "number_or_option", "text_or_option", "json"]
DEFAULT_MODE = "text_or_option"


class StructuralRule(BaseModel):
    """Shape requirements for a parsed JSON answer."""

    model_config = ConfigDict(frozen=True)

    root_type: Optional[str] = None
    required_fields: list[str] = Field(default_factory=list)
    array_min_items: dict[str, Any] = Field(default_factory=dict)
    field_types: dict[str, Any] = Field(default_factory=dict)


class ConstraintRule(BaseModel):
    """Fully resolved constraints for one sub-type."""

    model_config = ConfigDict(frozen=True)

    mode: str = DEFAULT_MODE
    min_evidence: int = 1
    require_evidence: bool = True
    enforce_sub_type_match: bool = True
    structure: StructuralRule = StructuralRule()

    def debug_summary(self) -> dict[str, Any]:
        return {
            "ok": True,
            "mode": self.mode,
            "min_evidence": self.min_evidence,
            "require_evidence": self.require_evidence,
            "json_required_fields": list(self.structure.required_fields),
        }


def _pick(field_name: str, *layers: OutputConstraintRule) -> Any:
    for layer in layers:
        value = getattr(layer, field_name)
        if value is not None:
            return value
    return None


def _as_int(value: Any, default: int) -> int:
    try:
        return int(value)
    except (TypeError, ValueError):
        return default


def resolve_constraint_rule(scenario: ScenarioSpec, sub_type: str) -> ConstraintRule:
    """Resolve each field independently: sub-type rule, scenario defaults, built-in."""

    constraints = scenario.output_constraints
    if constraints is None:
        return ConstraintRule()
    rule = constraints.sub_type_rules.get(sub_type) or OutputConstraintRule()
    defaults = constraints.defaults

    mode = _pick("mode", rule, defaults)
    min_evidence = _pick("min_evidence", rule, defaults)
    require_evidence = _pick("require_evidence", rule, defaults)
    enforce = _pick("enforce_sub_type_match", rule, defaults)
    root_type = _pick("json_root_type", rule, defaults)
    required = _pick("json_required_fields", rule, defaults)
    min_items = _pick("json_array_min_items", rule, defaults)
    field_types = _pick("json_field_types", rule, defaults)

    return ConstraintRule(
        mode=mode if isinstance(mode, str) and mode else DEFAULT_MODE,
        min_evidence=_as_int(min_evidence, 1) if min_evidence is not None else 1,
        require_evidence=bool(require_evidence) if require_evidence is not None else True,
        enforce_sub_type_match=bool(enforce) if enforce is not None else True,
        structure=StructuralRule(
            root_type=root_type if isinstance(root_type, str) and root_type else None,
            required_fields=as_string_list(required),
            array_min_items=dict(min_items or {}),
            field_types=dict(field_types or {}),
        ),
    )
