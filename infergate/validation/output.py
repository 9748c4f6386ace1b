"""Output contract enforcement for workflow results."""

from __future__ import annotations

import copy
import json
import math
import re
from dataclasses import dataclass
from typing import Any, Optional

from ..dict_utils import as_string_list
from ..scenarios.models import ScenarioSpec
from .rules import ConstraintRule, resolve_constraint_rule
from .structure import check_structure, strip_json_fence

_SINGLE_OPTION = re.compile(r"^[A-Z]$")
_MULTI_OPTION = re.compile(r"^[A-Z]{2,}$")
_NUMBER = re.compile(r"^-?\d+(\.\d+)?%?$")


@dataclass(frozen=True)
class ValidationOutcome:
    ok: bool
    result: Optional[dict[str, Any]] = None
    reason: Optional[str] = None

    @classmethod
    def accept(cls, result: dict[str, Any]) -> "ValidationOutcome":
        return cls(ok=True, result=result)

    @classmethod
    def reject(cls, reason: str) -> "ValidationOutcome":
        return cls(ok=False, reason=reason)


def answer_matches_mode(answer: str, mode: str) -> bool:
    if not answer:
        return False
    if mode == "single_option":
        return bool(_SINGLE_OPTION.match(answer))
    if mode == "multi_option":
        return bool(_MULTI_OPTION.match(answer))
    if mode == "number_or_option":
        return bool(
            _SINGLE_OPTION.match(answer) or _MULTI_OPTION.match(answer) or _NUMBER.match(answer)
        )
    return True


def normalize_confidence(raw: Any) -> Optional[float]:
    if raw is None or isinstance(raw, bool):
        return None
    try:
        value = float(raw)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(value):
        return None
    return round(max(0.0, min(1.0, value)), 2)


class OutputValidator:
    """Checks a pipeline result against the constraints resolved for its sub-type.

    Rejections are returned as :class:`ValidationOutcome` values; nothing here
    raises for a bad result. The input is never mutated: an accepted result is a
    repaired copy with a trimmed evidence list, rounded confidence, the resolved
    sub-type and ``debug.output_validation`` stamped on it.
    """

    def resolve_rule(self, scenario: ScenarioSpec, sub_type: str) -> ConstraintRule:
        return resolve_constraint_rule(scenario, sub_type)

    def validate(
        self,
        scenario: ScenarioSpec,
        sub_type: str | None,
        raw: Any,
    ) -> ValidationOutcome:
        sub_type = sub_type or "unknown"
        rule = self.resolve_rule(scenario, sub_type)

        if not isinstance(raw, dict) or not raw:
            return ValidationOutcome.reject("empty_result")

        out = copy.deepcopy(raw)
        body = out.get("result")
        body = dict(body) if isinstance(body, dict) else {}
        out["result"] = body

        answer = body.get("answer")
        answer = answer.strip() if isinstance(answer, str) else ""

        if rule.mode == "json":
            try:
                parsed = json.loads(strip_json_fence(answer))
            except ValueError:
                return ValidationOutcome.reject("invalid_json_answer")
            violation = check_structure(parsed, rule.structure)
            if violation:
                return ValidationOutcome.reject(violation)
            body["answer"] = json.dumps(parsed, ensure_ascii=False, separators=(",", ":"))
        elif not answer_matches_mode(answer, rule.mode):
            return ValidationOutcome.reject(f"invalid_answer_mode:{rule.mode}")

        evidence = as_string_list(body.get("evidence"))
        if rule.require_evidence and len(evidence) < max(1, rule.min_evidence or 1):
            return ValidationOutcome.reject("insufficient_evidence")
        body["evidence"] = evidence

        confidence = normalize_confidence(body.get("confidence"))
        if confidence is None:
            return ValidationOutcome.reject("invalid_confidence")
        body["confidence"] = confidence

        declared = out.get("sub_type")
        declared = declared.strip() if isinstance(declared, str) else ""
        if rule.enforce_sub_type_match and declared and declared != sub_type:
            return ValidationOutcome.reject(f"sub_type_mismatch:{declared}!={sub_type}")
        if not declared:
            out["sub_type"] = sub_type

        debug = out.get("debug")
        debug = dict(debug) if isinstance(debug, dict) else {}
        debug["output_validation"] = rule.debug_summary()
        out["debug"] = debug

        metrics = out.get("metrics")
        metrics = dict(metrics) if isinstance(metrics, dict) else {}
        metrics["latency_ms"] = _as_number(metrics.get("latency_ms"))
        out["metrics"] = metrics
        return ValidationOutcome.accept(out)


def _as_number(value: Any) -> float | int:
    if isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value):
        return value
    try:
        number = float(value or 0)
    except (TypeError, ValueError):
        return 0
    return number if math.isfinite(number) else 0
