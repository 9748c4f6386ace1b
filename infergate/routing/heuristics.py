"""Keyword heuristics for sub-type classification."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Optional

from ..models import ExecutionRequest
from ..scenarios.models import ScenarioSpec

UNKNOWN_SUB_TYPE = "unknown"
FORCED_CONFIDENCE = 0.98

PROFILE_MIN_SCORE = 0.24
PROFILE_BASE_CONFIDENCE = 0.58


@dataclass(frozen=True)
class ClassificationResult:
    sub_type: str
    confidence: float
    source: str

    def to_dict(self) -> dict[str, Any]:
        return {"sub_type": self.sub_type, "confidence": self.confidence, "source": self.source}


@dataclass(frozen=True)
class KeywordRule:
    sub_type: str
    confidence: float
    patterns: tuple[str, ...]

    def matches(self, text: str) -> bool:
        return any(pattern in text for pattern in self.patterns)


# Ordered; the first matching rule wins.
BUILTIN_RULES: tuple[KeywordRule, ...] = (
    KeywordRule("figure_reasoning", 0.86, ("图推", "图形", "旋转", "对称", "折叠", "位置规律")),
    KeywordRule("logic", 0.82, ("逻辑", "真假", "削弱", "加强", "推理", "论证")),
    KeywordRule("language", 0.80, ("言语", "主旨", "填空", "病句", "语句排序", "阅读理解")),
    KeywordRule("data_analysis", 0.84, ("资料分析", "同比", "环比", "增长率", "百分点", "数据表")),
    KeywordRule("common_knowledge", 0.78, ("常识", "法律", "历史", "地理", "科技", "时政")),
)


def _clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def score_profiles(request: ExecutionRequest, scenario: ScenarioSpec) -> Optional[ClassificationResult]:
    """Score every sub-type profile against the input; ``None`` when nothing is convincing."""

    text = request.input.normalized_text()
    has_images = request.input.has_images()

    best_sub_type: str | None = None
    best_score = 0.0
    for sub_type, profile in scenario.sub_type_profiles.items():
        hints = profile.classifier_hints
        score = 0.0
        hits = 0
        for keyword in hints.keywords:
            keyword = keyword.strip().lower() if isinstance(keyword, str) else ""
            if keyword and text and keyword in text:
                hits += 1
                score += 0.2 if len(keyword) >= 4 else 0.14
        if hits:
            score += min(0.2, hits * 0.04)
        if hints.require_images and not has_images:
            score -= 0.25
        if hints.prefer_images and has_images:
            score += 0.08
        if not text and has_images and hints.image_only_default:
            score += 0.35
        if best_sub_type is None or score > best_score:
            best_sub_type = sub_type
            best_score = score

    if best_sub_type is None or best_score < PROFILE_MIN_SCORE:
        return None
    confidence = round(_clamp(PROFILE_BASE_CONFIDENCE + best_score, 0.55, 0.96), 2)
    return ClassificationResult(best_sub_type, confidence, "profile_heuristic")


def match_builtin_rules(text: str) -> Optional[ClassificationResult]:
    if not text:
        return None
    for rule in BUILTIN_RULES:
        if rule.matches(text):
            return ClassificationResult(rule.sub_type, rule.confidence, "heuristic")
    return None


def classify_heuristic(
    request: ExecutionRequest,
    scenario: ScenarioSpec,
    *,
    image_only_sub_type: str = "figure_reasoning",
    image_only_confidence: float = 0.62,
) -> ClassificationResult:
    forced = request.forced_sub_type()
    if forced:
        return ClassificationResult(forced, FORCED_CONFIDENCE, "forced")

    by_profile = score_profiles(request, scenario)
    if by_profile is not None:
        return by_profile

    text = request.input.normalized_text()
    by_rule = match_builtin_rules(text)
    if by_rule is not None:
        return by_rule

    if not text and request.input.has_images():
        return ClassificationResult(
            image_only_sub_type,
            _clamp(image_only_confidence, 0.1, 0.95),
            "heuristic_images",
        )
    return ClassificationResult(UNKNOWN_SUB_TYPE, 0.45 if text else 0.35, "heuristic")
