"""Sub-type classification and workflow routing."""

from .classifier import ClassificationRouter
from .heuristics import BUILTIN_RULES, UNKNOWN_SUB_TYPE, ClassificationResult, classify_heuristic
from .plans import build_prompt_plan, classifier_hints, resolve_sub_type_profile, resolve_workflow_id
from .remote import RemoteClassifier

__all__ = [
    "BUILTIN_RULES",
    "ClassificationResult",
    "ClassificationRouter",
    "RemoteClassifier",
    "UNKNOWN_SUB_TYPE",
    "build_prompt_plan",
    "classifier_hints",
    "classify_heuristic",
    "resolve_sub_type_profile",
    "resolve_workflow_id",
]
