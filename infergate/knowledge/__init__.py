"""Knowledge-base registry, mapping overrides and plan resolution."""

from .bootstrap import ResourceReport, validate_runtime_resources
from .cache import VersionedCache
from .mappings import MappingStore
from .models import EffectiveMapping, KnowledgeItem, KnowledgePlan
from .planner import kb_plan_actual_diff, planned_kb_hits, resolve_plan
from .registry import KnowledgeRegistry

__all__ = [
    "EffectiveMapping",
    "KnowledgeItem",
    "KnowledgePlan",
    "KnowledgeRegistry",
    "MappingStore",
    "ResourceReport",
    "VersionedCache",
    "kb_plan_actual_diff",
    "planned_kb_hits",
    "resolve_plan",
    "validate_runtime_resources",
]
