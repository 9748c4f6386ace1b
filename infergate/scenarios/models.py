"""Scenario configuration models.

A scenario binds a question-answering product surface to workflows, sub-type
profiles, knowledge policy, quality policy and output constraints. Scenarios are
read-only to the orchestration core; the registry hands out validated,
frozen instances.
"""

from __future__ import annotations

from typing import Any, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

_PROVIDER_ALIASES = {"dify": "remote", "mock": "offline"}


class _Section(BaseModel):
    model_config = ConfigDict(extra="allow", frozen=True)


class WorkflowBinding(_Section):
    provider: str = Field("offline", description="remote or offline")
    workflow_id: Optional[str] = None
    fallback_workflow_id: Optional[str] = None
    sub_type_routes: dict[str, str] = Field(default_factory=dict)

    @field_validator("provider", mode="before")
    @classmethod
    def _normalize_provider(cls, value: Any) -> str:
        name = str(value or "offline").strip().lower()
        return _PROVIDER_ALIASES.get(name, name)

    @property
    def is_remote(self) -> bool:
        return self.provider == "remote"


class ClassifierHints(_Section):
    keywords: list[str] = Field(default_factory=list)
    require_images: bool = False
    prefer_images: bool = False
    image_only_default: bool = False


class WorkflowGuidance(_Section):
    solving_steps: list[str] = Field(default_factory=list)
    prompt_focus: list[str] = Field(default_factory=list)
    answer_constraints: list[str] = Field(default_factory=list)


class SubTypeProfile(_Section):
    display_name: Optional[str] = None
    workflow_id: Optional[str] = None
    classifier_hints: ClassifierHints = ClassifierHints()
    workflow_guidance: WorkflowGuidance = WorkflowGuidance()


class KnowledgePolicy(_Section):
    enabled: bool = False
    mode: Optional[Literal["off", "always", "conditional"]] = None
    default_kb_ids: list[str] = Field(default_factory=list)
    sub_type_kb_map: dict[str, list[str]] = Field(default_factory=dict)
    top_k: Optional[int] = None
    rerank: Optional[bool] = None
    max_context_chars: Optional[int] = None


class QualityTier(_Section):
    confidence_threshold: Optional[float] = None
    max_retries: Optional[int] = None


class SubTypeQualityOverride(_Section):
    confidence_threshold: Optional[float] = None
    max_retries: Optional[int] = None
    retry_mode: Optional[str] = None
    retry_on_validation_fail: Optional[bool] = None


class QualityPolicy(_Section):
    confidence_threshold: Optional[float] = None
    max_retries: Optional[int] = None
    strict_output_validation: bool = False
    validation_retry_on_fail: bool = True
    quality_tiers: dict[str, QualityTier] = Field(default_factory=dict)
    sub_type_overrides: dict[str, SubTypeQualityOverride] = Field(default_factory=dict)


class OutputConstraintRule(_Section):
    """Partial rule; unset fields fall through to the next precedence layer."""

    mode: Optional[str] = None
    min_evidence: Optional[int] = None
    require_evidence: Optional[bool] = None
    enforce_sub_type_match: Optional[bool] = None
    json_root_type: Optional[str] = None
    json_required_fields: Optional[list[str]] = None
    json_array_min_items: Optional[dict[str, Any]] = None
    json_field_types: Optional[dict[str, Any]] = None


class OutputConstraints(_Section):
    defaults: OutputConstraintRule = OutputConstraintRule()
    sub_type_rules: dict[str, OutputConstraintRule] = Field(default_factory=dict)


class LatencyBudget(_Section):
    total_ms: int = Field(8000, gt=0)
    stage_budget_ms: dict[str, int] = Field(default_factory=dict)
    on_timeout: str = "return_best_effort"


class InputSchema(_Section):
    required_fields: list[str] = Field(default_factory=list)
    allow_text: bool = True
    allow_images: bool = False
    allow_attachments: bool = False
    max_text_length: int = Field(8000, ge=1)
    max_images: int = Field(0, ge=0)


class ScenarioSpec(_Section):
    scenario_id: str = Field(..., min_length=1)
    version: Optional[str] = None
    enabled: bool = True
    workflow_binding: WorkflowBinding = WorkflowBinding()
    sub_type_profiles: dict[str, SubTypeProfile] = Field(default_factory=dict)
    knowledge_policy: KnowledgePolicy = KnowledgePolicy()
    quality_policy: QualityPolicy = QualityPolicy()
    output_constraints: Optional[OutputConstraints] = None
    latency_budget: LatencyBudget = LatencyBudget()
    input_schema: InputSchema = InputSchema()

    @field_validator("version", mode="before")
    @classmethod
    def _version_as_text(cls, value: Any) -> Any:
        if isinstance(value, (int, float)):
            return str(value)
        return value
