"""Gateway request models."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class RequestInput(BaseModel):
    model_config = ConfigDict(extra="allow")

    text: str | None = None
    images: list[Any] | None = None
    attachments: list[Any] | None = None

    def normalized_text(self) -> str:
        return self.text.strip().lower() if isinstance(self.text, str) else ""

    def has_images(self) -> bool:
        return bool(self.images)


class RequestOptions(BaseModel):
    model_config = ConfigDict(extra="allow")

    quality_tier: Literal["fast", "balanced", "strict"] | None = None
    stream: bool = False
    latency_budget_ms: int | None = Field(None, ge=100, le=120000)
    force_sub_type: str | None = None


class RequestContext(BaseModel):
    model_config = ConfigDict(extra="allow")

    tenant_id: str | None = None
    user_id: str | None = None
    locale: str | None = None


class ExecutionRequest(BaseModel):
    model_config = ConfigDict(extra="allow")

    scenario_id: str = Field(..., min_length=1)
    input: RequestInput
    options: RequestOptions = Field(default_factory=RequestOptions)
    context: RequestContext = Field(default_factory=RequestContext)

    def forced_sub_type(self) -> str | None:
        forced = self.options.force_sub_type
        if isinstance(forced, str) and forced.strip():
            return forced.strip()
        return None


class ErrorBody(BaseModel):
    code: str
    message: str
    details: dict[str, Any] = Field(default_factory=dict)


class Envelope(BaseModel):
    success: bool
    trace_id: str
    timestamp: str
    data: Any | None = None
    error: ErrorBody | None = None


class GatewayHealth(BaseModel):
    status: str = Field("ok")
    env: str
    scenario_count: int
    scenarios: list[str] = Field(default_factory=list)
    stream: dict[str, Any] = Field(default_factory=dict)
    workflow: dict[str, Any] = Field(default_factory=dict)
    knowledge: dict[str, Any] = Field(default_factory=dict)
