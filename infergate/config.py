"""Configuration loading and validation using Pydantic models."""

from __future__ import annotations

import os
from pathlib import Path
from typing import Literal, Optional

import yaml
from pydantic import BaseModel, Field, field_validator


class GatewayConfig(BaseModel):
    host: str = Field("127.0.0.1", description="Bind address for the HTTP surface.")
    port: int = Field(8080, ge=1, le=65535)
    env: str = Field(
        default_factory=lambda: os.environ.get("APP_ENV", "dev"),
        description="Deployment environment; selects env-level KB mapping overrides.",
    )
    max_body_bytes: int = Field(2 * 1024 * 1024, ge=1024)


class CircuitBreakerConfig(BaseModel):
    failure_threshold: int = Field(5, ge=1)
    reset_timeout_s: float = Field(30.0, gt=0.0)


class WorkflowConfig(BaseModel):
    base_url: Optional[str] = Field(None, description="Remote workflow executor base URL.")
    api_key: Optional[str] = None
    api_key_env: Optional[str] = Field("WORKFLOW_API_KEY")
    timeout_ms: int = Field(15000, ge=100, description="Upper bound for one upstream call.")
    retries: int = Field(1, ge=0, le=5, description="Transport retries inside one pass.")
    fallback_to_offline: bool = Field(
        True,
        description="Degrade to the offline stand-in when the remote executor fails.",
    )
    disable_timeout: bool = Field(False, description="Do not bound upstream calls.")
    offline_stage_delay_ms: int = Field(
        120,
        ge=0,
        description="Artificial delay between offline pipeline stages.",
    )
    circuit_breaker: CircuitBreakerConfig = CircuitBreakerConfig()

    def resolved_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None


class ClassifierConfig(BaseModel):
    mode: Literal["heuristic", "remote"] = Field("heuristic")
    base_url: Optional[str] = None
    api_key: Optional[str] = None
    api_key_env: Optional[str] = Field("CLASSIFIER_API_KEY")
    timeout_ms: int = Field(8000, ge=100)
    reclassify_on_retry: bool = Field(
        False,
        description="Classify again on every retry pass instead of reusing the first result.",
    )
    image_only_default_sub_type: str = Field("figure_reasoning")
    image_only_confidence: float = Field(0.62)

    @field_validator("image_only_default_sub_type")
    @classmethod
    def _default_sub_type(cls, value: str) -> str:
        return value.strip() or "figure_reasoning"

    @field_validator("image_only_confidence")
    @classmethod
    def _clamp_confidence(cls, value: float) -> float:
        return max(0.1, min(0.95, float(value)))

    def resolved_api_key(self) -> str | None:
        if self.api_key:
            return self.api_key
        if self.api_key_env:
            return os.environ.get(self.api_key_env) or None
        return None


class KnowledgeConfig(BaseModel):
    registry_path: Path = Field(Path("configs/kb/KB_REGISTRY.json"))
    mappings_dir: Path = Field(Path("configs/kb-mappings"))
    reload_interval_s: float = Field(
        10.0,
        ge=0.0,
        description="Minimum interval between modification checks of the KB sources.",
    )
    allow_inactive: bool = Field(False, description="Surface KBs that are not active.")
    fail_fast: bool = Field(False, description="Raise on registry or mapping problems.")
    require_mappings_for_enabled_scenarios: bool = True


class StreamConfig(BaseModel):
    heartbeat_s: float = Field(15.0, gt=0.0)
    client_ttl_s: float = Field(120.0, gt=0.0)
    max_connections: int = Field(2000, ge=1)
    max_tracked_traces: int = Field(10000, ge=16)
    max_buffered_frames: int = Field(
        1024, ge=1, description="Frames queued per subscriber before it is dropped."
    )
    retry_ms: int = Field(3000, ge=0, description="Client reconnect hint sent on connect.")


class ScenarioConfig(BaseModel):
    directory: Path = Field(Path("configs/scenarios"))


class LoggingConfig(BaseModel):
    level: str = Field("INFO")
    log_dir: Optional[Path] = None
    retrieval_log_path: Optional[Path] = None


class MetricsConfig(BaseModel):
    enabled: bool = True


class AppConfig(BaseModel):
    gateway: GatewayConfig = GatewayConfig()
    workflow: WorkflowConfig = WorkflowConfig()
    classifier: ClassifierConfig = ClassifierConfig()
    knowledge: KnowledgeConfig = KnowledgeConfig()
    stream: StreamConfig = StreamConfig()
    scenarios: ScenarioConfig = ScenarioConfig()
    logging: LoggingConfig = LoggingConfig()
    metrics: MetricsConfig = MetricsConfig()


def load_config(path: Path | str) -> AppConfig:
    """Load YAML configuration from disk."""

    config_path = Path(path)
    with config_path.open("r", encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    return AppConfig.model_validate(data or {})
