"""Composition root wiring caches, providers and the inference service."""

from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Mapping, Optional

import httpx

from .config import AppConfig
from .knowledge.bootstrap import ResourceReport, validate_runtime_resources
from .knowledge.mappings import MappingStore
from .knowledge.registry import KnowledgeRegistry
from .logging_utils import get_logger
from .metrics import GatewayMetrics
from .orchestrator import OrchestratorDeps
from .providers.offline import OfflineWorkflowProvider
from .providers.remote import RemoteWorkflowProvider
from .retrieval_log import RetrievalLogger
from .routing.classifier import ClassificationRouter
from .routing.remote import RemoteClassifier
from .scenarios.models import ScenarioSpec
from .scenarios.overrides import ConfigOverrideProvider, StaticOverrideProvider
from .scenarios.registry import ScenarioRegistry
from .service import InferenceService
from .streaming.bus import StreamBus
from .traces import TraceStore
from .validation.output import OutputValidator


@dataclass(frozen=True)
class Runtime:
    config: AppConfig
    scenarios: ScenarioRegistry
    overrides: Optional[ConfigOverrideProvider]
    registry: KnowledgeRegistry
    mappings: MappingStore
    bus: StreamBus
    metrics: GatewayMetrics
    classifier: ClassificationRouter
    remote_provider: RemoteWorkflowProvider
    offline_provider: OfflineWorkflowProvider
    traces: TraceStore
    service: InferenceService
    resources: ResourceReport

    def health(self) -> dict[str, Any]:
        workflow = self.config.workflow
        return {
            "status": "ok",
            "env": self.config.gateway.env,
            "scenario_count": self.scenarios.count(),
            "scenarios": self.scenarios.list_ids(),
            "stream": self.bus.stats(),
            "workflow": {
                "remote_configured": bool(workflow.base_url),
                "fallback_to_offline": workflow.fallback_to_offline,
                "circuit": self.remote_provider.breaker.state,
            },
            "knowledge": {
                "registry": self.registry.registry_info(),
                "mappings": self.mappings.list_scenario_ids(),
                "mapping_version": self.mappings.current_version(),
                "resources_ok": self.resources.ok,
            },
        }


def build_runtime(
    config: AppConfig,
    *,
    scenarios: Optional[Iterable[ScenarioSpec | dict[str, Any]]] = None,
    overrides: Optional[Mapping[str, Mapping[str, Any]]] = None,
    http_client_factory: Callable[..., httpx.AsyncClient] | None = None,
    bus: Optional[StreamBus] = None,
    clock: Callable[[], float] = time.monotonic,
) -> Runtime:
    """Build every shared service once; nothing here lives in module globals.

    ``scenarios`` replaces loading from ``config.scenarios.directory`` and is
    what tests use to inject scenario specs directly.
    """

    log = get_logger("runtime")
    metrics = GatewayMetrics(enabled=config.metrics.enabled)

    if scenarios is not None:
        scenario_registry = ScenarioRegistry.from_specs(scenarios)
    else:
        scenario_registry = ScenarioRegistry(config.scenarios.directory)
        scenario_registry.load()

    knowledge = config.knowledge
    registry = KnowledgeRegistry(
        knowledge.registry_path,
        allow_inactive=knowledge.allow_inactive,
        fail_fast=knowledge.fail_fast,
        reload_interval_s=knowledge.reload_interval_s,
        clock=clock,
    )
    registry.load()
    mappings = MappingStore(
        knowledge.mappings_dir,
        reload_interval_s=knowledge.reload_interval_s,
        clock=clock,
    )
    mappings.load()
    resources = validate_runtime_resources(
        registry=registry,
        mappings=mappings,
        scenarios=scenario_registry,
        allow_inactive=knowledge.allow_inactive,
        fail_fast=knowledge.fail_fast,
        require_mappings_for_enabled_scenarios=knowledge.require_mappings_for_enabled_scenarios,
    )

    stream = config.stream
    bus = bus or StreamBus(
        heartbeat_s=stream.heartbeat_s,
        client_ttl_s=stream.client_ttl_s,
        max_connections=stream.max_connections,
        max_tracked_traces=stream.max_tracked_traces,
        clock=clock,
        metrics=metrics,
    )

    remote_classifier = None
    if config.classifier.mode == "remote":
        remote_classifier = RemoteClassifier(
            config.classifier, http_client_factory=http_client_factory
        )
    classifier = ClassificationRouter(config.classifier, remote=remote_classifier, bus=bus)
    remote_provider = RemoteWorkflowProvider(
        config.workflow, http_client_factory=http_client_factory
    )
    offline_provider = OfflineWorkflowProvider(
        bus, stage_delay_ms=config.workflow.offline_stage_delay_ms
    )

    deps = OrchestratorDeps(
        classifier=classifier,
        registry=registry,
        mappings=mappings,
        validator=OutputValidator(),
        bus=bus,
        remote_provider=remote_provider,
        offline_provider=offline_provider,
        workflow=config.workflow,
        env=config.gateway.env,
        retrieval_log=RetrievalLogger(env=config.gateway.env),
        metrics=metrics,
    )
    override_provider = StaticOverrideProvider(overrides) if overrides else None
    traces = TraceStore(max_entries=stream.max_tracked_traces)
    service = InferenceService(
        scenarios=scenario_registry,
        deps=deps,
        bus=bus,
        traces=traces,
        overrides=override_provider,
        metrics=metrics,
        clock=clock,
    )
    log.info(
        "Runtime ready: env={} scenarios={} classifier={} remote_workflow={}",
        config.gateway.env,
        scenario_registry.count(),
        config.classifier.mode,
        bool(config.workflow.base_url),
    )
    return Runtime(
        config=config,
        scenarios=scenario_registry,
        overrides=override_provider,
        registry=registry,
        mappings=mappings,
        bus=bus,
        metrics=metrics,
        classifier=classifier,
        remote_provider=remote_provider,
        offline_provider=offline_provider,
        traces=traces,
        service=service,
        resources=resources,
    )
