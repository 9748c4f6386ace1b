"""Inference orchestration: classify, route, plan, execute, validate, retry or fall back.

One :class:`ExecutionOrchestrator` runs one request. It owns the latency budget,
the retry counter, the cached classification and the best result kept so far;
nothing here is shared between requests except the injected services.

Retry and fallback precedence:

* quality shortfall: retry the same workflow, or switch once to the scenario's
  fallback workflow when the retry mode asks for it;
* provider failure (remote only, and only with offline fallback enabled): one
  pass against the untried fallback workflow, then the offline provider. A
  failing fallback-workflow pass drops straight to the offline provider; it is
  never retried on its own. Whatever the fallback pass returns is the answer,
  even when an earlier primary pass scored higher.

The orchestrator publishes progress only. The single terminal stream event is
published by the caller once :meth:`ExecutionOrchestrator.run` returns or raises.
"""

from __future__ import annotations

import copy
import enum
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Optional

from .config import WorkflowConfig
from .errors import GatewayError, UpstreamError, WorkflowNotFoundError
from .knowledge.mappings import MappingStore
from .knowledge.models import KnowledgePlan
from .knowledge.planner import kb_plan_actual_diff, resolve_plan
from .knowledge.registry import KnowledgeRegistry
from .logging_utils import get_logger
from .metrics import GatewayMetrics
from .models import ExecutionRequest
from .policy import ExecutionPolicy
from .providers.base import WorkflowOutput, WorkflowProvider, WorkflowSubmission
from .providers.files import build_image_files
from .retrieval_log import RetrievalLogger
from .routing.classifier import ClassificationRouter
from .routing.heuristics import UNKNOWN_SUB_TYPE, ClassificationResult
from .routing.plans import build_prompt_plan, resolve_sub_type_profile, resolve_workflow_id
from .scenarios.models import ScenarioSpec
from .streaming.bus import EventPublisher
from .validation.output import OutputValidator, normalize_confidence

MIN_REMAINING_MS = 900
MIN_UPSTREAM_TIMEOUT_MS = 800
LOW_CONFIDENCE_UNKNOWN = 0.6
RETRY_MODES = ("same_workflow", "fallback_workflow")


class PipelineState(str, enum.Enum):
    INIT = "init"
    CLASSIFY = "classify"
    ROUTE = "route"
    PLAN_KNOWLEDGE = "plan_knowledge"
    EXECUTE = "execute"
    VALIDATE = "validate"
    RETRY_SAME = "retry_same"
    RETRY_FALLBACK_WORKFLOW = "retry_fallback_workflow"
    FALLBACK_PROVIDER = "fallback_provider"
    RETURN = "return"


@dataclass(frozen=True)
class RetryPolicy:
    confidence_threshold: float
    max_retries: int
    retry_mode: str = "same_workflow"
    retry_on_validation_fail: bool = True

    def to_dict(self) -> dict[str, Any]:
        return {
            "confidence_threshold": self.confidence_threshold,
            "max_retries": self.max_retries,
            "retry_mode": self.retry_mode,
            "retry_on_validation_fail": self.retry_on_validation_fail,
        }


def derive_retry_policy(
    scenario: ScenarioSpec,
    policy: ExecutionPolicy,
    sub_type: str,
    classifier_confidence: float,
) -> RetryPolicy:
    quality = scenario.quality_policy
    threshold = float(policy.confidence_threshold or 0.7)
    max_retries = int(policy.max_retries or 0)
    retry_mode = "same_workflow"
    retry_on_validation_fail = bool(quality.validation_retry_on_fail)

    override = quality.sub_type_overrides.get(sub_type)
    if override is not None:
        if override.confidence_threshold is not None:
            threshold = float(override.confidence_threshold)
        if override.max_retries is not None:
            max_retries = int(override.max_retries)
        if override.retry_mode and override.retry_mode.strip():
            retry_mode = override.retry_mode.strip()
        if override.retry_on_validation_fail is not None:
            retry_on_validation_fail = bool(override.retry_on_validation_fail)

    # A weakly classified unknown gets at least one retry at a stricter bar.
    if sub_type == UNKNOWN_SUB_TYPE and float(classifier_confidence or 0) < LOW_CONFIDENCE_UNKNOWN:
        max_retries = max(max_retries, 1)
        threshold = max(threshold, 0.75)

    return RetryPolicy(
        confidence_threshold=max(0.1, min(0.99, threshold)),
        max_retries=max(0, max_retries),
        retry_mode=retry_mode if retry_mode in RETRY_MODES else "same_workflow",
        retry_on_validation_fail=retry_on_validation_fail,
    )


@dataclass
class ExecutionContext:
    classification: ClassificationResult
    workflow_id: Optional[str]
    sub_type_profile: Optional[dict[str, Any]]
    prompt_plan: dict[str, Any]
    knowledge: KnowledgePlan
    kb_mapping: dict[str, Any]
    kb_registry: dict[str, Any]
    retry_index: int
    timeout_ms: Optional[int] = None

    @property
    def sub_type(self) -> str:
        return self.classification.sub_type

    def classifier_info(self) -> dict[str, Any]:
        return {
            "sub_type": self.classification.sub_type,
            "confidence": self.classification.confidence,
            "source": self.classification.source,
        }

    def route_debug(self) -> dict[str, Any]:
        return {
            "sub_type": self.sub_type,
            "workflow_id": self.workflow_id,
            "sub_type_profile": self.sub_type_profile,
            "prompt_plan": self.prompt_plan,
            "knowledge": self.knowledge.to_dict(),
            "kb_registry": self.kb_registry,
            "kb_mapping": self.kb_mapping,
            "retry_index": self.retry_index,
            "classifier": self.classifier_info(),
            "timeout_ms": self.timeout_ms,
        }


@dataclass
class OrchestratorDeps:
    """Shared services injected into every orchestrator."""

    classifier: ClassificationRouter
    registry: KnowledgeRegistry
    mappings: MappingStore
    validator: OutputValidator
    bus: EventPublisher
    remote_provider: WorkflowProvider
    offline_provider: WorkflowProvider
    workflow: WorkflowConfig
    env: str = "dev"
    retrieval_log: Optional[RetrievalLogger] = None
    metrics: Optional[GatewayMetrics] = None


def _confidence(result: Optional[dict[str, Any]]) -> float:
    if not result:
        return 0.0
    body = result.get("result") or {}
    value = normalize_confidence(body.get("confidence"))
    return value if value is not None else 0.0


@dataclass
class _RunState:
    best: Optional[dict[str, Any]] = None
    retry_index: int = 0
    cached: Optional[ClassificationResult] = None
    fallback_workflow_tried: bool = False
    workflow_override: Optional[str] = None
    transitions: list[PipelineState] = field(default_factory=list)


class ExecutionOrchestrator:
    """State machine for one request.

    ``run`` returns exactly one pipeline result dict or raises a
    :class:`~infergate.errors.GatewayError`. ``transitions`` records every
    state entered; ``RETURN`` appears at most once and always last.
    """

    def __init__(
        self,
        trace_id: str,
        request: ExecutionRequest,
        scenario: ScenarioSpec,
        policy: ExecutionPolicy,
        deps: OrchestratorDeps,
        *,
        tenant_id: str | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.trace_id = trace_id
        self.request = request
        self.scenario = scenario
        self.policy = policy
        self._deps = deps
        self._tenant_id = tenant_id or request.context.tenant_id
        self._clock = clock
        self._state = _RunState()
        self._started = 0.0
        self._deadline = 0.0
        self._returned = False
        self.passes = 0
        self._log = get_logger("orchestrator").bind(trace_id=trace_id)
        binding = scenario.workflow_binding
        self._primary = deps.remote_provider if binding.is_remote else deps.offline_provider

    @property
    def transitions(self) -> list[PipelineState]:
        return list(self._state.transitions)

    @property
    def state(self) -> Optional[PipelineState]:
        return self._state.transitions[-1] if self._state.transitions else None

    def _enter(self, state: PipelineState) -> None:
        if self._returned:
            raise RuntimeError("orchestrator already returned")
        self._state.transitions.append(state)

    def _remaining_ms(self) -> float:
        return (self._deadline - self._clock()) * 1000.0

    def _progress(self, stage: str, progress: int, message: str) -> None:
        self._deps.bus.publish(
            self.trace_id,
            "progress",
            {"trace_id": self.trace_id, "stage": stage, "progress": progress, "message": message},
        )

    # -- main loop ---------------------------------------------------------

    async def run(self) -> dict[str, Any]:
        self._enter(PipelineState.INIT)
        self._started = self._clock()
        self._deadline = self._started + self.policy.total_latency_budget_ms / 1000.0
        run = self._state
        provider = self._primary

        while True:
            remaining = self._remaining_ms()
            if run.best is not None and remaining < MIN_REMAINING_MS:
                self._progress(
                    "budget_exhausted",
                    92,
                    "latency budget nearly exhausted, returning best effort "
                    f"(remaining_ms={max(0, int(remaining))})",
                )
                return self._finish(run.best)

            ctx = await self._build_context(run.retry_index)
            if run.workflow_override:
                ctx.workflow_id = run.workflow_override
            if run.cached is None:
                run.cached = ctx.classification
            retry_policy = derive_retry_policy(
                self.scenario, self.policy, ctx.sub_type, ctx.classification.confidence
            )

            if run.retry_index > 0:
                self._progress(
                    "quality_retry", 18 + run.retry_index * 3, self._pass_message(provider, ctx)
                )
            else:
                self._progress("routing", 15, self._pass_message(provider, ctx))
            self._log_plan(provider, ctx, retry_policy)

            ctx.timeout_ms = self._pass_timeout(provider)
            self._enter(PipelineState.EXECUTE)
            try:
                result = await self._execute(provider, ctx)
            except UpstreamError as exc:
                return await self._recover(provider, exc)

            self._enter(PipelineState.VALIDATE)
            outcome = self._deps.validator.validate(self.scenario, ctx.sub_type, result)
            if not outcome.ok:
                self._progress("output_validation_failed", 88, f"validation failed: {outcome.reason}")
                if (
                    self.policy.strict_output_validation
                    and retry_policy.retry_on_validation_fail
                    and run.retry_index < retry_policy.max_retries
                ):
                    self._enter(PipelineState.RETRY_SAME)
                    run.retry_index += 1
                    continue
                result = self._accept_raw(result, outcome.reason or "invalid")
            else:
                result = outcome.result or result

            self._attach_kb_diff(provider, ctx, result)
            if run.best is None or _confidence(result) >= _confidence(run.best):
                run.best = result

            if (
                _confidence(result) >= retry_policy.confidence_threshold
                or run.retry_index >= retry_policy.max_retries
                or self._remaining_ms() < MIN_REMAINING_MS
            ):
                return self._finish(run.best)

            fallback_id = self.scenario.workflow_binding.fallback_workflow_id
            if (
                retry_policy.retry_mode == "fallback_workflow"
                and fallback_id
                and not run.fallback_workflow_tried
                and ctx.workflow_id != fallback_id
            ):
                self._enter(PipelineState.RETRY_FALLBACK_WORKFLOW)
                run.workflow_override = fallback_id
                run.fallback_workflow_tried = True
                self._progress(
                    "quality_retry_fallback_workflow",
                    23,
                    f"low confidence, retry with fallback workflow: {fallback_id}",
                )
            else:
                self._enter(PipelineState.RETRY_SAME)
                run.workflow_override = None
            run.retry_index += 1

    # -- failure handling ----------------------------------------------------

    async def _recover(self, provider: WorkflowProvider, exc: UpstreamError) -> dict[str, Any]:
        self._enter(PipelineState.FALLBACK_PROVIDER)
        if not provider.is_remote or not self._deps.workflow.fallback_to_offline:
            raise exc
        run = self._state
        reason = exc.message

        fallback_id = self.scenario.workflow_binding.fallback_workflow_id
        if fallback_id and not run.fallback_workflow_tried:
            run.fallback_workflow_tried = True
            self._progress(
                "fallback_workflow",
                28,
                f"primary workflow failed, trying fallback workflow: {fallback_id}",
            )
            if self._deps.metrics:
                self._deps.metrics.observe_fallback("workflow")
            ctx = await self._build_context(run.retry_index, record=False)
            ctx.workflow_id = fallback_id
            ctx.timeout_ms = self._pass_timeout(provider)
            try:
                result = await self._execute(provider, ctx)
            except UpstreamError as fallback_exc:
                self._log.warning("Fallback workflow {} failed: {}", fallback_id, fallback_exc)
            else:
                return self._finish(self._settle(provider, ctx, result))

        self._progress(
            "fallback_offline",
            25,
            f"workflow executor unavailable, falling back to offline provider: {reason}",
        )
        if self._deps.metrics:
            self._deps.metrics.observe_fallback("offline")
        offline = self._deps.offline_provider
        ctx = await self._build_context(run.retry_index, record=False)
        ctx.timeout_ms = self._pass_timeout(offline)
        result = await self._execute(offline, ctx, provider_tag="provider:offline-fallback")
        settled = self._settle(offline, ctx, result)
        settled.setdefault("debug", {})["fallback_reason"] = reason
        return self._finish(settled)

    def _settle(
        self, provider: WorkflowProvider, ctx: ExecutionContext, result: dict[str, Any]
    ) -> dict[str, Any]:
        outcome = self._deps.validator.validate(self.scenario, ctx.sub_type, result)
        settled = outcome.result if outcome.ok and outcome.result else self._accept_raw(
            result, outcome.reason or "invalid"
        )
        self._attach_kb_diff(provider, ctx, settled)
        return settled

    # -- pass building -------------------------------------------------------

    async def _build_context(self, retry_index: int, *, record: bool = True) -> ExecutionContext:
        deps = self._deps
        if record:
            self._enter(PipelineState.CLASSIFY)
        classification = await deps.classifier.classify(
            self.request,
            self.scenario,
            self._state.cached,
            retry_index,
            trace_id=self.trace_id,
        )
        if record:
            self._enter(PipelineState.ROUTE)
        sub_type = classification.sub_type
        workflow_id = resolve_workflow_id(self.scenario, sub_type)
        profile = resolve_sub_type_profile(self.scenario, sub_type)
        prompt_plan = build_prompt_plan(self.scenario, sub_type)

        if record:
            self._enter(PipelineState.PLAN_KNOWLEDGE)
        mapping = deps.mappings.effective_mapping(
            self.scenario.scenario_id, deps.env, self._tenant_id
        )
        plan = deps.registry.enrich_plan(resolve_plan(self.scenario, sub_type, mapping))
        return ExecutionContext(
            classification=classification,
            workflow_id=workflow_id,
            sub_type_profile=profile.model_dump() if profile is not None else None,
            prompt_plan=prompt_plan,
            knowledge=plan,
            kb_mapping=mapping.snapshot_info(),
            kb_registry=deps.registry.registry_info(),
            retry_index=retry_index,
        )

    def _pass_timeout(self, provider: WorkflowProvider) -> Optional[int]:
        if self._deps.workflow.disable_timeout:
            return None
        remaining = max(MIN_UPSTREAM_TIMEOUT_MS, int(self._remaining_ms()))
        configured = provider.timeout_ms
        return min(configured, remaining) if configured else remaining

    def _pass_message(self, provider: WorkflowProvider, ctx: ExecutionContext) -> str:
        return (
            f"provider={provider.name}, sub_type={ctx.sub_type}, "
            f"workflow={ctx.workflow_id or 'default'}, pass={ctx.retry_index + 1}"
        )

    def _submission_inputs(
        self, ctx: ExecutionContext, provider_tag: str
    ) -> dict[str, Any]:
        request = self.request
        return {
            "query": request.input.text or "",
            "input": request.input.model_dump(exclude_none=True),
            "context": request.context.model_dump(exclude_none=True),
            "scenario_id": self.scenario.scenario_id,
            "scenario_version": self.scenario.version,
            "sub_type": ctx.sub_type,
            "workflow_id": ctx.workflow_id,
            "sub_type_profile": ctx.sub_type_profile,
            "prompt_plan": ctx.prompt_plan,
            "knowledge": ctx.knowledge.to_dict(),
            "classifier": ctx.classifier_info(),
            "retry_index": ctx.retry_index,
            "quality": {
                "tier": self.policy.quality_tier,
                "confidence_threshold": self.policy.confidence_threshold,
                "strict_output_validation": self.policy.strict_output_validation,
            },
            "provider_tag": provider_tag,
            "trace_id": self.trace_id,
        }

    async def _execute(
        self,
        provider: WorkflowProvider,
        ctx: ExecutionContext,
        *,
        provider_tag: str | None = None,
    ) -> dict[str, Any]:
        if provider.is_remote and not ctx.workflow_id:
            raise WorkflowNotFoundError(
                f"no workflow bound for sub-type {ctx.sub_type}",
                details={"scenario_id": self.scenario.scenario_id, "sub_type": ctx.sub_type},
            )
        if provider_tag is None:
            if provider.is_remote:
                provider_tag = "provider:remote"
            else:
                provider_tag = "provider:offline-retry" if ctx.retry_index > 0 else "router:offline"
        user = self.request.context.user_id or f"trace:{self.trace_id}"
        submission = WorkflowSubmission(
            workflow_id=ctx.workflow_id,
            inputs=self._submission_inputs(ctx, provider_tag),
            files=build_image_files(self.request.input),
            user_tag=f"{self._tenant_id or 'default'}:{user}",
            timeout_ms=ctx.timeout_ms,
            trace_id=self.trace_id,
        )
        self.passes += 1
        metrics = self._deps.metrics
        try:
            output = await provider.submit(submission)
        except GatewayError:
            if metrics:
                metrics.observe_pass(provider.name, "error")
            raise
        if metrics:
            metrics.observe_pass(provider.name, "ok")
        return self._build_result(ctx, output, provider)

    def _build_result(
        self, ctx: ExecutionContext, output: WorkflowOutput, provider: WorkflowProvider
    ) -> dict[str, Any]:
        return {
            "trace_id": self.trace_id,
            "scenario_id": self.scenario.scenario_id,
            "workflow_id": ctx.workflow_id,
            "sub_type": output.sub_type,
            "status": "completed",
            "classifier": ctx.classifier_info(),
            "result": {
                "answer": output.answer,
                "evidence": list(output.evidence),
                "confidence": output.confidence,
            },
            "metrics": {"latency_ms": output.latency_ms},
            "debug": {
                "provider": provider.name,
                "model_path": list(output.model_path),
                "kb_hits": list(output.kb_hits),
                "kb_hits_source": output.kb_hits_source,
                "route": ctx.route_debug(),
            },
        }

    def _accept_raw(self, result: dict[str, Any], reason: str) -> dict[str, Any]:
        out = copy.deepcopy(result)
        body = out.get("result") if isinstance(out.get("result"), dict) else {}
        body["confidence"] = _confidence(out)
        out["result"] = body
        if not out.get("sub_type"):
            out["sub_type"] = (out.get("classifier") or {}).get("sub_type")
        out.setdefault("debug", {})["output_validation"] = {"ok": False, "reason": reason}
        return out

    # -- bookkeeping ---------------------------------------------------------

    def _log_plan(
        self, provider: WorkflowProvider, ctx: ExecutionContext, retry_policy: RetryPolicy
    ) -> None:
        log = self._deps.retrieval_log
        plan = ctx.knowledge
        if log is None or not (plan.enabled or plan.requested_kb_ids or plan.kb_ids):
            return
        log.log_plan(
            trace_id=self.trace_id,
            scenario_id=self.scenario.scenario_id,
            scenario_version=self.scenario.version,
            tenant_id=self._tenant_id,
            sub_type=ctx.sub_type,
            retry_index=ctx.retry_index,
            workflow_id=ctx.workflow_id,
            prompt_plan=ctx.prompt_plan,
            retry_mode=retry_policy.retry_mode,
            provider=provider.name,
            mode=plan.mode,
            kb_items=[item.to_dict() for item in plan.kb_items],
            requested_kb_ids=list(plan.requested_kb_ids or plan.kb_ids),
            dropped_kb_ids=list(plan.dropped_kb_ids),
            top_k=plan.top_k,
            rerank=plan.rerank,
            max_context_chars=plan.max_context_chars,
            kb_registry=ctx.kb_registry,
            kb_mapping=ctx.kb_mapping,
        )

    def _attach_kb_diff(
        self, provider: WorkflowProvider, ctx: ExecutionContext, result: dict[str, Any]
    ) -> None:
        debug = result.setdefault("debug", {})
        diff = kb_plan_actual_diff(ctx.knowledge, debug)
        debug["kb_plan_actual_diff"] = diff
        if self._deps.retrieval_log is not None:
            self._deps.retrieval_log.log_outcome(
                trace_id=self.trace_id,
                scenario_id=self.scenario.scenario_id,
                scenario_version=self.scenario.version,
                tenant_id=self._tenant_id,
                sub_type=ctx.sub_type,
                retry_index=ctx.retry_index,
                workflow_id=ctx.workflow_id,
                provider=provider.name,
                **diff,
            )

    def _finish(self, result: dict[str, Any]) -> dict[str, Any]:
        self._enter(PipelineState.RETURN)
        self._returned = True
        final = copy.deepcopy(result)
        final.setdefault("metrics", {})["total_latency_ms"] = round(
            (self._clock() - self._started) * 1000.0, 1
        )
        final.setdefault("debug", {})["passes"] = self.passes
        self._log.info(
            "Returning result sub_type={} confidence={} passes={}",
            final.get("sub_type"),
            _confidence(final),
            self.passes,
        )
        return final
