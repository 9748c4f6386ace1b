"""Request-level inference service: admission, orchestration and terminal events."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Optional

from .errors import (
    GatewayError,
    ScenarioDisabledError,
    ScenarioNotFoundError,
    as_gateway_error,
)
from .logging_utils import get_logger
from .metrics import GatewayMetrics
from .models import ExecutionRequest
from .orchestrator import ExecutionOrchestrator, OrchestratorDeps
from .policy import ExecutionPolicy, derive_policy
from .scenarios.models import ScenarioSpec
from .scenarios.overrides import ConfigOverrideProvider
from .scenarios.registry import ScenarioProvider
from .streaming.bus import StreamBus
from .traces import TraceStore
from .validation.request import validate_request_input

_LOG = get_logger("service")


def stream_url(trace_id: str) -> str:
    return f"/v1/infer/stream/{trace_id}"


class InferenceService:
    """Runs requests through an :class:`ExecutionOrchestrator`.

    Every trace that reaches this service gets exactly one terminal stream
    event: ``completed`` with the result, or ``error`` with a stable code,
    including when the request is rejected before orchestration starts.
    """

    def __init__(
        self,
        *,
        scenarios: ScenarioProvider,
        deps: OrchestratorDeps,
        bus: StreamBus,
        traces: TraceStore,
        overrides: Optional[ConfigOverrideProvider] = None,
        metrics: Optional[GatewayMetrics] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._scenarios = scenarios
        self._deps = deps
        self._bus = bus
        self._traces = traces
        self._overrides = overrides
        self._metrics = metrics
        self._clock = clock
        self._tasks: set[asyncio.Task] = set()

    @property
    def traces(self) -> TraceStore:
        return self._traces

    def resolve_scenario(self, request: ExecutionRequest) -> ScenarioSpec:
        scenario = self._scenarios.get(request.scenario_id)
        if scenario is None:
            raise ScenarioNotFoundError(
                f"scenario not found: {request.scenario_id}",
                details={"scenario_id": request.scenario_id},
            )
        if self._overrides is not None:
            scenario = self._overrides.apply(scenario, tenant_id=request.context.tenant_id)
        if not scenario.enabled:
            raise ScenarioDisabledError(
                f"scenario disabled: {scenario.scenario_id}",
                details={"scenario_id": scenario.scenario_id},
            )
        return scenario

    def prepare(
        self, request: ExecutionRequest, *, trace_id: str
    ) -> tuple[ScenarioSpec, ExecutionPolicy]:
        scenario = self.resolve_scenario(request)
        validate_request_input(request, scenario)
        policy = derive_policy(request, scenario)
        self._traces.upsert(
            trace_id,
            scenario_id=scenario.scenario_id,
            tenant_id=request.context.tenant_id,
            status="processing",
            policy=policy.to_dict(),
            request_meta={
                "stream": request.options.stream,
                "quality_tier": policy.quality_tier,
                "latency_budget_ms": policy.total_latency_budget_ms,
                "has_images": request.input.has_images(),
                "has_text": isinstance(request.input.text, str),
            },
        )
        return scenario, policy

    def _orchestrator(
        self,
        request: ExecutionRequest,
        scenario: ScenarioSpec,
        policy: ExecutionPolicy,
        trace_id: str,
    ) -> ExecutionOrchestrator:
        return ExecutionOrchestrator(
            trace_id,
            request,
            scenario,
            policy,
            self._deps,
            tenant_id=request.context.tenant_id,
            clock=self._clock,
        )

    # -- terminal bookkeeping -------------------------------------------------

    def _complete(self, trace_id: str, result: dict[str, Any], started: float, mode: str) -> None:
        latency_ms = round((self._clock() - started) * 1000.0, 1)
        self._traces.upsert(trace_id, status="completed", result=result, latency_ms=latency_ms)
        self._bus.publish(trace_id, "completed", {"trace_id": trace_id, "result": result})
        if self._metrics:
            self._metrics.observe_request(mode, "OK", latency_ms)
        _LOG.info("Trace {} completed in {} ms ({})", trace_id, latency_ms, mode)

    def _fail(self, trace_id: str, error: GatewayError, started: float, mode: str) -> None:
        latency_ms = round((self._clock() - started) * 1000.0, 1)
        body = error.to_dict()
        self._traces.upsert(trace_id, status="error", error=body, latency_ms=latency_ms)
        self._bus.publish(trace_id, "error", {"trace_id": trace_id, **body})
        if self._metrics:
            self._metrics.observe_request(mode, error.code, latency_ms)
        _LOG.warning("Trace {} failed with {}: {}", trace_id, error.code, error.message)

    # -- entry points -----------------------------------------------------------

    async def infer(self, request: ExecutionRequest, *, trace_id: str) -> dict[str, Any]:
        """Run the request to completion and return its pipeline result."""

        started = self._clock()
        try:
            scenario, policy = self.prepare(request, trace_id=trace_id)
            result = await self._orchestrator(request, scenario, policy, trace_id).run()
        except GatewayError as exc:
            self._fail(trace_id, exc, started, "sync")
            raise
        except Exception as exc:
            _LOG.exception("Unexpected failure for trace {}", trace_id)
            error = as_gateway_error(exc)
            self._fail(trace_id, error, started, "sync")
            raise error from exc
        self._complete(trace_id, result, started, "sync")
        return result

    def submit(self, request: ExecutionRequest, *, trace_id: str) -> dict[str, Any]:
        """Admit the request and run it in the background; progress goes to the stream."""

        started = self._clock()
        try:
            scenario, policy = self.prepare(request, trace_id=trace_id)
        except GatewayError as exc:
            self._fail(trace_id, exc, started, "stream")
            raise
        task = asyncio.get_running_loop().create_task(
            self._run_background(request, scenario, policy, trace_id, started)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        _LOG.info("Trace {} accepted for streaming (scenario={})", trace_id, scenario.scenario_id)
        return {
            "trace_id": trace_id,
            "status": "processing",
            "stream_url": stream_url(trace_id),
            "scenario_id": scenario.scenario_id,
            "policy": policy.to_dict(),
        }

    async def _run_background(
        self,
        request: ExecutionRequest,
        scenario: ScenarioSpec,
        policy: ExecutionPolicy,
        trace_id: str,
        started: float,
    ) -> None:
        try:
            result = await self._orchestrator(request, scenario, policy, trace_id).run()
        except GatewayError as exc:
            self._fail(trace_id, exc, started, "stream")
            return
        except asyncio.CancelledError:
            self._fail(trace_id, GatewayError("request cancelled"), started, "stream")
            raise
        except Exception as exc:
            _LOG.exception("Unexpected failure for trace {}", trace_id)
            self._fail(trace_id, as_gateway_error(exc), started, "stream")
            return
        self._complete(trace_id, result, started, "stream")

    async def drain(self) -> None:
        """Wait for background requests to finish."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    async def aclose(self) -> None:
        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
