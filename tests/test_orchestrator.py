from __future__ import annotations

import asyncio

import httpx
import pytest
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from infergate.config import WorkflowConfig
from infergate.errors import UpstreamError, UpstreamTimeoutError, WorkflowNotFoundError
from infergate.models import ExecutionRequest
from infergate.orchestrator import (
    ExecutionOrchestrator,
    PipelineState,
    derive_retry_policy,
)
from infergate.policy import derive_policy
from infergate.providers.offline import OfflineWorkflowProvider
from infergate.providers.remote import RemoteWorkflowProvider
from support import ScriptedProvider, make_scenario, output


def _request(text="which premise supports the conclusion", **options) -> ExecutionRequest:
    return ExecutionRequest.model_validate(
        {
            "scenario_id": "exam_qa",
            "input": {"text": text},
            "options": options,
            "context": {"tenant_id": "acme", "user_id": "u-7"},
        }
    )


def _run(orchestrator: ExecutionOrchestrator) -> dict:
    return asyncio.run(orchestrator.run())


def _orchestrator(deps, scenario=None, request=None, clock=None) -> ExecutionOrchestrator:
    scenario = scenario or make_scenario()
    request = request or _request()
    kwargs = {"clock": clock} if clock is not None else {}
    return ExecutionOrchestrator(
        "trc_test", request, scenario, derive_policy(request, scenario), deps, **kwargs
    )


def test_single_pass_meets_threshold(deps_factory, publisher, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.91)], name="offline")
    orch = _orchestrator(deps_factory(offline=offline), clock=clock)

    result = _run(orch)

    assert orch.passes == 1
    assert result["status"] == "completed"
    assert result["sub_type"] == "logic"
    assert result["workflow_id"] == "wf_main"
    assert result["result"] == {"answer": "B", "evidence": ["premise 1 supports B"], "confidence": 0.91}
    assert result["debug"]["passes"] == 1
    assert result["debug"]["route"]["knowledge"]["kb_ids"] == ["kb_logic"]
    assert result["debug"]["kb_plan_actual_diff"]["planned_kb_ids"] == ["kb_logic"]
    assert 0.0 <= result["result"]["confidence"] <= 1.0
    assert publisher.stages() == ["routing"]
    assert orch.transitions[-1] is PipelineState.RETURN
    assert orch.transitions.count(PipelineState.RETURN) == 1
    assert orch.transitions[:5] == [
        PipelineState.INIT,
        PipelineState.CLASSIFY,
        PipelineState.ROUTE,
        PipelineState.PLAN_KNOWLEDGE,
        PipelineState.EXECUTE,
    ]


def test_submission_carries_plan_and_user_tag(deps_factory, clock) -> None:
    offline = ScriptedProvider([output()], name="offline")
    _run(_orchestrator(deps_factory(offline=offline), clock=clock))

    submission = offline.submissions[0]
    assert submission.user_tag == "acme:u-7"
    assert submission.workflow_id == "wf_main"
    assert submission.inputs["sub_type"] == "logic"
    assert submission.inputs["knowledge"]["kb_ids"] == ["kb_logic"]
    assert submission.inputs["provider_tag"] == "router:offline"
    assert submission.inputs["prompt_plan"]["display_name"] == "Logic"
    assert submission.timeout_ms is not None and submission.timeout_ms >= 800


def test_low_confidence_retries_same_workflow(deps_factory, publisher, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.5), output(confidence=0.88)], name="offline")
    orch = _orchestrator(deps_factory(offline=offline), clock=clock)

    result = _run(orch)

    assert orch.passes == 2
    assert result["result"]["confidence"] == 0.88
    assert publisher.stages() == ["routing", "quality_retry"]
    retry_event = [p for _, kind, p in publisher.events if p.get("stage") == "quality_retry"][0]
    assert retry_event["progress"] == 21
    assert offline.submissions[1].inputs["provider_tag"] == "provider:offline-retry"
    assert PipelineState.RETRY_SAME in orch.transitions


def test_passes_bounded_by_max_retries(deps_factory, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.3)], name="offline")
    request = _request(quality_tier="strict")
    orch = _orchestrator(deps_factory(offline=offline), request=request, clock=clock)

    result = _run(orch)

    policy = derive_policy(request, make_scenario())
    assert policy.max_retries == 2
    assert orch.passes == 1 + policy.max_retries
    assert result["result"]["confidence"] == 0.3


def test_best_result_is_kept_across_passes(deps_factory, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.65), output(confidence=0.4)], name="offline")
    result = _run(_orchestrator(deps_factory(offline=offline), clock=clock))
    assert result["result"]["confidence"] == 0.65


def test_no_extra_pass_below_latency_floor(deps_factory, clock) -> None:
    offline = ScriptedProvider(
        [output(confidence=0.3)], name="offline", clock=clock, advance_s=9.5
    )
    orch = _orchestrator(deps_factory(offline=offline), clock=clock)

    result = _run(orch)

    assert orch.passes == 1
    assert result["result"]["confidence"] == 0.3
    assert result["metrics"]["total_latency_ms"] == 9500.0


def test_budget_exhausted_returns_best_effort(deps_factory, publisher, clock) -> None:
    steps = [output(confidence=0.5), output(answer="AB", confidence=0.99)]
    offline = ScriptedProvider(steps, name="offline", clock=clock, advance_s=4.6)
    request = _request(quality_tier="strict")
    orch = _orchestrator(deps_factory(offline=offline), request=request, clock=clock)

    result = _run(orch)

    assert orch.passes == 2
    assert result["result"]["confidence"] == 0.5
    assert publisher.stages() == [
        "routing",
        "quality_retry",
        "output_validation_failed",
        "budget_exhausted",
    ]
    assert publisher.events[-1][2]["progress"] == 92


def test_invalid_output_retried_when_strict(deps_factory, publisher, clock) -> None:
    offline = ScriptedProvider([output(answer="AB"), output(answer="C", confidence=0.8)], name="offline")
    orch = _orchestrator(deps_factory(offline=offline), clock=clock)

    result = _run(orch)

    assert orch.passes == 2
    assert result["result"]["answer"] == "C"
    assert "output_validation_failed" in publisher.stages()
    failed = [p for _, _, p in publisher.events if p.get("stage") == "output_validation_failed"][0]
    assert failed["progress"] == 88


def test_invalid_output_accepted_raw_when_not_strict(deps_factory, publisher, clock) -> None:
    scenario = make_scenario(quality_policy={"strict_output_validation": False})
    offline = ScriptedProvider([output(answer="AB", confidence=1.8)], name="offline")
    orch = _orchestrator(deps_factory(offline=offline), scenario=scenario, clock=clock)

    result = _run(orch)

    assert orch.passes == 1
    assert result["result"]["answer"] == "AB"
    assert result["result"]["confidence"] == 1.0
    assert result["debug"]["output_validation"] == {
        "ok": False,
        "reason": "invalid_answer_mode:single_option",
    }
    assert "output_validation_failed" in publisher.stages()


def test_low_confidence_switches_to_fallback_workflow(deps_factory, publisher, clock) -> None:
    scenario = make_scenario(
        quality_policy={"sub_type_overrides": {"logic": {"retry_mode": "fallback_workflow"}}}
    )
    offline = ScriptedProvider([output(confidence=0.4), output(confidence=0.9)], name="offline")
    orch = _orchestrator(deps_factory(offline=offline), scenario=scenario, clock=clock)

    result = _run(orch)

    assert [s.workflow_id for s in offline.submissions] == ["wf_main", "wf_fallback"]
    assert result["workflow_id"] == "wf_fallback"
    assert "quality_retry_fallback_workflow" in publisher.stages()
    assert PipelineState.RETRY_FALLBACK_WORKFLOW in orch.transitions


def _remote_scenario(**overrides):
    return make_scenario(workflow_binding={"provider": "remote"}, **overrides)


def test_remote_failure_recovers_on_fallback_workflow(deps_factory, publisher, clock) -> None:
    remote = ScriptedProvider(
        [UpstreamError("upstream_http_error", status_code=502), output(confidence=0.87)],
        name="remote",
        remote=True,
    )
    orch = _orchestrator(deps_factory(primary=remote), scenario=_remote_scenario(), clock=clock)

    result = _run(orch)

    assert [s.workflow_id for s in remote.submissions] == ["wf_main", "wf_fallback"]
    assert result["workflow_id"] == "wf_fallback"
    assert result["result"]["confidence"] == 0.87
    assert "fallback_workflow" in publisher.stages()
    assert PipelineState.FALLBACK_PROVIDER in orch.transitions
    assert orch.transitions[-1] is PipelineState.RETURN


def test_remote_failure_degrades_to_offline(deps_factory, publisher, clock) -> None:
    remote = ScriptedProvider([UpstreamTimeoutError("upstream_timeout")], name="remote", remote=True)
    offline = OfflineWorkflowProvider(publisher, stage_delay_ms=0)
    deps = deps_factory(primary=remote, offline=offline)
    orch = _orchestrator(deps, scenario=_remote_scenario(), clock=clock)

    result = _run(orch)

    assert len(remote.submissions) == 2
    assert result["result"]["answer"] == "B"
    assert result["result"]["confidence"] == 0.75
    assert result["debug"]["provider"] == "offline"
    assert result["debug"]["fallback_reason"] == "upstream_timeout"
    assert result["debug"]["model_path"] == ["provider:offline-fallback", "solver:offline"]
    stages = publisher.stages()
    assert stages.index("fallback_workflow") < stages.index("fallback_offline")
    assert stages[-5:] == ["initializing", "routing", "retrieval", "reasoning", "postprocess"]


def _missing_workflow_executor(calls: list) -> RemoteWorkflowProvider:
    app = FastAPI()

    @app.post("/v1/workflows/run")
    async def run(request: Request):
        calls.append((await request.json())["workflow_id"])
        return JSONResponse({"message": "workflow not found"}, status_code=404)

    def _factory(timeout_s: float | None) -> httpx.AsyncClient:
        transport = httpx.ASGITransport(app=app)
        return httpx.AsyncClient(transport=transport, base_url="http://executor", timeout=timeout_s)

    config = WorkflowConfig(base_url="http://executor", api_key_env=None, retries=0)
    return RemoteWorkflowProvider(config, http_client_factory=_factory)


def test_remote_404_takes_fallback_chain_to_offline(deps_factory, publisher, clock) -> None:
    calls: list = []
    remote = _missing_workflow_executor(calls)
    offline = OfflineWorkflowProvider(publisher, stage_delay_ms=0)
    deps = deps_factory(
        primary=remote,
        offline=offline,
        workflow=WorkflowConfig(fallback_to_offline=True, offline_stage_delay_ms=0),
    )
    orch = _orchestrator(deps, scenario=_remote_scenario(), clock=clock)

    result = _run(orch)

    assert calls == ["wf_main", "wf_fallback"]
    assert result["status"] == "completed"
    assert result["debug"]["provider"] == "offline"
    assert result["debug"]["fallback_reason"] == "upstream_http_error"
    stages = publisher.stages()
    assert stages.index("fallback_workflow") < stages.index("fallback_offline")


def test_fallback_workflow_answer_replaces_earlier_better_pass(deps_factory, clock) -> None:
    remote = ScriptedProvider(
        [
            output(confidence=0.8),
            UpstreamError("upstream_http_error", details={"upstream_status": 502}),
            output(answer="C", confidence=0.5),
        ],
        name="remote",
        remote=True,
    )
    request = _request(quality_tier="strict")
    orch = _orchestrator(
        deps_factory(primary=remote), scenario=_remote_scenario(), request=request, clock=clock
    )

    result = _run(orch)

    assert [s.workflow_id for s in remote.submissions] == ["wf_main", "wf_main", "wf_fallback"]
    assert result["workflow_id"] == "wf_fallback"
    assert result["result"]["answer"] == "C"
    assert result["result"]["confidence"] == 0.5


def test_offline_answer_replaces_earlier_better_pass(deps_factory, clock) -> None:
    remote = ScriptedProvider(
        [output(confidence=0.8), UpstreamTimeoutError("upstream_timeout")],
        name="remote",
        remote=True,
    )
    offline = ScriptedProvider([output(answer="D", confidence=0.6)], name="offline")
    request = _request(quality_tier="strict")
    orch = _orchestrator(
        deps_factory(primary=remote, offline=offline),
        scenario=_remote_scenario(),
        request=request,
        clock=clock,
    )

    result = _run(orch)

    assert len(remote.submissions) == 3
    assert len(offline.submissions) == 1
    assert result["result"]["answer"] == "D"
    assert result["result"]["confidence"] == 0.6
    assert result["debug"]["fallback_reason"] == "upstream_timeout"


def test_remote_failure_without_offline_fallback_raises(deps_factory, clock) -> None:
    remote = ScriptedProvider([UpstreamError("upstream_transport_error")], name="remote", remote=True)
    deps = deps_factory(primary=remote, workflow=WorkflowConfig(fallback_to_offline=False))
    orch = _orchestrator(deps, scenario=_remote_scenario(), clock=clock)

    with pytest.raises(UpstreamError) as excinfo:
        _run(orch)
    assert excinfo.value.message == "upstream_transport_error"
    assert len(remote.submissions) == 1


def test_remote_without_workflow_id_is_not_found(deps_factory, clock) -> None:
    remote = ScriptedProvider([output()], name="remote", remote=True)
    scenario = make_scenario(workflow_binding={"provider": "remote", "workflow_id": None})
    orch = _orchestrator(deps_factory(primary=remote), scenario=scenario, clock=clock)

    with pytest.raises(WorkflowNotFoundError):
        _run(orch)
    assert remote.submissions == []


def test_unknown_sub_type_gets_retry_boost(deps_factory, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.7)], name="offline")
    request = _request(text="hello there", quality_tier="fast")
    orch = _orchestrator(deps_factory(offline=offline), request=request, clock=clock)

    result = _run(orch)

    assert orch.passes == 2
    assert result["sub_type"] == "unknown"
    assert result["debug"]["route"]["knowledge"]["kb_ids"] == ["kb_general"]


def test_forced_sub_type_is_kept_on_every_pass(deps_factory, clock) -> None:
    offline = ScriptedProvider([output(confidence=0.2)], name="offline")
    request = _request(text="图形", force_sub_type="figure_reasoning")
    orch = _orchestrator(deps_factory(offline=offline), request=request, clock=clock)

    result = _run(orch)

    assert {s.inputs["sub_type"] for s in offline.submissions} == {"figure_reasoning"}
    assert result["classifier"] == {"sub_type": "figure_reasoning", "confidence": 0.98, "source": "forced"}


def test_derive_retry_policy_overrides_and_clamps() -> None:
    scenario = make_scenario(
        quality_policy={
            "sub_type_overrides": {
                "logic": {"confidence_threshold": 1.5, "max_retries": 3, "retry_mode": "bogus"},
                "language": {"retry_on_validation_fail": False},
            }
        }
    )
    policy = derive_policy(_request(), scenario)

    logic = derive_retry_policy(scenario, policy, "logic", 0.9)
    assert logic.confidence_threshold == 0.99
    assert logic.max_retries == 3
    assert logic.retry_mode == "same_workflow"

    language = derive_retry_policy(scenario, policy, "language", 0.9)
    assert language.retry_on_validation_fail is False

    unknown = derive_retry_policy(scenario, policy, "unknown", 0.45)
    assert unknown.confidence_threshold == 0.75
    assert unknown.max_retries == 1
