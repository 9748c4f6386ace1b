from __future__ import annotations

import pytest

from infergate.api import create_app
from infergate.config import AppConfig, GatewayConfig, StreamConfig
from infergate.runtime import build_runtime
from support import FakeConnection, make_scenario


def _payload(**options):
    return {
        "scenario_id": "exam_qa",
        "input": {"text": "which premise supports the conclusion"},
        "options": options,
        "context": {"tenant_id": "acme", "user_id": "u-7"},
    }


@pytest.fixture
def runtime(app_config: AppConfig):
    return build_runtime(
        app_config,
        scenarios=[make_scenario(), make_scenario(scenario_id="closed_qa", enabled=False)],
    )


def _event_names(body: str) -> list[str]:
    return [line[len("event: "):] for line in body.splitlines() if line.startswith("event: ")]


@pytest.mark.anyio
async def test_health_reports_runtime_state(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.get("/health")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert data["env"] == runtime.config.gateway.env
    assert data["scenario_count"] == 2
    assert sorted(data["scenarios"]) == ["closed_qa", "exam_qa"]
    assert data["stream"]["active_connections"] == 0
    assert data["workflow"] == {
        "remote_configured": False,
        "fallback_to_offline": True,
        "circuit": "closed",
    }
    assert data["knowledge"]["registry"]["version"] == "7"
    assert data["knowledge"]["resources_ok"] is True


@pytest.mark.anyio
async def test_sync_infer_returns_envelope(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post(
            "/v1/infer", json=_payload(), headers={"X-Trace-Id": "trc_client_1"}
        )
        metrics = await client.get("/metrics")
        lookup = await client.get("/v1/traces/trc_client_1")

    assert response.status_code == 200
    assert response.headers["X-Trace-Id"] == "trc_client_1"
    body = response.json()
    assert body["success"] is True
    assert body["trace_id"] == "trc_client_1"
    assert "error" not in body
    data = body["data"]
    assert data["sub_type"] == "logic"
    assert data["result"]["answer"] == "B"
    assert data["result"]["confidence"] == 0.75
    assert data["result"]["evidence"]
    assert data["debug"]["model_path"] == ["router:offline", "solver:offline"]
    assert data["debug"]["kb_plan_actual_diff"]["match"] is True

    assert metrics.status_code == 200
    assert "infergate_requests_total" in metrics.text
    samples = runtime.metrics.registry
    assert samples.get_sample_value("infergate_requests_total", {"mode": "sync", "code": "OK"}) == 1.0
    assert (
        samples.get_sample_value("infergate_passes_total", {"provider": "offline", "outcome": "ok"})
        == 1.0
    )

    record = lookup.json()["data"]
    assert record["status"] == "completed"
    assert record["scenario_id"] == "exam_qa"
    assert record["tenant_id"] == "acme"
    assert record["request_meta"]["quality_tier"] == "balanced"
    assert record["result"]["trace_id"] == "trc_client_1"


@pytest.mark.anyio
async def test_generated_trace_id_is_echoed(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post("/v1/infer", json=_payload())
    trace_id = response.headers["X-Trace-Id"]
    assert trace_id.startswith("trc_")
    assert response.json()["trace_id"] == trace_id


@pytest.mark.anyio
async def test_invalid_body_is_rejected(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post("/v1/infer", json={"scenario_id": "exam_qa"})
    assert response.status_code == 400
    body = response.json()
    assert body["success"] is False
    assert "data" not in body
    assert body["error"]["code"] == "INVALID_INPUT"
    assert body["error"]["message"] == "invalid request body"
    assert any("input" in err["loc"] for err in body["error"]["details"]["errors"])


@pytest.mark.anyio
async def test_scenario_schema_violation_is_invalid_input(runtime, async_client_factory) -> None:
    payload = _payload()
    payload["input"]["images"] = ["https://cdn.example/x.png"] * 4
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post("/v1/infer", json=payload)
    assert response.status_code == 400
    assert response.json()["error"]["message"] == "input.images exceeds 3"


@pytest.mark.anyio
async def test_unknown_and_disabled_scenarios(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        missing = await client.post("/v1/infer", json={**_payload(), "scenario_id": "nope"})
        disabled = await client.post("/v1/infer", json={**_payload(), "scenario_id": "closed_qa"})

    assert missing.status_code == 404
    assert missing.json()["error"]["code"] == "SCENARIO_NOT_FOUND"
    assert missing.json()["error"]["message"] == "scenario not found: nope"
    assert disabled.status_code == 403
    assert disabled.json()["error"]["code"] == "FORBIDDEN"


@pytest.mark.anyio
async def test_oversized_body_is_rejected(knowledge_config, async_client_factory) -> None:
    config = AppConfig(knowledge=knowledge_config, gateway=GatewayConfig(max_body_bytes=1024))
    runtime = build_runtime(config, scenarios=[make_scenario()])
    payload = _payload()
    payload["input"]["text"] = "x" * 2048
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post("/v1/infer", json=payload)
    assert response.status_code == 413
    assert response.json()["error"]["code"] == "INVALID_INPUT"
    assert response.json()["error"]["details"] == {"max_body_bytes": 1024}


@pytest.mark.anyio
async def test_stream_submit_then_replay(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        accepted = await client.post(
            "/v1/infer", json=_payload(stream=True), headers={"X-Trace-Id": "trc_stream_1"}
        )
        assert accepted.status_code == 200
        data = accepted.json()["data"]
        assert data["status"] == "processing"
        assert data["stream_url"] == "/v1/infer/stream/trc_stream_1"
        assert data["policy"]["quality_tier"] == "balanced"

        await runtime.service.drain()
        stream = await client.get(data["stream_url"])

    assert stream.status_code == 200
    assert stream.headers["content-type"].startswith("text/event-stream")
    assert stream.headers["cache-control"] == "no-cache"
    assert stream.headers["x-accel-buffering"] == "no"
    assert stream.text.startswith("retry: 3000\n\n")
    assert _event_names(stream.text) == ["connected", "completed"]
    assert runtime.traces.get("trc_stream_1")["status"] == "completed"
    assert runtime.bus.stats()["active_connections"] == 0


@pytest.mark.anyio
async def test_stream_submit_error_is_terminal(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.post(
            "/v1/infer",
            json={**_payload(stream=True), "scenario_id": "nope"},
            headers={"X-Trace-Id": "trc_stream_2"},
        )
        stream = await client.get("/v1/infer/stream/trc_stream_2")

    assert response.status_code == 404
    assert _event_names(stream.text) == ["connected", "error"]
    assert runtime.bus.latest("trc_stream_2").payload["code"] == "SCENARIO_NOT_FOUND"


@pytest.mark.anyio
async def test_stream_capacity_rejects_with_503(knowledge_config, async_client_factory) -> None:
    config = AppConfig(knowledge=knowledge_config, stream=StreamConfig(max_connections=1))
    runtime = build_runtime(config, scenarios=[make_scenario()])
    runtime.bus.subscribe("trc_busy", FakeConnection())
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.get("/v1/infer/stream/trc_other")
    assert response.status_code == 503
    assert response.json()["error"]["code"] == "CAPACITY_EXCEEDED"


@pytest.mark.anyio
async def test_unknown_trace_is_not_found(runtime, async_client_factory) -> None:
    async with async_client_factory(create_app(runtime)) as client:
        response = await client.get("/v1/traces/trc_missing")
    assert response.status_code == 404
    assert response.json()["error"]["code"] == "NOT_FOUND"
