"""Remote workflow executor client."""

from __future__ import annotations

import json
import time
from typing import Any, Callable, Mapping, Optional

import httpx

from ..config import WorkflowConfig
from ..errors import UpstreamError, UpstreamTimeoutError
from ..knowledge.models import KnowledgePlan
from ..knowledge.planner import PLANNED_FALLBACK_SOURCE, planned_kb_hits
from ..logging_utils import get_logger
from ..resilience import BackoffPolicy, CircuitBreaker, is_retryable_exception, retry_async
from .base import WorkflowOutput, WorkflowProvider, WorkflowSubmission

_LOG = get_logger("providers.remote")


class RemoteWorkflowProvider(WorkflowProvider):
    """Runs workflows on a remote executor in blocking mode.

    Transport errors are retried within the pass timeout; HTTP errors (404
    included), timeouts and malformed payloads surface as :class:`UpstreamError`
    so the orchestrator can take its fallback chain.
    """

    name = "remote"
    is_remote = True

    def __init__(
        self,
        config: WorkflowConfig,
        *,
        http_client_factory: Callable[..., httpx.AsyncClient] | None = None,
        breaker: CircuitBreaker | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._config = config
        self._client_factory = http_client_factory
        self._clock = clock
        self._breaker = breaker or CircuitBreaker(
            config.circuit_breaker.failure_threshold,
            config.circuit_breaker.reset_timeout_s,
            clock=clock,
        )

    @property
    def timeout_ms(self) -> Optional[int]:
        return None if self._config.disable_timeout else self._config.timeout_ms

    @property
    def breaker(self) -> CircuitBreaker:
        return self._breaker

    def _client(self, timeout_s: float | None) -> httpx.AsyncClient:
        if self._client_factory:
            return self._client_factory(timeout_s=timeout_s)
        return httpx.AsyncClient(timeout=timeout_s)

    async def submit(self, submission: WorkflowSubmission) -> WorkflowOutput:
        base_url = (self._config.base_url or "").rstrip("/")
        if not base_url:
            raise UpstreamError("workflow_base_url_missing")
        if not self._breaker.allow():
            raise UpstreamError("upstream_circuit_open", status_code=503)

        headers = {"Content-Type": "application/json"}
        api_key = self._config.resolved_api_key()
        if api_key:
            headers["Authorization"] = f"Bearer {api_key}"
        body = {
            "workflow_id": submission.workflow_id,
            "inputs": submission.inputs,
            "response_mode": "blocking",
            "user": submission.user_tag,
            "files": submission.files,
        }
        timeout_s = submission.timeout_ms / 1000.0 if submission.timeout_ms else None
        deadline = self._clock() + timeout_s if timeout_s else None
        started = time.monotonic()

        async def _request() -> Any:
            async with self._client(timeout_s) as client:
                response = await client.post(
                    f"{base_url}/v1/workflows/run",
                    json=body,
                    headers=headers,
                )
                response.raise_for_status()
                return response.json()

        try:
            data = await retry_async(
                _request,
                policy=BackoffPolicy(max_retries=self._config.retries),
                is_retryable=is_retryable_exception,
                deadline=deadline,
                clock=self._clock,
            )
        except httpx.TimeoutException as exc:
            self._breaker.record_failure(exc)
            raise UpstreamTimeoutError(
                "upstream_timeout",
                details={"timeout_ms": submission.timeout_ms, "workflow_id": submission.workflow_id},
            ) from exc
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            self._breaker.record_failure(exc)
            raise UpstreamError(
                "upstream_http_error",
                details={"upstream_status": status, "workflow_id": submission.workflow_id},
            ) from exc
        except httpx.HTTPError as exc:
            self._breaker.record_failure(exc)
            raise UpstreamError(
                "upstream_transport_error", details={"reason": str(exc) or exc.__class__.__name__}
            ) from exc
        except ValueError as exc:
            self._breaker.record_failure(exc)
            raise UpstreamError("upstream_malformed_response") from exc

        output = parse_workflow_response(data, submission)
        self._breaker.record_success()
        output.latency_ms = round((time.monotonic() - started) * 1000, 1)
        _LOG.debug(
            "Workflow {} answered in {} ms for {}",
            submission.workflow_id,
            output.latency_ms,
            submission.trace_id,
        )
        return output


def _as_mapping(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}


def _unwrap_outputs(outputs: dict[str, Any]) -> dict[str, Any]:
    nested = outputs.get("result")
    if isinstance(nested, Mapping):
        return {**outputs, **nested}
    text = outputs.get("text")
    if "answer" not in outputs and isinstance(text, str) and text.strip().startswith("{"):
        try:
            decoded = json.loads(text)
        except ValueError:
            return outputs
        if isinstance(decoded, dict):
            return {**outputs, **decoded}
    return outputs


def _as_evidence(value: Any) -> list[Any]:
    if isinstance(value, list):
        return list(value)
    if isinstance(value, str) and value.strip():
        return [value]
    return []


def parse_workflow_response(data: Any, submission: WorkflowSubmission) -> WorkflowOutput:
    if not isinstance(data, Mapping):
        raise UpstreamError("upstream_malformed_response")
    envelope = _as_mapping(data.get("data"))
    status = envelope.get("status")
    if status and status != "succeeded":
        raise UpstreamError(
            "upstream_workflow_failed",
            details={"status": status, "error": envelope.get("error")},
        )
    raw_outputs = envelope.get("outputs")
    if not isinstance(raw_outputs, Mapping):
        raise UpstreamError("upstream_malformed_response", details={"reason": "outputs_missing"})
    outputs = _unwrap_outputs(dict(raw_outputs))

    answer = outputs.get("answer")
    if answer is None and not isinstance(outputs.get("result"), Mapping):
        answer = outputs.get("result")

    hits = outputs.get("kb_hits")
    if isinstance(hits, list) and hits:
        kb_hits = [dict(hit) for hit in hits if isinstance(hit, Mapping)]
        source = str(outputs.get("kb_hits_source") or "workflow")
    else:
        plan = KnowledgePlan.from_dict(_as_mapping(submission.inputs.get("knowledge")))
        kb_hits = planned_kb_hits(plan)
        source = PLANNED_FALLBACK_SOURCE

    model_path = outputs.get("model_path")
    if not isinstance(model_path, list) or not model_path:
        model_path = ["provider:remote", f"workflow:{submission.workflow_id or 'default'}"]

    sub_type = outputs.get("sub_type")
    return WorkflowOutput(
        answer=answer,
        evidence=_as_evidence(outputs.get("evidence")),
        confidence=outputs.get("confidence"),
        sub_type=sub_type if isinstance(sub_type, str) else None,
        raw_outputs=dict(raw_outputs),
        kb_hits=kb_hits,
        kb_hits_source=source,
        model_path=[str(step) for step in model_path],
    )
