"""Remote sub-type classifier backed by a workflow executor."""

from __future__ import annotations

from typing import Any, Callable

import httpx

from ..config import ClassifierConfig
from ..errors import UpstreamError
from ..models import ExecutionRequest
from ..providers.files import build_image_files
from ..scenarios.models import ScenarioSpec
from .heuristics import UNKNOWN_SUB_TYPE, ClassificationResult
from .plans import classifier_hints

DEFAULT_REMOTE_CONFIDENCE = 0.6


class RemoteClassifier:
    def __init__(
        self,
        config: ClassifierConfig,
        *,
        http_client_factory: Callable[..., httpx.AsyncClient] | None = None,
    ) -> None:
        self._config = config
        self._client_factory = http_client_factory

    @property
    def configured(self) -> bool:
        return bool(self._config.base_url and self._config.resolved_api_key())

    def _client(self, timeout_s: float) -> httpx.AsyncClient:
        if self._client_factory:
            return self._client_factory(timeout_s=timeout_s)
        return httpx.AsyncClient(timeout=timeout_s)

    async def classify(
        self,
        request: ExecutionRequest,
        scenario: ScenarioSpec,
        *,
        trace_id: str,
    ) -> ClassificationResult:
        base_url = (self._config.base_url or "").rstrip("/")
        api_key = self._config.resolved_api_key()
        if not base_url or not api_key:
            raise UpstreamError("classifier_not_configured")

        files = build_image_files(request.input)
        body = {
            "inputs": {
                "input": request.input.model_dump(exclude_none=True),
                "images": files,
                "context": request.context.model_dump(exclude_none=True),
                "scenario_id": scenario.scenario_id,
                "classifier_hints": classifier_hints(scenario),
                "trace_id": trace_id,
            },
            "response_mode": "blocking",
            "user": f"classifier:{trace_id}",
            "files": files,
        }
        headers = {"Content-Type": "application/json", "Authorization": f"Bearer {api_key}"}

        async with self._client(self._config.timeout_ms / 1000.0) as client:
            response = await client.post(f"{base_url}/v1/workflows/run", json=body, headers=headers)
        if response.status_code >= 400:
            raise UpstreamError(
                "classifier_upstream_failed", details={"upstream_status": response.status_code}
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise UpstreamError("classifier_malformed_response") from exc
        return parse_classifier_outputs(data)


def parse_classifier_outputs(data: Any) -> ClassificationResult:
    outputs: dict[str, Any] = {}
    if isinstance(data, dict) and isinstance(data.get("data"), dict):
        raw_outputs = data["data"].get("outputs")
        if isinstance(raw_outputs, dict):
            outputs = raw_outputs
    sub_type = outputs.get("sub_type") or outputs.get("question_type") or UNKNOWN_SUB_TYPE
    try:
        confidence = float(outputs.get("confidence") or DEFAULT_REMOTE_CONFIDENCE)
    except (TypeError, ValueError):
        confidence = DEFAULT_REMOTE_CONFIDENCE
    if confidence != confidence:
        confidence = DEFAULT_REMOTE_CONFIDENCE
    return ClassificationResult(
        str(sub_type).strip() or UNKNOWN_SUB_TYPE,
        max(0.0, min(1.0, confidence)),
        "remote_classifier",
    )
