"""Sub-type classification with request-scoped caching and remote delegation."""

from __future__ import annotations

import httpx

from ..config import ClassifierConfig
from ..errors import GatewayError
from ..logging_utils import get_logger
from ..models import ExecutionRequest
from ..scenarios.models import ScenarioSpec
from ..streaming.bus import EventPublisher
from .heuristics import FORCED_CONFIDENCE, ClassificationResult, classify_heuristic
from .remote import RemoteClassifier


class ClassificationRouter:
    """Decides the sub-type of a request.

    Order: forced sub-type, the prior result on retry passes (unless
    ``reclassify_on_retry``), the remote classifier when configured, then the
    keyword heuristics. A remote failure always falls through to the heuristics.
    """

    def __init__(
        self,
        config: ClassifierConfig,
        *,
        remote: RemoteClassifier | None = None,
        bus: EventPublisher | None = None,
    ) -> None:
        self._config = config
        self._remote = remote
        self._bus = bus
        self._log = get_logger("routing.classifier")

    async def classify(
        self,
        request: ExecutionRequest,
        scenario: ScenarioSpec,
        prior: ClassificationResult | None = None,
        retry_index: int = 0,
        *,
        trace_id: str,
    ) -> ClassificationResult:
        forced = request.forced_sub_type()
        if forced:
            return ClassificationResult(forced, FORCED_CONFIDENCE, "forced")

        if prior is not None and retry_index > 0 and not self._config.reclassify_on_retry:
            return prior

        if self._config.mode == "remote" and self._remote is not None:
            if self._bus is not None:
                self._bus.publish(
                    trace_id,
                    "progress",
                    {
                        "trace_id": trace_id,
                        "stage": "subtype_classifying",
                        "progress": 12,
                        "message": "classifying sub-type via remote classifier",
                    },
                )
            try:
                return await self._remote.classify(request, scenario, trace_id=trace_id)
            except (GatewayError, httpx.HTTPError) as exc:
                self._log.warning(
                    "Remote classifier failed for {}; using heuristics: {}", trace_id, exc
                )

        return classify_heuristic(
            request,
            scenario,
            image_only_sub_type=self._config.image_only_default_sub_type,
            image_only_confidence=self._config.image_only_confidence,
        )
