"""Error taxonomy shared by the orchestration core and the HTTP surface."""

from __future__ import annotations

from typing import Any


class GatewayError(RuntimeError):
    """Base error carrying a stable code and the HTTP status it maps to."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(
        self,
        message: str,
        *,
        details: dict[str, Any] | None = None,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})
        if status_code is not None:
            self.status_code = status_code

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": dict(self.details)}


class InvalidInputError(GatewayError):
    code = "INVALID_INPUT"
    status_code = 400


class ScenarioNotFoundError(GatewayError):
    code = "SCENARIO_NOT_FOUND"
    status_code = 404


class ScenarioDisabledError(GatewayError):
    code = "FORBIDDEN"
    status_code = 403


class TraceNotFoundError(GatewayError):
    code = "NOT_FOUND"
    status_code = 404


class WorkflowNotFoundError(GatewayError):
    code = "WORKFLOW_NOT_FOUND"
    status_code = 404


class UpstreamError(GatewayError):
    """Non-success or malformed workflow executor response."""

    code = "UPSTREAM_ERROR"
    status_code = 502


class UpstreamTimeoutError(UpstreamError):
    code = "UPSTREAM_TIMEOUT"
    status_code = 504


class CapacityExceededError(GatewayError):
    code = "CAPACITY_EXCEEDED"
    status_code = 503


class KnowledgeRegistryError(GatewayError):
    code = "KNOWLEDGE_REGISTRY_ERROR"
    status_code = 500


def as_gateway_error(exc: BaseException) -> GatewayError:
    if isinstance(exc, GatewayError):
        return exc
    error = GatewayError(str(exc) or exc.__class__.__name__)
    error.__cause__ = exc
    return error
