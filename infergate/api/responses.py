"""Response envelopes shared by every route."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from fastapi.responses import JSONResponse

from ..errors import GatewayError
from ..models import Envelope, ErrorBody


def _timestamp() -> str:
    return datetime.now(timezone.utc).isoformat()


def success_envelope(trace_id: str, data: Any) -> dict[str, Any]:
    envelope = Envelope(success=True, trace_id=trace_id, timestamp=_timestamp(), data=data)
    return envelope.model_dump(mode="json", exclude={"error"})


def error_envelope(
    trace_id: str, code: str, message: str, details: dict[str, Any] | None = None
) -> dict[str, Any]:
    envelope = Envelope(
        success=False,
        trace_id=trace_id,
        timestamp=_timestamp(),
        error=ErrorBody(code=code, message=message, details=dict(details or {})),
    )
    return envelope.model_dump(mode="json", exclude={"data"})


def json_success(trace_id: str, data: Any, *, status_code: int = 200) -> JSONResponse:
    return JSONResponse(
        content=success_envelope(trace_id, data),
        status_code=status_code,
        headers={"X-Trace-Id": trace_id},
    )


def json_error(trace_id: str, error: GatewayError) -> JSONResponse:
    return JSONResponse(
        content=error_envelope(trace_id, error.code, error.message, error.details),
        status_code=error.status_code,
        headers={"X-Trace-Id": trace_id},
    )
