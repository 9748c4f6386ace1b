"""FastAPI app for the inference gateway."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, Response, StreamingResponse

from ..errors import GatewayError, InvalidInputError, TraceNotFoundError
from ..logging_utils import get_logger
from ..models import ExecutionRequest, GatewayHealth
from ..runtime import Runtime
from ..streaming.connections import QueueConnection
from ..streaming.sse import retry_hint
from ..trace import generate_trace_id, normalize_trace_id
from .responses import error_envelope, json_error, json_success

_LOG = get_logger("api")

_SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _trace_id(request: Request) -> str:
    trace_id = getattr(request.state, "trace_id", None)
    if trace_id is None:
        trace_id = normalize_trace_id(request.headers.get("X-Trace-Id")) or generate_trace_id()
        request.state.trace_id = trace_id
    return trace_id


def _validation_errors(exc: RequestValidationError) -> list[dict[str, Any]]:
    return [
        {
            "loc": [str(part) for part in error.get("loc", ())],
            "msg": str(error.get("msg", "")),
            "type": str(error.get("type", "")),
        }
        for error in exc.errors()
    ]


def create_app(runtime: Runtime) -> FastAPI:
    config = runtime.config
    service = runtime.service
    bus = runtime.bus

    @asynccontextmanager
    async def _lifespan(_app: FastAPI) -> AsyncIterator[None]:
        bus.start()
        _LOG.info("Inference gateway started (env={})", config.gateway.env)
        try:
            yield
        finally:
            await service.aclose()
            await bus.stop()
            _LOG.info("Inference gateway stopped")

    app = FastAPI(title="infergate", lifespan=_lifespan)

    @app.middleware("http")
    async def _limit_body(request: Request, call_next):
        content_length = request.headers.get("content-length")
        if content_length:
            try:
                size = int(content_length)
            except ValueError:
                size = None
            if size is not None and size > config.gateway.max_body_bytes:
                return JSONResponse(
                    status_code=413,
                    content=error_envelope(
                        _trace_id(request),
                        InvalidInputError.code,
                        "payload too large",
                        {"max_body_bytes": config.gateway.max_body_bytes},
                    ),
                )
        return await call_next(request)

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(request: Request, exc: RequestValidationError) -> JSONResponse:
        error = InvalidInputError("invalid request body", details={"errors": _validation_errors(exc)})
        return json_error(_trace_id(request), error)

    @app.exception_handler(GatewayError)
    async def _gateway_error(request: Request, exc: GatewayError) -> JSONResponse:
        return json_error(_trace_id(request), exc)

    @app.get("/health", response_model=GatewayHealth)
    def health() -> GatewayHealth:
        return GatewayHealth(**runtime.health())

    @app.get("/metrics")
    def metrics() -> Response:
        return Response(runtime.metrics.render(), media_type=runtime.metrics.content_type)

    @app.post("/v1/infer")
    async def infer(payload: ExecutionRequest, request: Request) -> Any:
        trace_id = _trace_id(request)
        if payload.options.stream:
            accepted = service.submit(payload, trace_id=trace_id)
            return json_success(trace_id, accepted)
        result = await service.infer(payload, trace_id=trace_id)
        return json_success(trace_id, result)

    @app.get("/v1/infer/stream/{stream_trace_id}")
    async def stream(stream_trace_id: str, request: Request) -> Any:
        trace_id = _trace_id(request)
        target = normalize_trace_id(stream_trace_id)
        if target is None:
            raise InvalidInputError("trace id is required")
        connection = QueueConnection(max_frames=config.stream.max_buffered_frames)
        subscription = bus.subscribe(target, connection)

        async def _frames() -> AsyncIterator[str]:
            yield retry_hint(config.stream.retry_ms)
            try:
                async for frame in connection.frames():
                    yield frame
            finally:
                bus.unsubscribe(subscription)
                connection.close()

        return StreamingResponse(
            _frames(),
            media_type="text/event-stream",
            headers={**_SSE_HEADERS, "X-Trace-Id": trace_id},
        )

    @app.get("/v1/traces/{lookup_trace_id}")
    def trace(lookup_trace_id: str, request: Request) -> Any:
        trace_id = _trace_id(request)
        record = runtime.traces.get(lookup_trace_id)
        if record is None:
            raise TraceNotFoundError(
                f"trace not found: {lookup_trace_id}",
                details={"trace_id": lookup_trace_id},
            )
        return json_success(trace_id, record)

    return app


__all__ = ["create_app"]
