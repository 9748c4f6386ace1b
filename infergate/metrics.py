"""Prometheus metrics for inference requests and stream connections."""

from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_LATENCY_BUCKETS_MS = (50, 100, 250, 500, 1000, 2000, 4000, 8000, 15000, 30000, 60000)


class GatewayMetrics:
    """Request, pass and stream metrics bound to their own collector registry."""

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, *, enabled: bool = True, registry: CollectorRegistry | None = None) -> None:
        self.enabled = enabled
        self.registry = registry or CollectorRegistry()
        self.requests_total = Counter(
            "infergate_requests_total",
            "Inference requests by mode and outcome code",
            ["mode", "code"],
            registry=self.registry,
        )
        self.latency_ms = Histogram(
            "infergate_request_latency_ms",
            "End-to-end inference latency in milliseconds",
            ["mode"],
            buckets=_LATENCY_BUCKETS_MS,
            registry=self.registry,
        )
        self.passes_total = Counter(
            "infergate_passes_total",
            "Workflow passes by provider and outcome",
            ["provider", "outcome"],
            registry=self.registry,
        )
        self.fallbacks_total = Counter(
            "infergate_fallbacks_total",
            "Fallbacks taken by kind",
            ["kind"],
            registry=self.registry,
        )
        self.stream_connections_total = Counter(
            "infergate_stream_connections_total",
            "Accepted stream subscriptions",
            registry=self.registry,
        )
        self.stream_rejections_total = Counter(
            "infergate_stream_rejections_total",
            "Stream subscriptions rejected at the connection ceiling",
            registry=self.registry,
        )
        self.stream_active_connections = Gauge(
            "infergate_stream_active_connections",
            "Currently registered stream subscriptions",
            registry=self.registry,
        )

    def observe_request(self, mode: str, code: str, latency_ms: float) -> None:
        if not self.enabled:
            return
        self.requests_total.labels(mode, code).inc()
        self.latency_ms.labels(mode).observe(latency_ms)

    def observe_pass(self, provider: str, outcome: str) -> None:
        if self.enabled:
            self.passes_total.labels(provider, outcome).inc()

    def observe_fallback(self, kind: str) -> None:
        if self.enabled:
            self.fallbacks_total.labels(kind).inc()

    def stream_opened(self) -> None:
        if self.enabled:
            self.stream_connections_total.inc()

    def stream_rejected(self) -> None:
        if self.enabled:
            self.stream_rejections_total.inc()

    def set_active_connections(self, count: int) -> None:
        if self.enabled:
            self.stream_active_connections.set(count)

    def render(self) -> bytes:
        return generate_latest(self.registry)
