"""Per-trace fan-out of progress and result events to live subscribers."""

from __future__ import annotations

import asyncio
import itertools
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Callable, Optional, Protocol

from ..errors import CapacityExceededError
from ..logging_utils import get_logger
from ..metrics import GatewayMetrics
from .connections import SubscriberConnection
from .sse import format_sse

TERMINAL_EVENTS = frozenset({"completed", "error"})
STREAM_TIMEOUT_CODE = "STREAM_TIMEOUT"
MAX_SWEEP_INTERVAL_S = 10.0


class EventPublisher(Protocol):
    def publish(self, trace_id: str, event_type: str, payload: dict[str, Any]) -> None: ...


@dataclass(frozen=True)
class StreamEvent:
    trace_id: str
    type: str
    payload: dict[str, Any]

    @property
    def terminal(self) -> bool:
        return self.type in TERMINAL_EVENTS


@dataclass(eq=False)
class Subscription:
    trace_id: str
    connection: SubscriberConnection
    connected_at: float
    last_activity: float
    last_heartbeat: float
    sub_id: int = 0
    active: bool = field(default=True)


class StreamBus:
    """Multiplexes stream events to any number of subscribers per trace.

    A subscriber that attaches late receives only the most recent event for the
    trace, then live events. ``completed`` and ``error`` are terminal: they close
    and unregister every subscriber of the trace, and later events for that
    trace are dropped. All mutable state sits behind one lock; connections must
    not block in ``send``/``close``.
    """

    def __init__(
        self,
        *,
        heartbeat_s: float = 15.0,
        client_ttl_s: float = 120.0,
        max_connections: int = 2000,
        max_tracked_traces: int = 10000,
        clock: Callable[[], float] = time.monotonic,
        metrics: Optional[GatewayMetrics] = None,
    ) -> None:
        self.heartbeat_s = float(heartbeat_s)
        self.client_ttl_s = float(client_ttl_s)
        self.max_connections = int(max_connections)
        self.max_tracked_traces = int(max_tracked_traces)
        self._clock = clock
        self._metrics = metrics
        self._lock = threading.Lock()
        self._groups: dict[str, set[Subscription]] = {}
        self._latest: OrderedDict[str, StreamEvent] = OrderedDict()
        self._total = 0
        self._ids = itertools.count(1)
        self._task: asyncio.Task | None = None
        self._log = get_logger("stream")

    # -- admission -------------------------------------------------------

    def can_accept(self) -> bool:
        with self._lock:
            return self._total < self.max_connections

    def subscribe(self, trace_id: str, connection: SubscriberConnection) -> Subscription:
        """Attach ``connection`` to ``trace_id``.

        Sends ``connected`` and then the latest snapshot, if any. When the
        snapshot is terminal the connection is closed at once and the returned
        subscription is inactive.
        """

        now = self._clock()
        with self._lock:
            if self._total >= self.max_connections:
                if self._metrics:
                    self._metrics.stream_rejected()
                raise CapacityExceededError(
                    "stream capacity reached",
                    details={"max_connections": self.max_connections},
                )
            subscription = Subscription(
                trace_id=trace_id,
                connection=connection,
                connected_at=now,
                last_activity=now,
                last_heartbeat=now,
                sub_id=next(self._ids),
            )
            self._safe_send(
                subscription, "connected", {"trace_id": trace_id, "status": "connected"}
            )
            snapshot = self._latest.get(trace_id)
            if snapshot is not None:
                self._safe_send(subscription, snapshot.type, snapshot.payload)
                if snapshot.terminal:
                    subscription.active = False
                    connection.close()
                    return subscription
            if not subscription.active:
                return subscription
            self._groups.setdefault(trace_id, set()).add(subscription)
            self._total += 1
            self._report_active()
        if self._metrics:
            self._metrics.stream_opened()
        self._log.debug("Subscriber {} attached to {}", subscription.sub_id, trace_id)
        return subscription

    def unsubscribe(self, subscription: Subscription) -> None:
        with self._lock:
            self._remove(subscription)

    # -- publishing ------------------------------------------------------

    def publish(self, trace_id: str, event_type: str, payload: dict[str, Any]) -> None:
        event = StreamEvent(trace_id, event_type, dict(payload))
        with self._lock:
            previous = self._latest.get(trace_id)
            if previous is not None and previous.terminal:
                if event.terminal:
                    self._log.warning(
                        "Dropping second terminal event {} for trace {}", event_type, trace_id
                    )
                else:
                    self._log.debug("Dropping {} after terminal event for {}", event_type, trace_id)
                return
            self._remember(event)
            group = list(self._groups.get(trace_id, ()))
            now = self._clock()
            for subscription in group:
                subscription.last_activity = now
                self._safe_send(subscription, event_type, event.payload)
                if event.terminal:
                    self._close(subscription)

    def latest(self, trace_id: str) -> Optional[StreamEvent]:
        with self._lock:
            return self._latest.get(trace_id)

    # -- maintenance -----------------------------------------------------

    def send_heartbeats(self, now: float | None = None) -> int:
        current = self._clock() if now is None else now
        sent = 0
        with self._lock:
            for subscription in self._all():
                if subscription.connection.closed:
                    self._remove(subscription)
                    continue
                if current - subscription.last_heartbeat < self.heartbeat_s:
                    continue
                subscription.last_heartbeat = current
                self._safe_send(
                    subscription,
                    "heartbeat",
                    {"trace_id": subscription.trace_id, "ts": int(time.time() * 1000)},
                )
                sent += 1
        return sent

    def sweep(self, now: float | None = None) -> int:
        """Close subscriptions idle beyond the TTL or alive beyond twice the TTL."""

        current = self._clock() if now is None else now
        expired = 0
        with self._lock:
            for subscription in self._all():
                idle = current - subscription.last_activity
                alive = current - subscription.connected_at
                if idle <= self.client_ttl_s and alive <= self.client_ttl_s * 2:
                    continue
                self._safe_send(
                    subscription,
                    "error",
                    {
                        "trace_id": subscription.trace_id,
                        "code": STREAM_TIMEOUT_CODE,
                        "message": "stream connection timeout",
                    },
                )
                self._close(subscription)
                expired += 1
        if expired:
            self._log.info("Closed {} stale stream connection(s)", expired)
        return expired

    @property
    def maintenance_interval_s(self) -> float:
        return min(self.heartbeat_s, MAX_SWEEP_INTERVAL_S)

    async def _maintenance_loop(self) -> None:
        while True:
            await asyncio.sleep(self.maintenance_interval_s)
            now = self._clock()
            self.send_heartbeats(now)
            self.sweep(now)

    def start(self) -> None:
        if self._task is not None and not self._task.done():
            return
        self._task = asyncio.get_running_loop().create_task(self._maintenance_loop())

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        with self._lock:
            for subscription in self._all():
                self._close(subscription)

    def stats(self) -> dict[str, Any]:
        with self._lock:
            return {
                "active_connections": self._total,
                "trace_groups": len(self._groups),
                "tracked_traces": len(self._latest),
                "max_connections": self.max_connections,
                "heartbeat_ms": int(self.heartbeat_s * 1000),
                "client_ttl_ms": int(self.client_ttl_s * 1000),
            }

    # -- internals (lock held) -------------------------------------------

    def _all(self) -> list[Subscription]:
        return [sub for group in self._groups.values() for sub in group]

    def _remember(self, event: StreamEvent) -> None:
        self._latest[event.trace_id] = event
        self._latest.move_to_end(event.trace_id)
        while len(self._latest) > self.max_tracked_traces:
            self._latest.popitem(last=False)

    def _safe_send(self, subscription: Subscription, event_type: str, payload: dict[str, Any]) -> None:
        if subscription.connection.closed:
            return
        try:
            subscription.connection.send(format_sse(event_type, payload))
        except Exception as exc:
            self._log.warning(
                "Stream send failed for {} ({}): {}", subscription.trace_id, event_type, exc
            )
            self._close(subscription)

    def _close(self, subscription: Subscription) -> None:
        try:
            subscription.connection.close()
        finally:
            self._remove(subscription)

    def _remove(self, subscription: Subscription) -> None:
        if not subscription.active:
            return
        subscription.active = False
        group = self._groups.get(subscription.trace_id)
        if group is not None and subscription in group:
            group.discard(subscription)
            self._total = max(0, self._total - 1)
            if not group:
                self._groups.pop(subscription.trace_id, None)
        self._report_active()

    def _report_active(self) -> None:
        if self._metrics:
            self._metrics.set_active_connections(self._total)
