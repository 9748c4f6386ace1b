"""Progress streaming: per-trace bus, connection adapters and SSE framing."""

from .bus import EventPublisher, StreamBus, StreamEvent, Subscription, TERMINAL_EVENTS
from .connections import QueueConnection, SubscriberConnection
from .sse import format_sse, retry_hint

__all__ = [
    "EventPublisher",
    "QueueConnection",
    "StreamBus",
    "StreamEvent",
    "SubscriberConnection",
    "Subscription",
    "TERMINAL_EVENTS",
    "format_sse",
    "retry_hint",
]
