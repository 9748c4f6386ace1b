"""Subscriber connection adapters for the stream bus."""

from __future__ import annotations

import asyncio
from typing import AsyncIterator, Optional, Protocol

from ..logging_utils import get_logger

_LOG = get_logger("streaming.connections")


class SubscriberConnection(Protocol):
    """Sink for encoded frames. ``send`` and ``close`` must not block."""

    @property
    def closed(self) -> bool: ...

    def send(self, frame: str) -> None: ...

    def close(self) -> None: ...


class QueueConnection:
    """Frames buffered on an asyncio queue and drained by an HTTP response body.

    ``send`` and ``close`` may be called from any thread; delivery onto the queue
    always happens on the owning loop. At most ``max_frames`` frames wait on the
    queue; a subscriber that falls further behind is closed, and the response
    body ends once the frames already buffered are drained.
    """

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        *,
        max_frames: int = 1024,
    ) -> None:
        if max_frames < 1:
            raise ValueError("max_frames must be >= 1")
        self._loop = loop or asyncio.get_running_loop()
        self._max_frames = max_frames
        # one extra slot for the end-of-stream marker
        self._queue: asyncio.Queue[str | None] = asyncio.Queue(maxsize=max_frames + 1)
        self._closed = False
        self._sealed = False
        self.overflowed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def _put(self, item: str | None) -> None:
        # runs on the owning loop only
        if self._sealed:
            return
        if item is not None and self._queue.qsize() >= self._max_frames:
            self.overflowed = True
            _LOG.warning("Stream subscriber fell {} frames behind; closing", self._max_frames)
            item = None
        if item is None:
            self._sealed = True
            self._closed = True
        self._queue.put_nowait(item)

    def _deliver(self, item: str | None) -> None:
        try:
            running = asyncio.get_running_loop()
        except RuntimeError:
            running = None
        if running is self._loop:
            self._put(item)
        elif not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._put, item)

    def send(self, frame: str) -> None:
        if self._closed:
            return
        self._deliver(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._deliver(None)

    async def frames(self) -> AsyncIterator[str]:
        while True:
            frame = await self._queue.get()
            if frame is None:
                return
            yield frame
