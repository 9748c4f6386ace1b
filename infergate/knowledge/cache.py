"""Poll-gated, modification-marker driven hot reload."""

from __future__ import annotations

import abc
import threading
import time
from typing import Callable

from ..logging_utils import get_logger


class VersionedCache(abc.ABC):
    """Base for file-backed caches that reload when their source changes.

    ``maybe_refresh`` stats the source at most once per ``reload_interval_s`` and
    reloads only when the modification marker advanced past the loaded one.
    ``current_version`` counts successful loads.
    """

    def __init__(
        self,
        *,
        reload_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
        component: str = "knowledge",
    ) -> None:
        self._reload_interval_s = max(0.0, float(reload_interval_s))
        self._clock = clock
        self._lock = threading.RLock()
        self._version = 0
        self._loaded_marker = 0
        self._last_check: float | None = None
        self._log = get_logger(component)

    @abc.abstractmethod
    def _source_marker(self) -> int:
        """Return the source modification marker (0 when absent)."""

    @abc.abstractmethod
    def _read_source(self) -> None:
        """Replace cached state from the source. Called with the lock held."""

    def load(self) -> None:
        with self._lock:
            marker = self._source_marker()
            self._read_source()
            self._loaded_marker = marker
            self._version += 1

    def current_version(self) -> int:
        with self._lock:
            return self._version

    def maybe_refresh(self, now: float | None = None) -> bool:
        """Reload when due; returns ``True`` when a reload happened."""

        current = self._clock() if now is None else now
        with self._lock:
            if (
                self._last_check is not None
                and current - self._last_check < self._reload_interval_s
            ):
                return False
            self._last_check = current
            marker = self._source_marker()
            if marker <= self._loaded_marker:
                return False
            self._log.info("Source changed; reloading {}", self.__class__.__name__)
            self._read_source()
            self._loaded_marker = marker
            self._version += 1
            return True
