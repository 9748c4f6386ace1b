"""File-backed knowledge-base registry."""

from __future__ import annotations

import copy
import json
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable

from ..errors import KnowledgeRegistryError
from .cache import VersionedCache
from .models import KnowledgeItem, KnowledgePlan


def _empty_registry() -> dict[str, Any]:
    return {
        "version": "0",
        "updated_at": datetime.now(timezone.utc).isoformat(),
        "items": [],
    }


class KnowledgeRegistry(VersionedCache):
    """Registry of KB ids with version, status and source.

    The backing JSON file has the shape
    ``{version, updated_at, items: [{kb_id, kb_version, status, source}]}``.
    Load problems leave an empty registry and a recorded ``load_error``; with
    ``fail_fast`` they raise :class:`KnowledgeRegistryError` instead.
    """

    def __init__(
        self,
        path: Path | str,
        *,
        allow_inactive: bool = False,
        fail_fast: bool = False,
        reload_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(reload_interval_s=reload_interval_s, clock=clock, component="knowledge.registry")
        self._path = Path(path)
        self._allow_inactive = allow_inactive
        self._fail_fast = fail_fast
        self._registry: dict[str, Any] = _empty_registry()
        self._index: dict[str, dict[str, Any]] = {}
        self._load_error: dict[str, Any] | None = None

    @property
    def allow_inactive(self) -> bool:
        return self._allow_inactive

    def _source_marker(self) -> int:
        try:
            return self._path.stat().st_mtime_ns
        except OSError:
            return 0

    def _fail(self, error: dict[str, Any], message: str) -> None:
        self._registry = _empty_registry()
        self._index = {}
        self._load_error = error
        if self._fail_fast:
            raise KnowledgeRegistryError(message, details=error)
        self._log.error("KB registry unusable: {}", message)

    def _read_source(self) -> None:
        self._load_error = None
        if not self._path.exists():
            self._fail(
                {"reason": "registry_file_missing", "path": str(self._path)},
                f"KB registry file is missing: {self._path}",
            )
            return
        try:
            parsed = json.loads(self._path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            self._fail(
                {"reason": "registry_parse_failed", "message": str(exc)},
                f"KB registry parse failed: {exc}",
            )
            return
        if not isinstance(parsed, dict):
            self._fail({"reason": "registry_invalid_shape"}, "KB registry root is not an object")
            return

        items = parsed.get("items")
        if not isinstance(items, list):
            self._load_error = {"reason": "registry_items_missing_or_not_array"}
            self._log.error("KB registry invalid: items must be a list")
            items = []
        index: dict[str, dict[str, Any]] = {}
        for item in items:
            if not isinstance(item, dict):
                continue
            kb_id = item.get("kb_id")
            if not isinstance(kb_id, str) or not kb_id.strip():
                continue
            index[kb_id] = dict(item)
        self._registry = parsed
        self._index = index
        self._log.info("KB registry version {} loaded with {} item(s)", parsed.get("version"), len(index))

    def registry_info(self) -> dict[str, Any]:
        with self._lock:
            return {
                "version": str(self._registry.get("version") or "0"),
                "updated_at": self._registry.get("updated_at"),
                "count": len(self._index),
                "load_error": copy.deepcopy(self._load_error),
                "cache_version": self._version,
            }

    def kb_index(self) -> dict[str, dict[str, Any]]:
        self.maybe_refresh()
        with self._lock:
            return copy.deepcopy(self._index)

    def get_item(self, kb_id: str) -> dict[str, Any] | None:
        with self._lock:
            item = self._index.get(kb_id)
            return dict(item) if item is not None else None

    def enrich_plan(self, plan: KnowledgePlan) -> KnowledgePlan:
        """Keep only registry-active KB ids; demote to disabled when none survive."""

        self.maybe_refresh()
        if not plan.enabled:
            return KnowledgePlan.disabled(
                plan.mode or "off",
                top_k=plan.top_k,
                rerank=plan.rerank,
                max_context_chars=plan.max_context_chars,
            )

        kept: list[KnowledgeItem] = []
        dropped: list[str] = []
        for kb_id in plan.kb_ids:
            item = self.get_item(kb_id)
            if item is None:
                status = "missing"
            else:
                status = str(item.get("status") or "unknown")
            if status != "active" and not self._allow_inactive:
                dropped.append(kb_id)
                continue
            kept.append(
                KnowledgeItem(
                    kb_id=kb_id,
                    kb_version=str((item or {}).get("kb_version") or "unknown"),
                    status=status,
                    source=str((item or {}).get("source") or "unknown"),
                )
            )

        if not kept:
            return KnowledgePlan.disabled(
                plan.mode or "conditional",
                requested_kb_ids=tuple(plan.kb_ids),
                dropped_kb_ids=tuple(dropped),
                top_k=plan.top_k,
                rerank=plan.rerank,
                max_context_chars=plan.max_context_chars,
                reason="no_active_kb",
            )
        return plan.with_items(kept, dropped=dropped)
