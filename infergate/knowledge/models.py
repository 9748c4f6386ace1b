"""Knowledge plan and mapping value types."""

from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Mapping, Optional

DEFAULT_TOP_K = 5
DEFAULT_MAX_CONTEXT_CHARS = 12000


@dataclass(frozen=True)
class KnowledgeItem:
    kb_id: str
    kb_version: str = "unknown"
    status: str = "unknown"
    source: str = "unknown"

    def to_dict(self) -> dict[str, Any]:
        return {
            "kb_id": self.kb_id,
            "kb_version": self.kb_version,
            "status": self.status,
            "source": self.source,
        }


@dataclass(frozen=True)
class KnowledgePlan:
    """Resolved knowledge bases and retrieval parameters for one pass."""

    enabled: bool
    mode: str = "off"
    kb_ids: tuple[str, ...] = ()
    kb_items: tuple[KnowledgeItem, ...] = ()
    requested_kb_ids: tuple[str, ...] = ()
    dropped_kb_ids: tuple[str, ...] = ()
    top_k: int = DEFAULT_TOP_K
    rerank: bool = False
    max_context_chars: int = DEFAULT_MAX_CONTEXT_CHARS
    reason: Optional[str] = None

    @classmethod
    def disabled(cls, mode: str = "off", **kwargs: Any) -> "KnowledgePlan":
        return cls(enabled=False, mode=mode, **kwargs)

    def with_items(
        self,
        items: list[KnowledgeItem],
        *,
        dropped: list[str],
    ) -> "KnowledgePlan":
        return replace(
            self,
            kb_ids=tuple(item.kb_id for item in items),
            kb_items=tuple(items),
            requested_kb_ids=tuple(self.kb_ids),
            dropped_kb_ids=tuple(dropped),
        )

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "enabled": self.enabled,
            "mode": self.mode,
            "kb_ids": list(self.kb_ids),
            "kb_items": [item.to_dict() for item in self.kb_items],
            "requested_kb_ids": list(self.requested_kb_ids),
            "dropped_kb_ids": list(self.dropped_kb_ids),
            "top_k": self.top_k,
            "rerank": self.rerank,
            "max_context_chars": self.max_context_chars,
        }
        if self.reason:
            payload["reason"] = self.reason
        return payload

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "KnowledgePlan":
        items = tuple(
            KnowledgeItem(
                kb_id=str(item.get("kb_id")),
                kb_version=str(item.get("kb_version") or "unknown"),
                status=str(item.get("status") or "unknown"),
                source=str(item.get("source") or "unknown"),
            )
            for item in data.get("kb_items") or []
            if isinstance(item, Mapping) and item.get("kb_id")
        )
        return cls(
            enabled=bool(data.get("enabled")),
            mode=str(data.get("mode") or "off"),
            kb_ids=tuple(str(x) for x in data.get("kb_ids") or []),
            kb_items=items,
            requested_kb_ids=tuple(str(x) for x in data.get("requested_kb_ids") or []),
            dropped_kb_ids=tuple(str(x) for x in data.get("dropped_kb_ids") or []),
            top_k=int(data.get("top_k") or DEFAULT_TOP_K),
            rerank=bool(data.get("rerank")),
            max_context_chars=int(data.get("max_context_chars") or DEFAULT_MAX_CONTEXT_CHARS),
            reason=data.get("reason"),
        )


@dataclass
class EffectiveMapping:
    """Per-scenario KB mapping after merging base, env and tenant layers."""

    found: bool = False
    version: Optional[str] = None
    updated_at: Optional[str] = None
    default_kb_ids: Optional[list[str]] = None
    sub_type_kb_map: Optional[dict[str, list[str]]] = None
    top_k: Optional[int] = None
    rerank: Optional[bool] = None
    max_context_chars: Optional[int] = None
    source: str = "none"

    def snapshot_info(self) -> dict[str, Any]:
        return {
            "found": self.found,
            "version": self.version,
            "updated_at": self.updated_at,
            "source": self.source,
        }
