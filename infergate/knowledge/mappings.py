"""Per-scenario KB mapping overrides with env and tenant layers."""

from __future__ import annotations

import copy
import json
import time
from pathlib import Path
from typing import Any, Callable, Mapping

from ..dict_utils import as_string_list, deep_merge
from .cache import VersionedCache
from .models import EffectiveMapping

MAPPING_SUFFIX = ".kbmap.json"


class MappingStore(VersionedCache):
    """Loads ``*.kbmap.json`` documents keyed by ``scenario_id``.

    A document carries ``overrides`` (base layer), ``env_overrides`` keyed by
    environment and ``tenant_overrides`` keyed by tenant id.
    """

    def __init__(
        self,
        directory: Path | str,
        *,
        reload_interval_s: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        super().__init__(reload_interval_s=reload_interval_s, clock=clock, component="knowledge.mappings")
        self._directory = Path(directory)
        self._mappings: dict[str, dict[str, Any]] = {}
        self._errors: list[dict[str, Any]] = []

    def _mapping_files(self) -> list[Path]:
        if not self._directory.is_dir():
            return []
        return sorted(p for p in self._directory.iterdir() if p.name.endswith(MAPPING_SUFFIX))

    def _source_marker(self) -> int:
        newest = 0
        for path in self._mapping_files():
            try:
                newest = max(newest, path.stat().st_mtime_ns)
            except OSError:
                continue
        return newest

    def _read_source(self) -> None:
        mappings: dict[str, dict[str, Any]] = {}
        errors: list[dict[str, Any]] = []
        for path in self._mapping_files():
            try:
                raw = path.read_text(encoding="utf-8")
            except OSError as exc:
                errors.append({"file": path.name, "reason": "read_error", "message": str(exc)})
                continue
            try:
                parsed = json.loads(raw)
            except ValueError:
                parsed = None
            if not isinstance(parsed, dict) or not parsed.get("scenario_id"):
                errors.append({"file": path.name, "reason": "invalid_json_or_missing_scenario_id"})
                continue
            mappings[str(parsed["scenario_id"])] = parsed
        self._mappings = mappings
        self._errors = errors
        for error in errors:
            self._log.warning("KB mapping file {} skipped: {}", error["file"], error["reason"])

    def load_errors(self) -> list[dict[str, Any]]:
        with self._lock:
            return copy.deepcopy(self._errors)

    def get_raw(self, scenario_id: str) -> dict[str, Any] | None:
        self.maybe_refresh()
        with self._lock:
            raw = self._mappings.get(scenario_id)
            return copy.deepcopy(raw) if raw is not None else None

    def list_scenario_ids(self) -> list[str]:
        self.maybe_refresh()
        with self._lock:
            return list(self._mappings)

    def effective_mapping(
        self,
        scenario_id: str,
        env: str | None = None,
        tenant_id: str | None = None,
    ) -> EffectiveMapping:
        raw = self.get_raw(scenario_id)
        if raw is None:
            return EffectiveMapping()

        base = _as_layer(raw.get("overrides"))
        env_layer = _as_layer((raw.get("env_overrides") or {}).get(env)) if env else {}
        tenant_layer = (
            _as_layer((raw.get("tenant_overrides") or {}).get(tenant_id)) if tenant_id else {}
        )
        merged = deep_merge(deep_merge(base, env_layer), tenant_layer)

        if tenant_layer:
            source = "tenant_override"
        elif env_layer:
            source = "env_override"
        else:
            source = "base_override"

        sub_type_map = merged.get("sub_type_kb_map")
        return EffectiveMapping(
            found=True,
            version=str(raw.get("version") or "0"),
            updated_at=raw.get("updated_at"),
            default_kb_ids=(
                as_string_list(merged["default_kb_ids"])
                if isinstance(merged.get("default_kb_ids"), list)
                else None
            ),
            sub_type_kb_map=(
                {str(k): as_string_list(v) for k, v in sub_type_map.items()}
                if isinstance(sub_type_map, Mapping)
                else None
            ),
            top_k=merged.get("top_k"),
            rerank=merged.get("rerank"),
            max_context_chars=merged.get("max_context_chars"),
            source=source,
        )

    def validate_with_registry(
        self,
        kb_index: Mapping[str, Mapping[str, Any]],
        *,
        allow_inactive: bool = False,
    ) -> list[dict[str, str]]:
        """List KB ids referenced by any layer that are missing or not active."""

        self.maybe_refresh()
        with self._lock:
            mappings = copy.deepcopy(self._mappings)

        issues: list[dict[str, str]] = []
        for scenario_id, raw in mappings.items():
            layers = [_as_layer(raw.get("overrides"))]
            for key in ("env_overrides", "tenant_overrides"):
                group = raw.get(key)
                if isinstance(group, Mapping):
                    layers.extend(_as_layer(layer) for layer in group.values())
            for layer in layers:
                referenced = list(as_string_list(layer.get("default_kb_ids")))
                sub_type_map = layer.get("sub_type_kb_map")
                if isinstance(sub_type_map, Mapping):
                    for kb_ids in sub_type_map.values():
                        referenced.extend(as_string_list(kb_ids))
                for kb_id in referenced:
                    item = kb_index.get(kb_id)
                    if item is None:
                        issues.append({"scenario_id": scenario_id, "kb_id": kb_id, "reason": "missing_kb"})
                        continue
                    status = item.get("status")
                    if not allow_inactive and status != "active":
                        issues.append(
                            {
                                "scenario_id": scenario_id,
                                "kb_id": kb_id,
                                "reason": f"kb_not_active:{status}",
                            }
                        )
        return issues


def _as_layer(value: Any) -> dict[str, Any]:
    return dict(value) if isinstance(value, Mapping) else {}
