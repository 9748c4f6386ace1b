"""Admin-managed scenario overrides merged before orchestration."""

from __future__ import annotations

from typing import Any, Mapping, Protocol

from ..dict_utils import deep_merge
from .models import ScenarioSpec


class ConfigOverrideProvider(Protocol):
    def apply(self, scenario: ScenarioSpec, *, tenant_id: str | None = None) -> ScenarioSpec: ...


class StaticOverrideProvider:
    """Deep-merges per-scenario (and optionally per-tenant) override documents.

    ``overrides`` maps a scenario id to an override document. A document may carry
    a ``tenants`` mapping whose entries are merged last for that tenant.
    """

    def __init__(self, overrides: Mapping[str, Mapping[str, Any]] | None = None) -> None:
        self._overrides = {key: dict(value) for key, value in (overrides or {}).items()}

    def apply(self, scenario: ScenarioSpec, *, tenant_id: str | None = None) -> ScenarioSpec:
        override = dict(self._overrides.get(scenario.scenario_id) or {})
        if not override:
            return scenario
        tenants = override.pop("tenants", None) or {}
        merged = deep_merge(scenario.model_dump(), override)
        if tenant_id and isinstance(tenants, Mapping) and tenant_id in tenants:
            merged = deep_merge(merged, tenants[tenant_id])
        merged["scenario_id"] = scenario.scenario_id
        return ScenarioSpec.model_validate(merged)
