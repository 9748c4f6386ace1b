"""Boot-time consistency checks between scenarios, KB mappings and the registry."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from ..errors import KnowledgeRegistryError
from ..logging_utils import get_logger
from ..scenarios.registry import ScenarioRegistry
from .mappings import MappingStore
from .registry import KnowledgeRegistry

_LOG = get_logger("knowledge.bootstrap")


@dataclass
class ResourceReport:
    mapping_errors: list[dict[str, Any]] = field(default_factory=list)
    registry_error: dict[str, Any] | None = None
    issues: list[dict[str, str]] = field(default_factory=list)
    missing_mappings: list[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not (
            self.mapping_errors or self.registry_error or self.issues or self.missing_mappings
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "ok": self.ok,
            "mapping_errors": list(self.mapping_errors),
            "registry_error": self.registry_error,
            "issues": list(self.issues),
            "missing_mappings": list(self.missing_mappings),
        }


def validate_runtime_resources(
    *,
    registry: KnowledgeRegistry,
    mappings: MappingStore,
    scenarios: ScenarioRegistry,
    allow_inactive: bool = False,
    fail_fast: bool = False,
    require_mappings_for_enabled_scenarios: bool = True,
) -> ResourceReport:
    report = ResourceReport()

    for error in mappings.load_errors():
        report.mapping_errors.append(error)
        _LOG.warning("KB mapping load error in {}: {}", error.get("file", "unknown"), error.get("reason"))

    info = registry.registry_info()
    if info.get("load_error"):
        report.registry_error = info["load_error"]
        _LOG.warning("KB registry load error: {}", info["load_error"].get("reason"))

    report.issues = mappings.validate_with_registry(
        registry.kb_index(), allow_inactive=allow_inactive
    )
    for issue in report.issues:
        _LOG.warning(
            "KB mapping issue scenario={} kb={} reason={}",
            issue["scenario_id"],
            issue["kb_id"],
            issue["reason"],
        )

    if require_mappings_for_enabled_scenarios:
        for scenario_id in scenarios.list_ids():
            scenario = scenarios.get(scenario_id)
            if scenario is None or not scenario.enabled:
                continue
            policy = scenario.knowledge_policy
            if not policy.enabled or policy.mode == "off":
                continue
            if mappings.get_raw(scenario_id) is None:
                report.missing_mappings.append(scenario_id)
                _LOG.warning("KB mapping missing for enabled scenario {}", scenario_id)

    if fail_fast:
        if report.missing_mappings:
            raise KnowledgeRegistryError(
                f"kb mapping missing for enabled scenario: {report.missing_mappings[0]}",
                details=report.to_dict(),
            )
        if report.issues:
            first = report.issues[0]
            raise KnowledgeRegistryError(
                "kb mapping validation failed "
                f"scenario={first['scenario_id']} kb={first['kb_id']} reason={first['reason']}",
                details=report.to_dict(),
            )
    return report
