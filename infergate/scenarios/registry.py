"""File-backed scenario registry."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import Any, Iterable, Protocol

import yaml
from pydantic import ValidationError

from ..logging_utils import get_logger
from .models import ScenarioSpec

_SUFFIXES = (".scenario.json", ".scenario.yml", ".scenario.yaml")


class ScenarioProvider(Protocol):
    def get(self, scenario_id: str) -> ScenarioSpec | None: ...


class ScenarioRegistry:
    """Loads ``*.scenario.{json,yml,yaml}`` files keyed by ``scenario_id``.

    Files whose name starts with ``_`` are templates and are skipped. Invalid
    files are recorded in :meth:`load_errors` and left out of the registry.
    """

    def __init__(self, directory: Path | str | None = None) -> None:
        self._directory = Path(directory) if directory is not None else None
        self._lock = threading.Lock()
        self._scenarios: dict[str, ScenarioSpec] = {}
        self._errors: list[dict[str, str]] = []
        self._log = get_logger("scenarios")

    @classmethod
    def from_specs(cls, specs: Iterable[ScenarioSpec | dict[str, Any]]) -> "ScenarioRegistry":
        registry = cls()
        registry.replace(specs)
        return registry

    def replace(self, specs: Iterable[ScenarioSpec | dict[str, Any]]) -> None:
        scenarios: dict[str, ScenarioSpec] = {}
        for spec in specs:
            parsed = spec if isinstance(spec, ScenarioSpec) else ScenarioSpec.model_validate(spec)
            scenarios[parsed.scenario_id] = parsed
        with self._lock:
            self._scenarios = scenarios

    def load(self) -> None:
        scenarios: dict[str, ScenarioSpec] = {}
        errors: list[dict[str, str]] = []
        directory = self._directory
        if directory is None or not directory.exists():
            self._log.warning("Scenario directory missing: {}", directory)
        else:
            for path in sorted(directory.iterdir()):
                if not path.name.endswith(_SUFFIXES) or path.name.startswith("_"):
                    continue
                try:
                    spec = _read_scenario(path)
                except (OSError, ValueError, yaml.YAMLError, ValidationError) as exc:
                    errors.append({"file": path.name, "reason": str(exc)})
                    self._log.error("Scenario file {} rejected: {}", path.name, exc)
                    continue
                scenarios[spec.scenario_id] = spec
        with self._lock:
            self._scenarios = scenarios
            self._errors = errors
        self._log.info("Loaded {} scenario(s) from {}", len(scenarios), directory)

    def get(self, scenario_id: str) -> ScenarioSpec | None:
        with self._lock:
            return self._scenarios.get(scenario_id)

    def count(self) -> int:
        with self._lock:
            return len(self._scenarios)

    def list_ids(self) -> list[str]:
        with self._lock:
            return list(self._scenarios)

    def load_errors(self) -> list[dict[str, str]]:
        with self._lock:
            return [dict(item) for item in self._errors]


def _read_scenario(path: Path) -> ScenarioSpec:
    raw = path.read_text(encoding="utf-8")
    if path.name.endswith(".json"):
        data = json.loads(raw)
    else:
        data = yaml.safe_load(raw)
    if not isinstance(data, dict):
        raise ValueError("scenario root must be an object")
    return ScenarioSpec.model_validate(data)
