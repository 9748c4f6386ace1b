"""Scenario configuration: models, file-backed registry and override merging."""

from .models import ScenarioSpec
from .overrides import ConfigOverrideProvider, StaticOverrideProvider
from .registry import ScenarioProvider, ScenarioRegistry

__all__ = [
    "ConfigOverrideProvider",
    "ScenarioProvider",
    "ScenarioRegistry",
    "ScenarioSpec",
    "StaticOverrideProvider",
]
