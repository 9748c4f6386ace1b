from __future__ import annotations

import asyncio
import os
import sys
from pathlib import Path

import fastapi.concurrency
import fastapi.routing
import httpx
import pytest
import starlette.concurrency

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("APP_ENV", "test")

from infergate.config import (  # noqa: E402
    AppConfig,
    ClassifierConfig,
    KnowledgeConfig,
    WorkflowConfig,
)
from infergate.knowledge.mappings import MappingStore  # noqa: E402
from infergate.knowledge.registry import KnowledgeRegistry  # noqa: E402
from infergate.orchestrator import OrchestratorDeps  # noqa: E402
from infergate.providers.base import WorkflowProvider  # noqa: E402
from infergate.routing.classifier import ClassificationRouter  # noqa: E402
from infergate.validation.output import OutputValidator  # noqa: E402
from support import (  # noqa: E402
    DEFAULT_REGISTRY,
    FakeClock,
    RecordingPublisher,
    ScriptedProvider,
    output,
    write_json,
)


@pytest.fixture
def async_client_factory():
    def _factory(app):
        transport = httpx.ASGITransport(app=app)
        return httpx.AsyncClient(transport=transport, base_url="http://testserver")

    return _factory


@pytest.fixture(autouse=True)
def _disable_threadpool(monkeypatch: pytest.MonkeyPatch) -> None:
    async def _run_in_threadpool(func, *args, **kwargs):
        return func(*args, **kwargs)

    monkeypatch.setattr(fastapi.concurrency, "run_in_threadpool", _run_in_threadpool)
    monkeypatch.setattr(fastapi.routing, "run_in_threadpool", _run_in_threadpool)
    monkeypatch.setattr(starlette.concurrency, "run_in_threadpool", _run_in_threadpool)

    async def _to_thread(func, *args, **kwargs):
        return func(*args, **kwargs)

    monkeypatch.setattr(asyncio, "to_thread", _to_thread)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def publisher() -> RecordingPublisher:
    return RecordingPublisher()


@pytest.fixture
def kb_dir(tmp_path: Path) -> Path:
    root = tmp_path / "kb"
    write_json(root / "KB_REGISTRY.json", DEFAULT_REGISTRY)
    (root / "mappings").mkdir(parents=True, exist_ok=True)
    return root


@pytest.fixture
def knowledge_config(kb_dir: Path) -> KnowledgeConfig:
    return KnowledgeConfig(
        registry_path=kb_dir / "KB_REGISTRY.json",
        mappings_dir=kb_dir / "mappings",
        reload_interval_s=0,
        require_mappings_for_enabled_scenarios=False,
    )


@pytest.fixture
def app_config(knowledge_config: KnowledgeConfig) -> AppConfig:
    return AppConfig(
        knowledge=knowledge_config,
        workflow=WorkflowConfig(offline_stage_delay_ms=0),
    )


@pytest.fixture
def deps_factory(knowledge_config: KnowledgeConfig, publisher: RecordingPublisher, clock: FakeClock):
    def _factory(
        *,
        primary: WorkflowProvider | None = None,
        offline: WorkflowProvider | None = None,
        workflow: WorkflowConfig | None = None,
        classifier: ClassificationRouter | None = None,
        bus=None,
    ) -> OrchestratorDeps:
        registry = KnowledgeRegistry(
            knowledge_config.registry_path, reload_interval_s=0, clock=clock
        )
        registry.load()
        mappings = MappingStore(knowledge_config.mappings_dir, reload_interval_s=0, clock=clock)
        mappings.load()
        offline_provider = offline or ScriptedProvider([output()], name="offline")
        return OrchestratorDeps(
            classifier=classifier or ClassificationRouter(ClassifierConfig()),
            registry=registry,
            mappings=mappings,
            validator=OutputValidator(),
            bus=bus or publisher,
            remote_provider=primary or ScriptedProvider([output()], name="remote", remote=True),
            offline_provider=offline_provider,
            workflow=workflow or WorkflowConfig(offline_stage_delay_ms=0),
            env="test",
        )

    return _factory


@pytest.fixture
def anyio_backend() -> str:
    return "asyncio"
