"""Shared fixtures for the ModelOps service tests.

Services are built on an in-memory document store, a YAML-backed ConfigManager in
``tmp_path`` and a started PubSubManager. Collaborators standing in for external
systems (training environments, the scoring engine) are small recording fakes.
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import Callable
from pathlib import Path
from typing import Any

import pytest
import yaml

from modelops.config_manager import ConfigManager
from modelops.core.events import Event, EventType
from modelops.core.pubsub import PubSubManager
from modelops.dal.audit_log import JsonLinesAuditLog
from modelops.dal.document_store import InMemoryDocumentStore
from modelops.exceptions import StorageError
from modelops.logger_service import LoggerService
from modelops.model_lifecycle.enums import EnvironmentStatus
from modelops.model_lifecycle.evaluation import Dataset, Evaluation, ModelEvaluationService
from modelops.model_lifecycle.experiment_tracking import ExperimentTrackingService
from modelops.model_lifecycle.registry import ModelRegistry
from modelops.model_lifecycle.training_environment import TrainingEnvironment


def _merge(base: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., ConfigManager]:
    """Factory writing a config.yaml into ``tmp_path`` and loading it."""

    def factory(overrides: dict[str, Any] | None = None) -> ConfigManager:
        base = {
            "storage": {"backend": "memory", "path": str(tmp_path / "data")},
            "logging": {
                "level": "DEBUG",
                "console": {"enabled": False},
                "file": {"enabled": False, "directory": str(tmp_path / "logs")},
            },
            "pubsub": {"handler_timeout_seconds": 5},
            "registry": {"artifacts_path": str(tmp_path / "registry-artifacts")},
            "experiments": {"artifacts_path": str(tmp_path / "artifacts")},
            "cicd": {"evaluation_timeout_seconds": 5},
        }
        path = tmp_path / "config.yaml"
        path.write_text(yaml.safe_dump(_merge(base, overrides or {})))
        return ConfigManager(str(path), logger_service=logging.getLogger("tests.config"))

    return factory


@pytest.fixture
def config(make_config: Callable[..., ConfigManager]) -> ConfigManager:
    """Default test configuration."""
    return make_config()


@pytest.fixture
def logger(config: ConfigManager) -> LoggerService:
    """Logger service with console and file output disabled."""
    return LoggerService(config)


@pytest.fixture
def store() -> InMemoryDocumentStore:
    """Fresh in-memory document store."""
    return InMemoryDocumentStore()


class FailingDocumentStore(InMemoryDocumentStore):
    """In-memory store whose writes to the collections in ``failing`` raise StorageError."""

    def __init__(self) -> None:
        super().__init__()
        self.failing: set[str] = set()

    async def save(self, collection: str, document: Any) -> None:
        if collection in self.failing:
            raise StorageError(collection, "save", "disk full")
        await super().save(collection, document)


@pytest.fixture
def failing_store() -> FailingDocumentStore:
    """In-memory store that can be told to fail writes."""
    return FailingDocumentStore()


@pytest.fixture
async def pubsub(config: ConfigManager):
    """Started event bus, stopped after the test."""
    manager = PubSubManager(logging.getLogger("tests.pubsub"), config)
    await manager.start()
    yield manager
    await manager.stop()


class EventRecorder:
    """Collect published events of the given types."""

    def __init__(self) -> None:
        self.events: list[Event] = []

    async def _handle(self, event: Event) -> None:
        self.events.append(event)

    def listen(self, pubsub: PubSubManager, *event_types: EventType) -> "EventRecorder":
        for event_type in event_types:
            pubsub.subscribe(event_type, self._handle)
        return self

    def of(self, event_type: EventType) -> list[Event]:
        return [e for e in self.events if e.event_type == event_type]


@pytest.fixture
def recorder() -> EventRecorder:
    """Empty event recorder; call ``listen`` to subscribe it."""
    return EventRecorder()


class FakeTrainingEnvironmentService:
    """Recording stand-in for the training environment provisioner."""

    def __init__(
        self,
        start_result: bool = True,
        create_error: Exception | None = None,
        start_delay: float = 0.0,
    ) -> None:
        self.start_result = start_result
        self.create_error = create_error
        self.start_delay = start_delay
        self.created: list[TrainingEnvironment] = []
        self.started: list[tuple[str, dict[str, Any]]] = []

    async def create_environment(
        self, name: str, framework: str, options: dict[str, Any] | None = None,
    ) -> TrainingEnvironment:
        if self.create_error is not None:
            raise self.create_error
        options = dict(options or {})
        environment = TrainingEnvironment(
            id=f"env-{uuid.uuid4().hex[:8]}",
            name=name,
            framework=framework,
            packages=list(options.pop("packages", [])),
            tags=list(options.pop("tags", [])),
            options=options,
        )
        self.created.append(environment)
        return environment

    async def start_environment(self, environment_id: str, params: dict[str, Any] | None = None) -> bool:
        if self.start_delay:
            await asyncio.sleep(self.start_delay)
        self.started.append((environment_id, dict(params or {})))
        return self.start_result

    async def stop_environment(self, environment_id: str) -> bool:
        return True

    async def get_environment(self, environment_id: str) -> TrainingEnvironment:
        environment = next(e for e in self.created if e.id == environment_id)
        if any(started_id == environment_id for started_id, _ in self.started):
            environment.status = EnvironmentStatus.RUNNING
        return environment


@pytest.fixture
def environments() -> FakeTrainingEnvironmentService:
    """Training environment fake that starts every environment."""
    return FakeTrainingEnvironmentService()


class FixedScorer:
    """Scorer returning preset metrics, optionally after a delay or by raising."""

    def __init__(
        self,
        metrics: dict[str, float] | None = None,
        delay: float = 0.0,
        error: Exception | None = None,
    ) -> None:
        self.metrics = dict(metrics or {"accuracy": 0.92, "f1_score": 0.88})
        self.delay = delay
        self.error = error
        self.calls: list[tuple[str, str | None]] = []

    async def score(self, evaluation: Evaluation, dataset: Dataset | None) -> dict[str, float]:
        self.calls.append((evaluation.id, dataset.id if dataset else None))
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return dict(self.metrics)


@pytest.fixture
def scorer() -> FixedScorer:
    """Deterministic scorer."""
    return FixedScorer()


@pytest.fixture
async def registry(config, logger, store, pubsub) -> ModelRegistry:
    """Loaded model registry."""
    service = ModelRegistry(config, logger, store, pubsub)
    await service.initialize()
    return service


@pytest.fixture
async def tracking(config, logger, store, pubsub) -> ExperimentTrackingService:
    """Loaded experiment tracking service."""
    service = ExperimentTrackingService(config, logger, store, pubsub)
    await service.initialize()
    return service


@pytest.fixture
async def evaluation(config, logger, store, tracking, registry, scorer, pubsub):
    """Loaded evaluation service using the fixed scorer."""
    service = ModelEvaluationService(
        config, logger, store, tracking, registry, scorer=scorer, pubsub=pubsub)
    await service.initialize()
    yield service
    await service.stop()


@pytest.fixture
def audit_log(tmp_path: Path) -> JsonLinesAuditLog:
    """Audit log in ``tmp_path``."""
    return JsonLinesAuditLog(tmp_path / "retrain-audit.log")
