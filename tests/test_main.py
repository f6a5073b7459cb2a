"""Tests for the application composition root."""

from pathlib import Path

import pytest

from modelops.dal.document_store import InMemoryDocumentStore
from modelops.exceptions import ConfigurationError
from modelops.main import ModelOpsApplication
from modelops.model_lifecycle.enums import ModelStatus, PipelineStatus, RetrainReason

from .conftest import FakeTrainingEnvironmentService, FixedScorer


@pytest.fixture
async def app(config):
    application = ModelOpsApplication(
        config,
        store=InMemoryDocumentStore(),
        training_environments=FakeTrainingEnvironmentService(),
        scorer=FixedScorer(),
    )
    await application.start()
    yield application
    await application.stop()


@pytest.mark.asyncio
async def test_invalid_configuration_refuses_to_start(make_config) -> None:
    application = ModelOpsApplication(make_config({"retraining": {"cooldown_ms": -1}}))

    with pytest.raises(ConfigurationError):
        await application.start()


@pytest.mark.asyncio
async def test_memory_backend_starts_and_stops(make_config) -> None:
    application = ModelOpsApplication(make_config({"storage": {"backend": "memory"}}))

    await application.start()
    await application.start()
    services = (
        application.registry, application.experiments, application.evaluation,
        application.drift, application.performance, application.retraining,
        application.cicd, application.environments,
    )
    assert all(service is not None for service in services)
    await application.registry.register_model("fraud")
    await application.stop()

    assert application.pubsub.get_metrics()["published"] >= 1


@pytest.mark.asyncio
async def test_json_backend_writes_under_storage_path(make_config, tmp_path: Path) -> None:
    application = ModelOpsApplication(make_config({"storage": {"backend": "json"}}))

    await application.start()
    try:
        await application.registry.register_model("fraud")
    finally:
        await application.stop()

    assert list((tmp_path / "data").rglob("*.json"))


@pytest.mark.integration
@pytest.mark.asyncio
async def test_database_backend(make_config, tmp_path: Path) -> None:
    url = f"sqlite+aiosqlite:///{tmp_path / 'modelops.db'}"
    config = make_config({"storage": {"backend": "database", "database": {"url": url}}})

    first = ModelOpsApplication(config)
    await first.start()
    try:
        await first.registry.register_model("fraud")
    finally:
        await first.stop()

    second = ModelOpsApplication(config)
    await second.start()
    try:
        assert (await second.registry.get_model("fraud")).name == "fraud"
    finally:
        await second.stop()


@pytest.mark.asyncio
async def test_high_drift_triggers_retraining(app: ModelOpsApplication) -> None:
    await app.drift.create_baseline("fraud@v1", {"features": {"x": {"mean": 0.0, "std": 1.0}}})

    await app.drift.detect_drift_for_model("fraud@v1", {"features": {"x": {"mean": 1.2, "std": 1.0}}})
    await app.pubsub.drain()

    last = await app.retraining.get_last_retrain_status("fraud@v1")
    assert last.reason == RetrainReason.DRIFT
    assert len(app.environments.created) == 1


@pytest.mark.asyncio
async def test_performance_drop_triggers_retraining(app: ModelOpsApplication) -> None:
    await app.performance.track_custom_metric("fraud@v1", "prediction_accuracy", 0.6)
    await app.pubsub.drain()

    last = await app.retraining.get_last_retrain_status("fraud@v1")
    assert last.reason == RetrainReason.PERFORMANCE


@pytest.mark.asyncio
async def test_pipeline_promotes_through_wired_services(app: ModelOpsApplication) -> None:
    await app.registry.register_model("fraud")
    await app.registry.add_model_version("fraud", "ext-1")
    pipeline = await app.cicd.create_pipeline(
        "release", "fraud", "v1",
        {"evaluation_datasets": {"validation": "val", "testing": "test"}})

    await app.cicd.start_pipeline(pipeline.id)
    finished = await app.cicd.wait_for_pipeline(pipeline.id, timeout=5)

    assert finished.status == PipelineStatus.COMPLETED
    assert (await app.registry.get_model_version("fraud", "v1")).status == ModelStatus.PRODUCTION
