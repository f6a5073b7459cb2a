"""Tests for automated retraining."""

import logging
from datetime import UTC, datetime, timedelta

import pytest

from modelops.core.events import DriftDetectedEvent, EventType, PerformanceDropEvent
from modelops.core.pubsub import PubSubManager
from modelops.dal.audit_log import JsonLinesAuditLog
from modelops.exceptions import EnvironmentProvisioningError, RetrainingFailedError, StorageError
from modelops.model_lifecycle.enums import RetrainReason, RetrainStatus
from modelops.model_lifecycle.retraining import (
    AutomatedRetrainingService,
    RetrainAuditEntry,
    RetrainRequest,
)

from .conftest import FakeTrainingEnvironmentService

T0 = datetime(2024, 3, 1, 12, 0, tzinfo=UTC)


class FakeClock:
    """Settable clock."""

    def __init__(self, now: datetime = T0) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs: float) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def retrain_config(make_config):
    return make_config({"retraining": {"cooldown_ms": 1000}})


@pytest.fixture
def build_service(retrain_config, logger, registry, tracking, environments, pubsub, audit_log, clock):
    def factory(**kwargs) -> AutomatedRetrainingService:
        options = {
            "config": retrain_config,
            "logger": logger,
            "registry": registry,
            "experiment_tracking": tracking,
            "training_environments": environments,
            "pubsub": pubsub,
            "audit_log": audit_log,
            "clock": clock,
        }
        options.update(kwargs)
        return AutomatedRetrainingService(**options)

    return factory


@pytest.mark.asyncio
async def test_second_trigger_inside_cooldown_is_skipped(
    build_service, environments: FakeTrainingEnvironmentService, clock: FakeClock, audit_log,
) -> None:
    service = build_service()

    first = await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    clock.advance(milliseconds=500)
    second = await service.trigger_retraining("fraud@v1", "drift")

    assert first.status == RetrainStatus.STARTED
    assert second.status == RetrainStatus.COOLDOWN
    assert len(environments.created) == 1
    statuses = [record["status"] for record in await audit_log.read()]
    assert statuses == ["started", "cooldown"]


@pytest.mark.asyncio
async def test_trigger_after_cooldown_retrains_again(
    build_service, environments: FakeTrainingEnvironmentService, clock: FakeClock,
) -> None:
    service = build_service()

    await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    clock.advance(milliseconds=1000)
    again = await service.trigger_retraining("fraud@v1", RetrainReason.PERFORMANCE)

    assert again.status == RetrainStatus.STARTED
    assert len(environments.created) == 2


@pytest.mark.asyncio
async def test_started_retrain_provisions_experiment_and_environment(
    build_service, registry, tracking, environments: FakeTrainingEnvironmentService, pubsub, recorder,
) -> None:
    recorder.listen(pubsub, EventType.RETRAINING_STARTED)
    await registry.register_model("fraud")
    await registry.add_model_version(
        "fraud", "ext-1", {"framework": "xgboost", "dependencies": ["xgboost==2.0"]})
    notified = []
    service = build_service()
    service.set_notification_callback(notified.append)

    entry = await service.trigger_retraining("fraud@v1", RetrainReason.MANUAL)
    await pubsub.drain()

    environment = environments.created[0]
    assert environment.framework == "xgboost"
    assert environment.packages == ["xgboost==2.0"]
    assert environments.started[0][1]["experiment_id"] == entry.experiment_id

    experiment = await tracking.get_experiment(entry.experiment_id)
    assert experiment.metadata["environment_id"] == environment.id
    assert "auto-retrain" in experiment.tags
    assert recorder.events[0].environment_id == environment.id
    assert notified == [entry]


@pytest.mark.asyncio
async def test_policy_and_approval_denials(
    build_service, environments: FakeTrainingEnvironmentService, audit_log,
) -> None:
    requests: list[RetrainRequest] = []

    async def approval(request: RetrainRequest) -> bool:
        requests.append(request)
        return False

    service = build_service(policy=lambda request: request.model_id != "blocked@v1",
                            approval=approval)

    blocked = await service.trigger_retraining("blocked@v1", RetrainReason.DRIFT)
    unapproved = await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)

    assert blocked.status == RetrainStatus.POLICY_DENIED
    assert unapproved.status == RetrainStatus.APPROVAL_DENIED
    assert [r.model_id for r in requests] == ["fraud@v1"]
    assert environments.created == []

    service.set_approval_callback(None)
    allowed = await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    assert allowed.status == RetrainStatus.STARTED

    service.set_policy(None)
    assert (await service.trigger_retraining("blocked@v1", "drift")).status == RetrainStatus.STARTED


@pytest.mark.asyncio
async def test_environment_that_does_not_start_fails_retraining(
    build_service, audit_log, pubsub, recorder,
) -> None:
    recorder.listen(pubsub, EventType.RETRAINING_FAILED)
    service = build_service(
        training_environments=FakeTrainingEnvironmentService(start_result=False))

    with pytest.raises(RetrainingFailedError):
        await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    await pubsub.drain()

    last = await service.get_last_retrain_status("fraud@v1")
    assert last.status == RetrainStatus.FAILED
    assert "did not start" in last.error
    assert len(recorder.events) == 1
    assert [r["status"] for r in await audit_log.read()] == ["failed"]


@pytest.mark.asyncio
async def test_high_drift_event_triggers_retraining(
    build_service, environments: FakeTrainingEnvironmentService, pubsub, audit_log,
) -> None:
    service = build_service()
    await service.start()

    report = {"id": "drift-1", "drift_results": {"overall_score": 0.6}}
    await pubsub.publish(DriftDetectedEvent.create(
        "DataDriftService", model_id="fraud@v1", severity="high", report=report))
    await pubsub.publish(DriftDetectedEvent.create(
        "DataDriftService", model_id="churn@v1", severity="low", report={}))
    await pubsub.drain()
    await service.stop()

    records = await audit_log.read()
    assert [(r["model_id"], r["status"]) for r in records] == [("fraud@v1", "started")]
    assert records[0]["event"]["report_id"] == "drift-1"
    assert records[0]["event"]["overall_score"] == 0.6
    assert len(environments.created) == 1


@pytest.mark.asyncio
async def test_performance_drop_event_respects_threshold(
    build_service, pubsub, audit_log,
) -> None:
    service = build_service()
    await service.start()

    await pubsub.publish(PerformanceDropEvent.create(
        "ModelPerformanceService", model_id="fraud@v1", metric_name="prediction_accuracy",
        value=0.7, threshold=0.8))
    await pubsub.publish(PerformanceDropEvent.create(
        "ModelPerformanceService", model_id="churn@v1", metric_name="latency",
        value=0.1, threshold=0.8))
    await pubsub.drain()
    await service.stop()

    records = await audit_log.read()
    assert [(r["model_id"], r["reason"]) for r in records] == [("fraud@v1", "performance")]


@pytest.mark.asyncio
async def test_cooldown_is_restored_from_audit_log(build_service, clock: FakeClock) -> None:
    await build_service().trigger_retraining("fraud@v1", RetrainReason.DRIFT)

    restarted = build_service()
    await restarted.initialize()
    clock.advance(milliseconds=200)

    assert await restarted.get_next_eligible_retrain_time("fraud@v1") == T0 + timedelta(seconds=1)
    assert await restarted.get_next_eligible_retrain_time("churn@v1") == clock.now
    entry = await restarted.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    assert entry.status == RetrainStatus.COOLDOWN


@pytest.mark.asyncio
async def test_per_model_overrides(make_config, build_service, clock: FakeClock) -> None:
    config = make_config({
        "retraining": {
            "cooldown_ms": 1000,
            "models": {"fraud@v1": {"cooldown_ms": 60000}},
        },
    })
    service = build_service(config=config)

    await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)
    await service.trigger_retraining("churn@v1", RetrainReason.DRIFT)
    clock.advance(seconds=2)

    assert (await service.trigger_retraining("fraud@v1", "drift")).status == RetrainStatus.COOLDOWN
    assert (await service.trigger_retraining("churn@v1", "drift")).status == RetrainStatus.STARTED
    assert await service.get_next_eligible_retrain_time("fraud@v1") == T0 + timedelta(minutes=1)
    history = await service.get_retrain_history("fraud@v1")
    assert [e.status for e in history] == [RetrainStatus.STARTED, RetrainStatus.COOLDOWN]


class UnwritableAuditLog(JsonLinesAuditLog):
    """Audit log whose appends always fail."""

    async def append(self, record) -> None:
        raise StorageError(self.path.name, "append", "read-only filesystem")


@pytest.mark.asyncio
async def test_provisioning_error_survives_unwritable_audit_log(build_service, tmp_path) -> None:
    notified: list[RetrainAuditEntry] = []
    service = build_service(
        audit_log=UnwritableAuditLog(tmp_path / "audit.log"),
        training_environments=FakeTrainingEnvironmentService(start_result=False),
    )
    service.set_notification_callback(notified.append)

    with pytest.raises(RetrainingFailedError) as raised:
        await service.trigger_retraining("fraud@v1", RetrainReason.DRIFT)

    assert isinstance(raised.value.__cause__, EnvironmentProvisioningError)
    assert [e.status for e in notified] == [RetrainStatus.FAILED]
    assert "did not start" in notified[0].error


@pytest.mark.asyncio
async def test_slow_provisioning_is_not_cut_off_by_bus_timeout(
    make_config, build_service, audit_log,
) -> None:
    bus = PubSubManager(
        logging.getLogger("tests.pubsub"),
        make_config({"pubsub": {"handler_timeout_seconds": 0.05}}),
    )
    await bus.start()
    service = build_service(
        pubsub=bus, training_environments=FakeTrainingEnvironmentService(start_delay=0.2))
    await service.start()

    await bus.publish(DriftDetectedEvent.create(
        "DataDriftService", model_id="fraud@v1", severity="critical", report={}))
    await bus.drain()
    await service.stop()
    await bus.stop()

    assert [r["status"] for r in await audit_log.read()] == ["started"]
    assert bus.get_metrics()["handler_errors"] == 0
