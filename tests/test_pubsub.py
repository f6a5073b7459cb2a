"""Tests for the in-process event bus."""

import asyncio
import logging

import pytest

from modelops.core.events import (
    DriftDetectedEvent,
    EventType,
    ExperimentCreatedEvent,
    MetricsCollectedEvent,
)
from modelops.core.pubsub import PubSubManager

log = logging.getLogger("tests.pubsub")


def _drift(model_id: str) -> DriftDetectedEvent:
    return DriftDetectedEvent.create("test", model_id=model_id, severity="high")


def _experiment(name: str) -> ExperimentCreatedEvent:
    return ExperimentCreatedEvent.create("test", experiment_id=name, name=name)


@pytest.mark.asyncio
async def test_priority_then_publication_order(config) -> None:
    manager = PubSubManager(log, config)
    seen: list[str] = []

    async def handler(event) -> None:
        seen.append(getattr(event, "model_id", None) or event.name)

    manager.subscribe(EventType.DRIFT_DETECTED, handler)
    manager.subscribe(EventType.EXPERIMENT_CREATED, handler)

    # Queue everything before the consumer runs
    await manager.publish(_experiment("exp-1"))
    await manager.publish(_drift("fraud@v1"))
    await manager.publish(_experiment("exp-2"))
    await manager.publish(_drift("churn@v1"))

    await manager.start()
    await manager.drain()
    await manager.stop()

    assert seen == ["fraud@v1", "churn@v1", "exp-1", "exp-2"]


@pytest.mark.asyncio
async def test_every_subscriber_receives_the_event(pubsub: PubSubManager) -> None:
    first: list[str] = []
    second: list[str] = []

    async def one(event) -> None:
        first.append(event.model_id)

    async def two(event) -> None:
        second.append(event.model_id)

    pubsub.subscribe(EventType.DRIFT_DETECTED, one)
    pubsub.subscribe(EventType.DRIFT_DETECTED, two)
    await pubsub.publish(_drift("fraud@v1"))
    await pubsub.drain()

    assert first == second == ["fraud@v1"]


@pytest.mark.asyncio
async def test_unsubscribe_stops_delivery(pubsub: PubSubManager) -> None:
    seen: list[str] = []

    async def handler(event) -> None:
        seen.append(event.model_id)

    pubsub.subscribe(EventType.DRIFT_DETECTED, handler)
    await pubsub.publish(_drift("fraud@v1"))
    await pubsub.drain()
    pubsub.unsubscribe(EventType.DRIFT_DETECTED, handler)
    pubsub.unsubscribe(EventType.DRIFT_DETECTED, handler)
    await pubsub.publish(_drift("churn@v1"))
    await pubsub.drain()

    assert seen == ["fraud@v1"]


@pytest.mark.asyncio
async def test_drain_waits_for_events_published_by_handlers(pubsub: PubSubManager) -> None:
    collected: list[tuple[str, ...]] = []

    async def on_drift(event) -> None:
        await asyncio.sleep(0.01)
        await pubsub.publish(MetricsCollectedEvent.create("test", model_ids=(event.model_id,)))

    async def on_metrics(event) -> None:
        collected.append(event.model_ids)

    pubsub.subscribe(EventType.DRIFT_DETECTED, on_drift)
    pubsub.subscribe(EventType.METRICS_COLLECTED, on_metrics)
    await pubsub.publish(_drift("fraud@v1"))
    await pubsub.drain()

    assert collected == [("fraud@v1",)]


@pytest.mark.asyncio
async def test_failing_handler_is_unsubscribed(make_config) -> None:
    manager = PubSubManager(log, make_config({"pubsub": {"handler_max_failures": 2}}))
    calls: list[str] = []

    async def broken(event) -> None:
        calls.append(event.model_id)
        raise RuntimeError("boom")

    manager.subscribe(EventType.DRIFT_DETECTED, broken)
    await manager.start()
    for model_id in ("a@v1", "b@v1", "c@v1"):
        await manager.publish(_drift(model_id))
        await manager.drain()
    await manager.stop()

    assert calls == ["a@v1", "b@v1"]
    assert manager.get_metrics()["handler_errors"] == 2


@pytest.mark.asyncio
async def test_slow_handler_times_out(make_config) -> None:
    manager = PubSubManager(log, make_config({"pubsub": {"handler_timeout_seconds": 0.05}}))
    finished: list[str] = []

    async def slow(event) -> None:
        await asyncio.sleep(1)
        finished.append(event.model_id)

    manager.subscribe(EventType.DRIFT_DETECTED, slow)
    await manager.start()
    await manager.publish(_drift("fraud@v1"))
    await manager.drain()
    await manager.stop()

    assert finished == []
    assert manager.get_metrics()["handler_errors"] == 1


@pytest.mark.asyncio
async def test_metrics(pubsub: PubSubManager) -> None:
    await pubsub.publish(_drift("fraud@v1"))
    await pubsub.publish(_experiment("exp-1"))
    await pubsub.drain()

    metrics = pubsub.get_metrics()
    assert metrics == {"queue_size": 0, "published": 2, "processed": 2, "handler_errors": 0}


@pytest.mark.asyncio
async def test_event_without_type_is_dropped(pubsub: PubSubManager) -> None:
    await pubsub.publish(object())  # type: ignore[arg-type]

    assert pubsub.get_metrics()["published"] == 0


@pytest.mark.asyncio
async def test_exempt_handler_outlives_timeout(make_config) -> None:
    manager = PubSubManager(log, make_config({"pubsub": {"handler_timeout_seconds": 0.05}}))
    finished: list[str] = []

    async def slow(event) -> None:
        await asyncio.sleep(0.2)
        finished.append(event.model_id)

    manager.subscribe(EventType.DRIFT_DETECTED, slow, exempt_from_timeout=True)
    await manager.start()
    await manager.publish(_drift("fraud@v1"))
    await manager.drain()
    await manager.stop()

    assert finished == ["fraud@v1"]
    assert manager.get_metrics()["handler_errors"] == 0
