"""Tests for drift baselines, scoring and reporting."""

import pytest

from modelops.core.events import EventType
from modelops.exceptions import BaselineNotFoundError, ConfigurationError, InvalidParameterError
from modelops.model_lifecycle.drift import (
    DataDriftService,
    build_thresholds,
    classify_severity,
    compute_statistics,
    kl_divergence,
)
from modelops.model_lifecycle.enums import DriftSeverity

UNIFORM_ROWS = [{"x": float(i), "label": "a" if i % 2 else "b"} for i in range(100)]
SKEWED_ROWS = [{"x": float(i % 10), "label": "a"} for i in range(100)]


@pytest.fixture
async def drift(config, logger, store, pubsub) -> DataDriftService:
    service = DataDriftService(config, logger, store, pubsub)
    await service.initialize()
    yield service
    await service.dispose()


def test_default_thresholds() -> None:
    thresholds = build_thresholds()

    assert thresholds == {
        DriftSeverity.LOW: 0.1,
        DriftSeverity.MEDIUM: 0.25,
        DriftSeverity.HIGH: 0.5,
        DriftSeverity.CRITICAL: 0.75,
    }


@pytest.mark.parametrize(
    "values",
    [
        {"low": 0.3, "medium": 0.25},
        {"high": 0.5, "critical": 0.5},
        {"medium": "a lot"},
    ],
)
def test_invalid_thresholds_are_rejected(values) -> None:
    with pytest.raises(ConfigurationError):
        build_thresholds(values)


def test_service_rejects_unordered_thresholds(make_config, logger, store) -> None:
    config = make_config({"drift": {"thresholds": {"low": 0.9}}})

    with pytest.raises(ConfigurationError):
        DataDriftService(config, logger, store)


@pytest.mark.parametrize(
    ("score", "expected"),
    [
        (0.0, DriftSeverity.NONE),
        (0.099, DriftSeverity.NONE),
        (0.1, DriftSeverity.LOW),
        (0.3, DriftSeverity.MEDIUM),
        (0.5, DriftSeverity.HIGH),
        (0.74, DriftSeverity.HIGH),
        (0.75, DriftSeverity.CRITICAL),
        (4.0, DriftSeverity.CRITICAL),
    ],
)
def test_classify_severity(score: float, expected: DriftSeverity) -> None:
    assert classify_severity(score, build_thresholds()) == expected


def test_kl_divergence_of_identical_histograms_is_zero() -> None:
    histogram = [{"frequency": 0.25}] * 4

    assert kl_divergence(histogram, histogram) == pytest.approx(0.0)
    assert kl_divergence(histogram, [{"frequency": 1.0}]) > 1.0


def test_compute_statistics_uses_reference_edges() -> None:
    baseline = compute_statistics(UNIFORM_ROWS, features=["x"], prediction_field="label")
    current = compute_statistics(
        [{"x": 500.0, "label": "a"}], features=["x"], prediction_field="label", reference=baseline)

    base_bins = baseline["features"]["x"]["distribution"]
    current_bins = current["features"]["x"]["distribution"]
    assert len(base_bins) == 10
    assert [b["min"] for b in current_bins] == [b["min"] for b in base_bins]
    assert baseline["features"]["x"]["mean"] == pytest.approx(49.5)
    assert baseline["predictions"]["class_balance"] == {"a": 0.5, "b": 0.5}


@pytest.mark.asyncio
async def test_small_shift_is_not_reported(drift: DataDriftService, store, pubsub, recorder) -> None:
    recorder.listen(pubsub, EventType.DRIFT_DETECTED)
    await drift.create_baseline("fraud@v1", {"features": {"x": {"mean": 10.0, "std": 1.0}}})

    report = await drift.detect_drift_for_model(
        "fraud@v1", {"features": {"x": {"mean": 10.05, "std": 1.0}}})
    await pubsub.drain()

    assert report.overall_score == pytest.approx(0.025)
    assert report.overall_severity == DriftSeverity.NONE
    assert report.recommendations == []
    assert recorder.events == []
    assert await drift.get_drift_reports("fraud@v1") == []
    assert await store.list_documents("drift_reports") == []


@pytest.mark.asyncio
async def test_high_drift_is_reported_and_published(drift: DataDriftService, pubsub, recorder) -> None:
    recorder.listen(pubsub, EventType.DRIFT_DETECTED)
    await drift.create_baseline("fraud@v1", {"features": {"x": {"mean": 0.0, "std": 1.0}}})

    report = await drift.detect_drift_for_model(
        "fraud@v1", {"features": {"x": {"mean": 1.2, "std": 1.0}}})
    await pubsub.drain()

    assert report.overall_score == pytest.approx(0.6)
    assert report.overall_severity == DriftSeverity.HIGH
    assert report.drift_results["statistical"]["x"]["severity"] == "high"
    assert report.recommendations[0]["action"] == "urgent"
    assert any("'x'" in r["message"] for r in report.recommendations[1:])

    event = recorder.events[0]
    assert (event.model_id, event.severity) == ("fraud@v1", "high")
    assert event.report["id"] == report.id
    assert (await drift.get_latest_drift_report("fraud@v1")).id == report.id


@pytest.mark.asyncio
async def test_observation_window_feeds_detection(drift: DataDriftService) -> None:
    await drift.create_baseline("fraud@v1", UNIFORM_ROWS, {"prediction_field": "label"})

    assert await drift.detect_drift_for_model("fraud@v1") is None

    assert drift.record_observations("fraud@v1", SKEWED_ROWS) == 100
    report = await drift.detect_drift_for_model("fraud@v1")

    assert report.overall_severity == DriftSeverity.CRITICAL
    assert set(report.drift_results) >= {"statistical", "distribution", "class_balance"}
    assert report.drift_results["class_balance"]["score"] == pytest.approx(0.5)


@pytest.mark.asyncio
async def test_identical_rows_show_no_drift(drift: DataDriftService) -> None:
    await drift.create_baseline("fraud@v1", UNIFORM_ROWS, {"features": ["x"]})

    report = await drift.detect_drift_for_model("fraud@v1", UNIFORM_ROWS)

    assert report.overall_score == pytest.approx(0.0)
    assert report.overall_severity == DriftSeverity.NONE


@pytest.mark.asyncio
async def test_sweep_checks_models_with_data(drift: DataDriftService, pubsub, recorder) -> None:
    recorder.listen(pubsub, EventType.DRIFT_DETECTION_COMPLETED)
    await drift.create_baseline("fraud@v1", UNIFORM_ROWS)
    await drift.create_baseline("churn@v1", UNIFORM_ROWS)
    drift.record_observations("fraud@v1", SKEWED_ROWS)

    checked = await drift.run_detection_sweep()
    await pubsub.drain()

    assert checked == 1
    assert recorder.events[0].models_checked == 1
    assert len(await drift.get_drift_reports("fraud@v1")) == 1
    assert await drift.get_drift_reports("churn@v1") == []


@pytest.mark.asyncio
async def test_report_filters_and_reload(config, logger, store, drift: DataDriftService) -> None:
    await drift.create_baseline("fraud@v1", {"features": {"x": {"mean": 0.0, "std": 1.0}}})
    medium = await drift.detect_drift_for_model(
        "fraud@v1", {"features": {"x": {"mean": 0.5, "std": 1.0}}})
    critical = await drift.detect_drift_for_model(
        "fraud@v1", {"features": {"x": {"mean": 2.0, "std": 1.0}}})

    assert medium.overall_severity == DriftSeverity.MEDIUM
    by_severity = await drift.get_drift_reports("fraud@v1", {"severity": "critical"})
    assert [r.id for r in by_severity] == [critical.id]
    assert len(await drift.get_drift_reports("fraud@v1", {"limit": 1})) == 1
    after = await drift.get_drift_reports("fraud@v1", {"start": critical.timestamp})
    assert critical.id in {r.id for r in after}

    reloaded = DataDriftService(config, logger, store)
    await reloaded.initialize()
    assert {r.id for r in await reloaded.get_drift_reports("fraud@v1")} == {medium.id, critical.id}
    assert (await reloaded.get_baseline("fraud@v1")).features == ["x"]


@pytest.mark.asyncio
async def test_errors(drift: DataDriftService) -> None:
    with pytest.raises(BaselineNotFoundError):
        await drift.detect_drift_for_model("unknown@v1", UNIFORM_ROWS)
    with pytest.raises(InvalidParameterError):
        await drift.create_baseline("fraud@v1", [])
    with pytest.raises(InvalidParameterError):
        await drift.create_baseline("fraud@v1", {"means": {}})
