"""Data drift detection against per-model statistical baselines.

Baselines summarize each feature as mean, population standard deviation, range
and a ten-bin histogram. A background sweep compares the current statistics of
every ready baseline with the baseline itself and classifies the outcome into a
severity level. Reports with a severity other than ``none`` are persisted and
announced through a ``DRIFT_DETECTED`` event.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import math
import uuid
from collections import deque
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

from modelops.core.events import (
    BaselineCreatedEvent,
    DriftDetectedEvent,
    DriftDetectionCompletedEvent,
    Event,
)
from modelops.core.locks import KeyedLocks
from modelops.exceptions import (
    BaselineNotFoundError,
    ConfigurationError,
    InvalidParameterError,
    InvalidStateError,
)
from modelops.utils.time_utils import from_iso, utc_now

from .enums import DriftSeverity
from .registry import coerce_enum

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService


HISTOGRAM_BINS = 10
EMPTY_BIN_FREQUENCY = 0.001

DEFAULT_THRESHOLDS: dict[str, float] = {
    "low": 0.1,
    "medium": 0.25,
    "high": 0.5,
    "critical": 0.75,
}

_RECOMMENDATIONS: dict[DriftSeverity, dict[str, Any]] = {
    DriftSeverity.CRITICAL: {
        "priority": "high",
        "action": "immediate",
        "message": "Critical data drift detected; model quality is likely severely affected.",
        "steps": [
            "Investigate the source of drift immediately",
            "Consider rolling back to a previous model version",
            "Collect training data that reflects the current distribution",
            "Retrain the model",
        ],
    },
    DriftSeverity.HIGH: {
        "priority": "high",
        "action": "urgent",
        "message": "High data drift detected; model quality is probably degraded.",
        "steps": [
            "Watch model performance metrics closely",
            "Identify the features drifting most",
            "Schedule retraining",
        ],
    },
    DriftSeverity.MEDIUM: {
        "priority": "medium",
        "action": "monitor",
        "message": "Moderate data drift detected.",
        "steps": [
            "Keep monitoring the drift trend",
            "Evaluate the model on recent data",
            "Review the feature engineering pipeline",
        ],
    },
    DriftSeverity.LOW: {
        "priority": "low",
        "action": "observe",
        "message": "Low data drift detected; no immediate action required.",
        "steps": [
            "Continue regular monitoring",
            "Record the drift pattern for future reference",
        ],
    },
}


def build_thresholds(values: Mapping[str, Any] | None = None) -> dict[DriftSeverity, float]:
    """Merge configured thresholds over the defaults and validate their order.

    Raises:
        ConfigurationError: If a threshold is not numeric or the levels are not
            strictly ascending from low to critical.
    """
    merged = dict(DEFAULT_THRESHOLDS)
    merged.update(values or {})
    thresholds: dict[DriftSeverity, float] = {}
    for level in DEFAULT_THRESHOLDS:
        try:
            thresholds[DriftSeverity(level)] = float(merged[level])
        except (TypeError, ValueError) as e:
            raise ConfigurationError(
                f"Drift threshold '{level}' must be a number, got {merged[level]!r}") from e

    ordered = list(thresholds.values())
    if any(later <= earlier for earlier, later in zip(ordered, ordered[1:], strict=False)):
        raise ConfigurationError(
            "Drift thresholds must be strictly ascending (low < medium < high < critical), "
            f"got {merged}")
    return thresholds


def classify_severity(score: float, thresholds: Mapping[DriftSeverity, float]) -> DriftSeverity:
    """Return the highest severity whose threshold ``score`` reaches."""
    for level in (DriftSeverity.CRITICAL, DriftSeverity.HIGH,
                  DriftSeverity.MEDIUM, DriftSeverity.LOW):
        if score >= thresholds[level]:
            return level
    return DriftSeverity.NONE


def _histogram(values: np.ndarray, edges: np.ndarray | None = None) -> list[dict[str, float]]:
    if values.size == 0:
        return []
    counts, bin_edges = np.histogram(values, bins=edges if edges is not None else HISTOGRAM_BINS)
    return [
        {
            "bin": i,
            "min": float(bin_edges[i]),
            "max": float(bin_edges[i + 1]),
            "count": int(count),
            "frequency": float(count) / values.size,
        }
        for i, count in enumerate(counts)
    ]


def _edges_of(distribution: list[dict[str, Any]] | None) -> np.ndarray | None:
    if not distribution:
        return None
    edges = [float(b["min"]) for b in distribution] + [float(distribution[-1]["max"])]
    return np.asarray(edges)


def _is_number(value: Any) -> bool:  # noqa: ANN401
    return isinstance(value, (int, float)) and not isinstance(value, bool) and math.isfinite(value)


def summarize_feature(
    values: Iterable[Any], reference: Mapping[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Summarize numeric ``values``; bin on the reference histogram edges when given."""
    array = np.asarray([v for v in values if _is_number(v)], dtype=float)
    if array.size == 0:
        return None
    edges = _edges_of(reference.get("distribution")) if reference else None
    return {
        "mean": float(array.mean()),
        "std": float(array.std()),
        "min": float(array.min()),
        "max": float(array.max()),
        "distribution": _histogram(array, edges),
    }


def summarize_predictions(
    values: Iterable[Any], reference: Mapping[str, Any] | None = None,
) -> dict[str, Any] | None:
    """Summarize model outputs as a class balance and, when numeric, a histogram."""
    collected = [v for v in values if v is not None]
    if not collected:
        return None
    classes, counts = np.unique([str(v) for v in collected], return_counts=True)
    summary: dict[str, Any] = {
        "class_balance": {
            str(label): float(count) / len(collected)
            for label, count in zip(classes, counts, strict=True)
        },
    }
    numeric = np.asarray([v for v in collected if _is_number(v)], dtype=float)
    if numeric.size:
        edges = _edges_of(reference.get("distribution")) if reference else None
        summary["distribution"] = _histogram(numeric, edges)
    return summary


def compute_statistics(
    rows: list[Mapping[str, Any]],
    features: list[str] | None = None,
    prediction_field: str | None = None,
    reference: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Build a statistics document ``{"features": {...}, "predictions": {...}}`` from rows."""
    if features is None:
        features = [k for k in (rows[0].keys() if rows else []) if k != prediction_field]
    reference_features = (reference or {}).get("features", {})

    statistics: dict[str, Any] = {"features": {}}
    for feature in features:
        summary = summarize_feature(
            (row.get(feature) for row in rows), reference_features.get(feature))
        if summary is not None:
            statistics["features"][feature] = summary

    if prediction_field:
        predictions = summarize_predictions(
            (row.get(prediction_field) for row in rows), (reference or {}).get("predictions"))
        if predictions is not None:
            statistics["predictions"] = predictions
    return statistics


def kl_divergence(baseline: list[Mapping[str, Any]], current: list[Mapping[str, Any]]) -> float:
    """KL divergence of two binned histograms, substituting a floor for empty bins."""
    total = 0.0
    for i, bucket in enumerate(baseline):
        p = float(bucket.get("frequency") or 0.0) or EMPTY_BIN_FREQUENCY
        q = float(current[i].get("frequency") or 0.0) if i < len(current) else 0.0
        q = q or EMPTY_BIN_FREQUENCY
        total += p * math.log(p / q)
    return total


@dataclass
class DriftBaseline:
    """Reference statistics a model's live data is compared against."""

    model_id: str
    statistics: dict[str, Any]
    metadata: dict[str, Any] = field(default_factory=dict)
    is_ready: bool = False
    created_at: datetime = field(default_factory=utc_now)

    @property
    def features(self) -> list[str]:
        """Features covered by the baseline."""
        return list(self.statistics.get("features", {}).keys())

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "model_id": self.model_id,
            "statistics": self.statistics,
            "metadata": self.metadata,
            "is_ready": self.is_ready,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftBaseline:
        """Create a baseline from its stored form."""
        data = dict(data)
        data["created_at"] = from_iso(data.get("created_at")) or utc_now()
        return cls(**data)


@dataclass(frozen=True)
class DriftReport:
    """Outcome of one drift comparison. Never mutated after creation."""

    id: str
    model_id: str
    timestamp: datetime
    drift_results: dict[str, Any]
    overall_severity: DriftSeverity
    recommendations: list[dict[str, Any]] = field(default_factory=list)
    current_statistics: dict[str, Any] = field(default_factory=dict)

    @property
    def overall_score(self) -> float:
        """Mean of all component drift scores."""
        return float(self.drift_results.get("overall_score", 0.0))

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage and event payloads."""
        return {
            "id": self.id,
            "model_id": self.model_id,
            "timestamp": self.timestamp.isoformat(),
            "drift_results": self.drift_results,
            "overall_severity": self.overall_severity.value,
            "recommendations": self.recommendations,
            "current_statistics": self.current_statistics,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DriftReport:
        """Create a report from its stored form."""
        return cls(
            id=data["id"],
            model_id=data["model_id"],
            timestamp=from_iso(data["timestamp"]) or utc_now(),
            drift_results=data.get("drift_results", {}),
            overall_severity=DriftSeverity(data.get("overall_severity", "none")),
            recommendations=list(data.get("recommendations", [])),
            current_statistics=data.get("current_statistics", {}),
        )


@runtime_checkable
class CurrentStatisticsProvider(Protocol):
    """Source of the live statistics a baseline is compared with."""

    async def get_current_statistics(
        self, model_id: str, baseline: DriftBaseline,
    ) -> dict[str, Any] | None:
        """Return a statistics document for ``model_id`` or None when no data is available."""
        ...


class ObservationWindow:
    """Rolling window of recent input rows per model.

    Serves as the default current-statistics provider: the rows seen most recently
    are summarized on the baseline's histogram edges.
    """

    def __init__(self, max_rows: int = 1000) -> None:
        """Initialize the window with its per-model capacity."""
        self._max_rows = max_rows
        self._rows: dict[str, deque[dict[str, Any]]] = {}

    def record(self, model_id: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Append rows for a model and return the window size."""
        window = self._rows.setdefault(model_id, deque(maxlen=self._max_rows))
        window.extend(dict(row) for row in rows)
        return len(window)

    def size(self, model_id: str) -> int:
        """Number of rows held for a model."""
        return len(self._rows.get(model_id, ()))

    async def get_current_statistics(
        self, model_id: str, baseline: DriftBaseline,
    ) -> dict[str, Any] | None:
        rows = list(self._rows.get(model_id, ()))
        if not rows:
            return None
        return compute_statistics(
            rows,
            features=baseline.metadata.get("features") or baseline.features,
            prediction_field=baseline.metadata.get("prediction_field"),
            reference=baseline.statistics,
        )


class DataDriftService:
    """Maintain drift baselines and detect drift periodically or on demand."""

    BASELINES_COLLECTION = "baselines"
    REPORTS_NAMESPACE = "drift_reports"

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        pubsub: PubSubManager | None = None,
        statistics_provider: CurrentStatisticsProvider | None = None,
    ) -> None:
        """Initialize the drift service.

        Args:
            config: Configuration manager
            logger: Logger service
            store: Document store for baselines and reports
            pubsub: Optional event bus
            statistics_provider: Source of current statistics; defaults to the
                observation window fed by :meth:`record_observations`

        Raises:
            ConfigurationError: If the severity thresholds are not strictly ascending
        """
        self.config = config
        self.logger = logger
        self._store = store
        self._pubsub = pubsub
        self._source_module = self.__class__.__name__

        self._thresholds = build_thresholds(config.get_dict("drift.thresholds"))
        self._interval_s = config.get_float("drift.detection_interval_seconds", 3600.0)
        self._persist_clean = config.get_bool("drift.persist_clean_reports", default=False)
        self._observations = ObservationWindow(config.get_int("drift.observation_window", 1000))
        self._provider: CurrentStatisticsProvider = statistics_provider or self._observations

        self._baselines: dict[str, DriftBaseline] = {}
        self._reports: dict[str, list[DriftReport]] = {}
        self._loaded = False
        self._locks = KeyedLocks()
        self._write_lock = asyncio.Lock()
        self._detection_task: asyncio.Task | None = None

    @property
    def thresholds(self) -> dict[DriftSeverity, float]:
        """Severity thresholds in ascending order."""
        return dict(self._thresholds)

    async def initialize(self) -> None:
        """Load baselines and report history from the store."""
        if self._loaded:
            return
        baselines = await self._store.load(self.BASELINES_COLLECTION) or {}
        self._baselines = {k: DriftBaseline.from_dict(v) for k, v in baselines.items()}
        for document in await self._store.list_documents(self.REPORTS_NAMESPACE):
            report = DriftReport.from_dict(document)
            self._reports.setdefault(report.model_id, []).append(report)
        for reports in self._reports.values():
            reports.sort(key=lambda r: r.timestamp)
        self._loaded = True
        self.logger.info(
            f"Loaded {len(self._baselines)} drift baselines",
            source_module=self._source_module,
        )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    # --- Baselines ---

    async def create_baseline(
        self,
        model_id: str,
        data: list[Mapping[str, Any]] | Mapping[str, Any],
        options: dict[str, Any] | None = None,
    ) -> DriftBaseline:
        """Create or refresh the baseline of a model.

        Args:
            model_id: Model the baseline belongs to
            data: Either raw rows or a statistics document with a ``features`` key
            options: Optional ``features`` subset and ``prediction_field``

        Returns:
            The ready baseline
        """
        await self._ensure_loaded()
        options = options or {}
        prediction_field = options.get("prediction_field")

        if isinstance(data, Mapping):
            if "features" not in data:
                raise InvalidParameterError(
                    "data", "<mapping>",
                    message="Statistics documents must contain a 'features' mapping")
            statistics = copy.deepcopy(dict(data))
            data_size = int(options.get("data_size", 0))
        else:
            rows = list(data)
            if not rows:
                raise InvalidParameterError("data", "[]", message="Baseline data is empty")
            statistics = compute_statistics(rows, options.get("features"), prediction_field)
            data_size = len(rows)

        features = list(statistics.get("features", {}).keys())
        baseline = DriftBaseline(
            model_id=model_id,
            statistics=statistics,
            metadata={
                "data_size": data_size,
                "features": features,
                "prediction_field": prediction_field,
            },
            is_ready=True,
        )

        async with self._locks.hold(model_id), self._write_lock:
            snapshot = dict(self._baselines)
            snapshot[model_id] = baseline
            await self._store.save(
                self.BASELINES_COLLECTION, {k: v.to_dict() for k, v in snapshot.items()})
            self._baselines = snapshot

        self.logger.info(
            f"Created drift baseline for model {model_id}",
            source_module=self._source_module,
            context={"features": len(features), "data_size": data_size},
        )
        await self._publish(BaselineCreatedEvent.create(
            self._source_module, model_id=model_id, features=tuple(features)))
        return copy.deepcopy(baseline)

    async def get_baseline(self, model_id: str) -> DriftBaseline:
        """Return the baseline of a model."""
        await self._ensure_loaded()
        baseline = self._baselines.get(model_id)
        if baseline is None:
            raise BaselineNotFoundError(model_id)
        return copy.deepcopy(baseline)

    def record_observations(self, model_id: str, rows: Iterable[Mapping[str, Any]]) -> int:
        """Feed live input rows into the observation window of a model."""
        return self._observations.record(model_id, rows)

    # --- Drift computation ---

    def _component(self, score: float, **values: float) -> dict[str, Any]:
        return {**values, "score": score,
                "severity": classify_severity(score, self._thresholds).value}

    def calculate_drift(
        self, baseline_stats: Mapping[str, Any], current_stats: Mapping[str, Any],
    ) -> dict[str, Any]:
        """Compare two statistics documents and return the drift results."""
        results: dict[str, Any] = {"statistical": {}, "distribution": {}}
        scores: list[float] = []
        current_features = current_stats.get("features", {})

        for feature, base in baseline_stats.get("features", {}).items():
            current = current_features.get(feature)
            if not current:
                continue
            scale = base.get("std") or 1.0
            mean_drift = abs(current["mean"] - base["mean"]) / scale
            std_drift = abs(current["std"] - base["std"]) / scale
            statistical = self._component(
                (mean_drift + std_drift) / 2, mean_drift=mean_drift, std_drift=std_drift)
            results["statistical"][feature] = statistical
            scores.append(statistical["score"])

            if base.get("distribution") and current.get("distribution"):
                kl = kl_divergence(base["distribution"], current["distribution"])
                results["distribution"][feature] = self._component(kl, kl_divergence=kl)
                scores.append(kl)

        base_predictions = baseline_stats.get("predictions") or {}
        current_predictions = current_stats.get("predictions") or {}
        if base_predictions.get("distribution") and current_predictions.get("distribution"):
            kl = kl_divergence(base_predictions["distribution"], current_predictions["distribution"])
            results["prediction"] = self._component(kl, kl_divergence=kl)
            scores.append(kl)
        base_balance = base_predictions.get("class_balance")
        current_balance = current_predictions.get("class_balance")
        if base_balance and current_balance is not None:
            differences = [
                abs(current_balance.get(label, 0.0) - share)
                for label, share in base_balance.items()
            ]
            balance_score = sum(differences) / len(differences)
            results["class_balance"] = self._component(balance_score)
            scores.append(balance_score)

        results["overall_score"] = sum(scores) / len(scores) if scores else 0.0
        return results

    @staticmethod
    def generate_recommendations(
        severity: DriftSeverity, drift_results: Mapping[str, Any],
    ) -> list[dict[str, Any]]:
        """Derive recommended actions from the overall severity and per-feature drift."""
        recommendations = []
        overall = _RECOMMENDATIONS.get(severity)
        if overall is not None:
            recommendations.append(copy.deepcopy(overall))
        for feature, drift in drift_results.get("statistical", {}).items():
            if drift.get("severity") in (DriftSeverity.HIGH.value, DriftSeverity.CRITICAL.value):
                recommendations.append({
                    "priority": "medium",
                    "action": "investigate",
                    "message": f"Feature '{feature}' shows significant drift",
                    "steps": [
                        f"Check the data source of feature '{feature}'",
                        "Look for data quality issues",
                        "Consider transforming or removing the feature",
                    ],
                })
        return recommendations

    def _resolve_current(
        self, baseline: DriftBaseline, current: list[Mapping[str, Any]] | Mapping[str, Any],
    ) -> dict[str, Any]:
        if isinstance(current, Mapping):
            if "features" not in current:
                raise InvalidParameterError(
                    "current_statistics", "<mapping>",
                    message="Statistics documents must contain a 'features' mapping")
            return dict(current)
        return compute_statistics(
            list(current),
            features=baseline.metadata.get("features") or baseline.features,
            prediction_field=baseline.metadata.get("prediction_field"),
            reference=baseline.statistics,
        )

    async def _evaluate(self, baseline: DriftBaseline, current: dict[str, Any]) -> DriftReport:
        drift_results = self.calculate_drift(baseline.statistics, current)
        severity = classify_severity(drift_results["overall_score"], self._thresholds)
        timestamp = utc_now()
        report = DriftReport(
            id=f"drift-{baseline.model_id}-{int(timestamp.timestamp() * 1000)}-{uuid.uuid4().hex[:6]}",
            model_id=baseline.model_id,
            timestamp=timestamp,
            drift_results=drift_results,
            overall_severity=severity,
            recommendations=self.generate_recommendations(severity, drift_results),
            current_statistics=current,
        )

        if severity != DriftSeverity.NONE or self._persist_clean:
            await self._store_report(report)
        if severity != DriftSeverity.NONE:
            self.logger.warning(
                f"Drift detected for model {baseline.model_id}",
                source_module=self._source_module,
                context={
                    "model_id": baseline.model_id,
                    "severity": severity.value,
                    "score": round(drift_results["overall_score"], 4),
                },
            )
            await self._publish(DriftDetectedEvent.create(
                self._source_module,
                model_id=baseline.model_id,
                severity=severity.value,
                report=report.to_dict(),
            ))
        else:
            self.logger.debug(
                f"No drift for model {baseline.model_id}",
                source_module=self._source_module,
                context={"score": drift_results["overall_score"]},
            )
        return report

    async def _store_report(self, report: DriftReport) -> None:
        key = f"{self.REPORTS_NAMESPACE}/{report.id.replace('/', '_')}"
        await self._store.save(key, report.to_dict())
        self._reports.setdefault(report.model_id, []).append(report)

    def _ready_baseline(self, model_id: str) -> DriftBaseline:
        baseline = self._baselines.get(model_id)
        if baseline is None:
            raise BaselineNotFoundError(model_id)
        if not baseline.is_ready:
            raise InvalidStateError("Baseline", model_id, "not-ready")
        return baseline

    async def detect_drift_for_model(
        self,
        model_id: str,
        current_statistics: list[Mapping[str, Any]] | Mapping[str, Any] | None = None,
    ) -> DriftReport | None:
        """Run a drift comparison for one model on demand.

        Args:
            model_id: Model to check
            current_statistics: Raw rows or a statistics document; when omitted the
                configured provider is asked

        Returns:
            The report, or None when the provider has no current data

        Raises:
            BaselineNotFoundError: If the model has no baseline
            InvalidStateError: If the baseline is not ready
        """
        await self._ensure_loaded()
        async with self._locks.hold(model_id):
            baseline = self._ready_baseline(model_id)
            try:
                if current_statistics is None:
                    current = await self._provider.get_current_statistics(model_id, baseline)
                    if current is None:
                        return None
                else:
                    current = self._resolve_current(baseline, current_statistics)
                return await self._evaluate(baseline, current)
            except Exception:
                self.logger.exception(
                    f"Drift detection failed for model {model_id}",
                    source_module=self._source_module,
                    context={"model_id": model_id},
                )
                raise

    async def run_detection_sweep(self) -> int:
        """Check every ready baseline concurrently and return how many were checked."""
        await self._ensure_loaded()
        model_ids = [m for m, b in self._baselines.items() if b.is_ready]
        results = await asyncio.gather(
            *(self.detect_drift_for_model(model_id) for model_id in model_ids),
            return_exceptions=True,
        )
        checked = sum(1 for r in results if isinstance(r, DriftReport))
        failures = sum(1 for r in results if isinstance(r, BaseException))
        if failures:
            self.logger.warning(
                f"Drift sweep finished with {failures} failures",
                source_module=self._source_module,
            )
        await self._publish(DriftDetectionCompletedEvent.create(
            self._source_module, models_checked=checked))
        return checked

    # --- Reports ---

    async def get_drift_reports(
        self, model_id: str, filters: dict[str, Any] | None = None,
    ) -> list[DriftReport]:
        """Return a model's reports newest first.

        Filters: ``start`` / ``end`` (datetime or ISO string), ``severity`` and ``limit``.
        """
        await self._ensure_loaded()
        filters = filters or {}
        start = from_iso(filters["start"]) if filters.get("start") else None
        end = from_iso(filters["end"]) if filters.get("end") else None
        severity = filters.get("severity")
        if severity is not None:
            severity = coerce_enum(DriftSeverity, severity, "severity")

        reports = [
            r for r in self._reports.get(model_id, [])
            if (start is None or r.timestamp >= start)
            and (end is None or r.timestamp <= end)
            and (severity is None or r.overall_severity == severity)
        ]
        reports.sort(key=lambda r: r.timestamp, reverse=True)
        limit = filters.get("limit")
        if limit:
            reports = reports[:int(limit)]
        return reports

    async def get_latest_drift_report(self, model_id: str) -> DriftReport | None:
        """Return the most recent report of a model, if any."""
        reports = await self.get_drift_reports(model_id, {"limit": 1})
        return reports[0] if reports else None

    # --- Timer ---

    async def _detection_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.run_detection_sweep()
            except Exception:
                self.logger.exception(
                    "Error in periodic drift detection",
                    source_module=self._source_module,
                )

    async def start(self) -> None:
        """Load state and start the periodic detection timer."""
        await self._ensure_loaded()
        if self._detection_task is None or self._detection_task.done():
            self._detection_task = asyncio.create_task(self._detection_loop())
            self.logger.info(
                f"Drift detection started (every {self._interval_s}s)",
                source_module=self._source_module,
            )

    async def dispose(self) -> None:
        """Stop the detection timer and wait for it to exit."""
        if self._detection_task and not self._detection_task.done():
            self._detection_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._detection_task
        self._detection_task = None
        self.logger.info("Drift detection stopped.", source_module=self._source_module)
