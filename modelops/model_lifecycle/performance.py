"""Inference performance monitoring.

Inference calls increment per-model counters. A sampling timer turns the counters
into latency, throughput and error-rate data points, optionally adds process memory
and CPU figures from psutil, trims each series to the retention period and refreshes
its summary statistics.
"""

from __future__ import annotations

import asyncio
import contextlib
import copy
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

import numpy as np
import psutil

from modelops.core.events import (
    CustomMetricTrackedEvent,
    Event,
    InferenceTrackedEvent,
    MetricsCollectedEvent,
    PerformanceDropEvent,
)
from modelops.exceptions import InvalidParameterError
from modelops.utils.time_utils import from_iso, utc_now

from .enums import MetricType, TimeWindow
from .registry import coerce_enum

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService


CUSTOM_PREFIX = f"{MetricType.CUSTOM.value}."

_WINDOW_SPANS: dict[TimeWindow, timedelta] = {
    TimeWindow.MINUTE: timedelta(minutes=1),
    TimeWindow.FIVE_MINUTES: timedelta(minutes=5),
    TimeWindow.FIFTEEN_MINUTES: timedelta(minutes=15),
    TimeWindow.HOUR: timedelta(hours=1),
    TimeWindow.DAY: timedelta(days=1),
    TimeWindow.WEEK: timedelta(weeks=1),
    TimeWindow.MONTH: timedelta(days=30),
}


def percentile(sorted_values: list[float], pct: float) -> float:
    """Ceiling-indexed percentile of already sorted values."""
    if not sorted_values:
        return 0.0
    index = math.ceil(pct / 100 * len(sorted_values)) - 1
    index = min(max(index, 0), len(sorted_values) - 1)
    return float(sorted_values[index])


def summarize(values: list[float]) -> dict[str, float]:
    """Summary statistics of a series in recording order."""
    if not values:
        return {"min": 0.0, "max": 0.0, "avg": 0.0, "p50": 0.0,
                "p95": 0.0, "p99": 0.0, "count": 0, "last": 0.0}
    ordered = np.sort(np.asarray(values, dtype=float)).tolist()
    return {
        "min": ordered[0],
        "max": ordered[-1],
        "avg": float(np.mean(ordered)),
        "p50": percentile(ordered, 50),
        "p95": percentile(ordered, 95),
        "p99": percentile(ordered, 99),
        "count": len(ordered),
        "last": float(values[-1]),
    }


@dataclass
class DataPoint:
    """A single timestamped measurement."""

    timestamp: datetime
    value: float
    metadata: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"timestamp": self.timestamp.isoformat(), "value": self.value}
        if self.metadata:
            data["metadata"] = self.metadata
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> DataPoint:
        return cls(
            timestamp=from_iso(data["timestamp"]) or utc_now(),
            value=float(data["value"]),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass
class MetricSeries:
    """Data points of one metric and their summary."""

    data_points: list[DataPoint] = field(default_factory=list)
    summary: dict[str, float] = field(default_factory=dict)

    def refresh_summary(self) -> None:
        """Recompute the summary from the current data points."""
        self.summary = summarize([p.value for p in self.data_points])

    def to_dict(self) -> dict[str, Any]:
        return {
            "data_points": [p.to_dict() for p in self.data_points],
            "summary": self.summary,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> MetricSeries:
        return cls(
            data_points=[DataPoint.from_dict(p) for p in data.get("data_points", [])],
            summary=dict(data.get("summary", {})),
        )


@dataclass
class InferenceCounters:
    """Counters of the current sampling interval."""

    inference_count: int = 0
    total_latency_ms: float = 0.0
    error_count: int = 0
    batch_count: int = 0
    total_batch_size: int = 0

    def interval_metrics(self, interval_s: float) -> dict[str, float]:
        """Latency, throughput and error rate of the interval; all zero when idle."""
        if self.inference_count == 0:
            return {
                MetricType.LATENCY.value: 0.0,
                MetricType.THROUGHPUT.value: 0.0,
                MetricType.ERROR_RATE.value: 0.0,
            }
        return {
            MetricType.LATENCY.value: self.total_latency_ms / self.inference_count,
            MetricType.THROUGHPUT.value: self.inference_count / interval_s if interval_s else 0.0,
            MetricType.ERROR_RATE.value: self.error_count / self.inference_count,
        }


class ModelPerformanceService:
    """Track inference performance per model and publish performance events."""

    COLLECTION = "metrics"

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        pubsub: PubSubManager | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the performance service.

        Args:
            config: Configuration manager
            logger: Logger service
            store: Document store for the ``metrics`` collection
            pubsub: Optional event bus
            clock: Source of the current time
        """
        self.config = config
        self.logger = logger
        self._store = store
        self._pubsub = pubsub
        self._clock = clock
        self._source_module = self.__class__.__name__

        self._interval_s = config.get_float("performance.sampling_interval_seconds", 60.0)
        self._retention = timedelta(days=config.get_float("performance.retention_days", 30.0))
        self._performance_metric = str(
            config.get("performance.performance_metric", MetricType.PREDICTION_ACCURACY.value))
        self._performance_threshold = config.get_float("performance.performance_threshold", 0.8)
        self._collect_system = config.get_bool("performance.collect_system_metrics", default=True)

        self._counters: dict[str, InferenceCounters] = {}
        self._metrics: dict[str, dict[str, MetricSeries]] = {}
        self._loaded = False
        self._write_lock = asyncio.Lock()
        self._sampling_task: asyncio.Task | None = None
        self._process = psutil.Process()

    async def initialize(self) -> None:
        """Load stored metric series."""
        if self._loaded:
            return
        document = await self._store.load(self.COLLECTION) or {}
        self._metrics = {
            model_id: {name: MetricSeries.from_dict(s) for name, s in series.items()}
            for model_id, series in document.items()
        }
        self._loaded = True

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    async def _persist(self) -> None:
        async with self._write_lock:
            await self._store.save(self.COLLECTION, {
                model_id: {name: s.to_dict() for name, s in series.items()}
                for model_id, series in self._metrics.items()
            })

    def _append(self, model_id: str, metric: str, point: DataPoint) -> None:
        series = self._metrics.setdefault(model_id, {}).setdefault(metric, MetricSeries())
        series.data_points.append(point)
        cutoff = self._clock() - self._retention
        series.data_points = [p for p in series.data_points if p.timestamp >= cutoff]
        series.refresh_summary()

    # --- Tracking ---

    async def track_inference(
        self,
        model_id: str,
        latency_ms: float,
        success: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Count one inference call of a model."""
        await self.track_batch_inference(model_id, latency_ms, 1, success, metadata)

    async def track_batch_inference(
        self,
        model_id: str,
        latency_ms: float,
        batch_size: int,
        success: bool = True,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Count a batch of ``batch_size`` inferences served in ``latency_ms``."""
        if latency_ms < 0:
            raise InvalidParameterError("latency_ms", latency_ms)
        if batch_size < 1:
            raise InvalidParameterError("batch_size", batch_size)

        counters = self._counters.setdefault(model_id, InferenceCounters())
        counters.inference_count += batch_size
        counters.total_latency_ms += latency_ms
        if not success:
            counters.error_count += batch_size
        if batch_size > 1:
            counters.batch_count += 1
            counters.total_batch_size += batch_size

        await self._publish(InferenceTrackedEvent.create(
            self._source_module,
            model_id=model_id,
            latency_ms=float(latency_ms),
            success=success,
            batch_size=batch_size,
        ))

    async def track_custom_metric(
        self,
        model_id: str,
        metric_name: str,
        value: float,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Record a named metric under ``custom.<name>``.

        A value of the monitored performance metric below the configured threshold
        also publishes ``PERFORMANCE_DROP``.
        """
        await self._ensure_loaded()
        self._append(model_id, f"{CUSTOM_PREFIX}{metric_name}",
                     DataPoint(self._clock(), float(value), dict(metadata or {})))
        await self._persist()

        await self._publish(CustomMetricTrackedEvent.create(
            self._source_module, model_id=model_id, metric_name=metric_name, value=float(value)))

        if metric_name == self._performance_metric and value < self._performance_threshold:
            self.logger.warning(
                f"Performance drop for model {model_id}: {metric_name}={value}",
                source_module=self._source_module,
                context={"model_id": model_id, "threshold": self._performance_threshold},
            )
            await self._publish(PerformanceDropEvent.create(
                self._source_module,
                model_id=model_id,
                metric_name=metric_name,
                value=float(value),
                threshold=self._performance_threshold,
            ))

    def _system_metrics(self) -> dict[str, float]:
        if not self._collect_system:
            return {}
        try:
            return {
                MetricType.MEMORY_USAGE.value: self._process.memory_info().rss / 1024 / 1024,
                MetricType.CPU_USAGE.value: float(self._process.cpu_percent(interval=None)),
            }
        except psutil.Error as e:
            self.logger.warning(
                f"Could not read process metrics: {e}", source_module=self._source_module)
            return {}

    async def collect_metrics(self) -> list[str]:
        """Turn the interval counters into data points and reset them.

        Returns:
            The ids of the models that were sampled
        """
        await self._ensure_loaded()
        timestamp = self._clock()
        system = self._system_metrics()

        model_ids = list(self._counters)
        for model_id in model_ids:
            counters = self._counters[model_id]
            self._counters[model_id] = InferenceCounters()
            for metric, value in {**counters.interval_metrics(self._interval_s), **system}.items():
                self._append(model_id, metric, DataPoint(timestamp, float(value)))

        try:
            await self._persist()
        except Exception:
            self.logger.exception(
                "Failed to persist collected metrics",
                source_module=self._source_module,
            )
            raise

        await self._publish(MetricsCollectedEvent.create(
            self._source_module, model_ids=tuple(model_ids)))
        return model_ids

    # --- Queries ---

    def _filter(self, series: MetricSeries, window: TimeWindow) -> MetricSeries:
        span = _WINDOW_SPANS.get(window)
        if span is None:
            return copy.deepcopy(series)
        cutoff = self._clock() - span
        filtered = MetricSeries([copy.deepcopy(p) for p in series.data_points if p.timestamp >= cutoff])
        filtered.refresh_summary()
        return filtered

    async def get_model_metrics(
        self,
        model_id: str,
        metric_type: str | MetricType | None = None,
        time_window: str | TimeWindow = TimeWindow.ALL,
    ) -> dict[str, MetricSeries] | None:
        """Return a model's series, optionally one metric and a time window.

        Returns:
            Metric name -> series, or None when nothing is recorded for the model
        """
        await self._ensure_loaded()
        window = coerce_enum(TimeWindow, time_window, "time_window")
        series = self._metrics.get(model_id)
        if series is None:
            return None
        if metric_type is not None:
            name = metric_type.value if isinstance(metric_type, MetricType) else str(metric_type)
            if name not in series:
                return None
            return {name: self._filter(series[name], window)}
        return {name: self._filter(s, window) for name, s in series.items()}

    async def get_aggregated_metrics(
        self,
        metric_type: str | MetricType,
        time_window: str | TimeWindow = TimeWindow.ALL,
    ) -> MetricSeries:
        """Merge one metric across all models, ordered by time."""
        await self._ensure_loaded()
        window = coerce_enum(TimeWindow, time_window, "time_window")
        name = metric_type.value if isinstance(metric_type, MetricType) else str(metric_type)
        points: list[DataPoint] = []
        for series in self._metrics.values():
            if name in series:
                points.extend(self._filter(series[name], window).data_points)
        points.sort(key=lambda p: p.timestamp)
        merged = MetricSeries(points)
        merged.refresh_summary()
        return merged

    async def get_all_metrics(
        self, time_window: str | TimeWindow = TimeWindow.ALL,
    ) -> dict[str, dict[str, MetricSeries]]:
        """Return every model's series."""
        await self._ensure_loaded()
        result = {}
        for model_id in self._metrics:
            metrics = await self.get_model_metrics(model_id, time_window=time_window)
            if metrics is not None:
                result[model_id] = metrics
        return result

    def get_counters(self, model_id: str) -> InferenceCounters:
        """Return a copy of the current interval counters of a model."""
        return copy.copy(self._counters.get(model_id, InferenceCounters()))

    # --- Timer ---

    async def _sampling_loop(self) -> None:
        while True:
            await asyncio.sleep(self._interval_s)
            try:
                await self.collect_metrics()
            except Exception:
                self.logger.exception(
                    "Error in periodic metric collection",
                    source_module=self._source_module,
                )

    async def start(self) -> None:
        """Load state and start the sampling timer."""
        await self._ensure_loaded()
        if self._collect_system:
            # First cpu_percent call only primes the measurement
            self._process.cpu_percent(interval=None)
        if self._sampling_task is None or self._sampling_task.done():
            self._sampling_task = asyncio.create_task(self._sampling_loop())
            self.logger.info(
                f"Metric sampling started (every {self._interval_s}s)",
                source_module=self._source_module,
            )

    async def dispose(self) -> None:
        """Stop the sampling timer and wait for it to exit."""
        if self._sampling_task and not self._sampling_task.done():
            self._sampling_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._sampling_task
        self._sampling_task = None
        self.logger.info("Metric sampling stopped.", source_module=self._source_module)
