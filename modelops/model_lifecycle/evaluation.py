"""Asynchronous evaluation of model versions against registered datasets."""

from __future__ import annotations

import asyncio
import copy
import math
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

import numpy as np

from modelops.core.events import (
    EvaluationCompletedEvent,
    EvaluationCreatedEvent,
    EvaluationDeletedEvent,
    EvaluationFailedEvent,
    EvaluationStartedEvent,
    Event,
)
from modelops.core.locks import KeyedLocks
from modelops.exceptions import (
    DatasetNotFoundError,
    EvaluationNotFoundError,
    EvaluationTimeoutError,
    InvalidStateError,
    ModelOpsError,
)
from modelops.utils.time_utils import from_iso, to_iso, utc_now

from .enums import EvaluationStatus, EvaluationType
from .registry import coerce_enum, parse_model_id

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService

    from .experiment_tracking import ExperimentTrackingService
    from .registry import ModelRegistry


_TERMINAL_STATES = {EvaluationStatus.COMPLETED, EvaluationStatus.FAILED}


@dataclass
class Dataset:
    """Metadata of a dataset evaluations can run against."""

    id: str
    name: str
    type: str = "tabular"
    size: int = 0
    features: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "size": self.size,
            "features": self.features,
            "metadata": self.metadata,
            "created_at": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Dataset:
        """Create a dataset record from its stored form."""
        data = dict(data)
        data["created_at"] = from_iso(data.get("created_at")) or utc_now()
        return cls(**data)


@dataclass
class Evaluation:
    """A scored evaluation of one model version against one dataset."""

    id: str
    name: str
    model_id: str
    dataset_id: str
    status: EvaluationStatus = EvaluationStatus.PENDING
    type: EvaluationType = EvaluationType.CLASSIFICATION
    metrics: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    experiment_id: str | None = None
    run_id: str | None = None
    notes: str | None = None
    user_id: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        """Whether the evaluation has completed or failed."""
        return self.status in _TERMINAL_STATES

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "model_id": self.model_id,
            "dataset_id": self.dataset_id,
            "status": self.status.value,
            "type": self.type.value,
            "metrics": self.metrics,
            "parameters": self.parameters,
            "tags": self.tags,
            "experiment_id": self.experiment_id,
            "run_id": self.run_id,
            "notes": self.notes,
            "user_id": self.user_id,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Evaluation:
        """Create an evaluation from its stored form."""
        data = dict(data)
        data["status"] = EvaluationStatus(data.get("status", "pending"))
        data["type"] = EvaluationType(data.get("type", "classification"))
        for date_field in ("created_at", "updated_at"):
            data[date_field] = from_iso(data.get(date_field)) or utc_now()
        for date_field in ("started_at", "completed_at"):
            data[date_field] = from_iso(data.get(date_field))
        return cls(**data)


@dataclass
class EvaluationComparison:
    """Metrics of several completed evaluations lined up side by side."""

    evaluations: list[Evaluation]
    metrics: dict[str, list[tuple[str, Any]]]


@runtime_checkable
class EvaluationScorer(Protocol):
    """Scoring engine contract: compute the metric set of an evaluation."""

    async def score(self, evaluation: Evaluation, dataset: Dataset | None) -> dict[str, float]:
        """Return metric name -> value for the evaluation."""
        ...


class SimulatedScorer:
    """Scorer that draws plausible metrics per evaluation type.

    Stands in for a real scoring engine in local runs. Seeding the generator makes
    results reproducible.
    """

    def __init__(self, seed: int | None = None) -> None:
        """Initialize the scorer with an optional seed."""
        self._rng = np.random.default_rng(seed)

    def _uniform(self, low: float, high: float) -> float:
        return round(float(self._rng.uniform(low, high)), 4)

    async def score(self, evaluation: Evaluation, dataset: Dataset | None) -> dict[str, float]:
        kind = evaluation.type
        if kind in (EvaluationType.CLASSIFICATION, EvaluationType.ANOMALY_DETECTION):
            precision = self._uniform(0.7, 0.98)
            recall = self._uniform(0.7, 0.98)
            metrics = {
                "accuracy": self._uniform(0.75, 0.99),
                "precision": precision,
                "recall": recall,
                "f1_score": round(2 * precision * recall / (precision + recall), 4),
                "auc": self._uniform(0.8, 0.99),
            }
            if kind == EvaluationType.ANOMALY_DETECTION:
                metrics.pop("accuracy")
            return metrics
        if kind == EvaluationType.REGRESSION:
            mse = self._uniform(0.01, 0.5)
            return {
                "mse": mse,
                "rmse": round(math.sqrt(mse), 4),
                "mae": self._uniform(0.05, 0.4),
                "r2": self._uniform(0.6, 0.95),
            }
        if kind == EvaluationType.OBJECT_DETECTION:
            return {
                "map": self._uniform(0.4, 0.8),
                "map_50": self._uniform(0.6, 0.9),
                "map_75": self._uniform(0.3, 0.7),
                "precision": self._uniform(0.6, 0.95),
                "recall": self._uniform(0.6, 0.95),
            }
        if kind == EvaluationType.SEGMENTATION:
            return {
                "iou": self._uniform(0.5, 0.9),
                "dice": self._uniform(0.6, 0.95),
                "pixel_accuracy": self._uniform(0.8, 0.99),
            }
        if kind == EvaluationType.RECOMMENDATION:
            return {
                "precision_at_k": self._uniform(0.1, 0.5),
                "recall_at_k": self._uniform(0.1, 0.6),
                "ndcg": self._uniform(0.3, 0.8),
                "map": self._uniform(0.2, 0.6),
            }
        return {"score": self._uniform(0.5, 1.0)}


class ModelEvaluationService:
    """Run evaluations asynchronously and publish their outcome.

    ``start_evaluation`` returns as soon as the evaluation is marked running; scoring
    happens in a detached task. Callers either subscribe to the completion events
    or await :meth:`wait_for_evaluation`, which resolves through a future completed
    by the task itself.
    """

    EVALUATIONS_COLLECTION = "evaluations"
    DATASETS_COLLECTION = "datasets"

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        experiment_tracking: ExperimentTrackingService,
        registry: ModelRegistry,
        scorer: EvaluationScorer | None = None,
        pubsub: PubSubManager | None = None,
    ) -> None:
        """Initialize the evaluation service.

        Args:
            config: Configuration manager
            logger: Logger service
            store: Document store for ``evaluations`` and ``datasets``
            experiment_tracking: Tracking service used for linked runs
            registry: Registry receiving the computed metrics
            scorer: Scoring engine; defaults to a seeded SimulatedScorer
            pubsub: Optional event bus
        """
        self.config = config
        self.logger = logger
        self._store = store
        self._tracking = experiment_tracking
        self._registry = registry
        self._pubsub = pubsub
        self._source_module = self.__class__.__name__

        seed = config.get("evaluation.scorer_seed")
        self._scorer: EvaluationScorer = scorer or SimulatedScorer(
            int(seed) if seed is not None else None)
        self._require_dataset = config.get_bool(
            "evaluation.require_registered_dataset", default=False)

        self._evaluations: dict[str, Evaluation] = {}
        self._datasets: dict[str, Dataset] = {}
        self._loaded = False
        self._locks = KeyedLocks()
        self._write_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, asyncio.Future[None]] = {}

    async def initialize(self) -> None:
        """Load evaluations and datasets; mark interrupted evaluations failed."""
        if self._loaded:
            return
        evaluations = await self._store.load(self.EVALUATIONS_COLLECTION) or {}
        datasets = await self._store.load(self.DATASETS_COLLECTION) or {}
        self._evaluations = {k: Evaluation.from_dict(v) for k, v in evaluations.items()}
        self._datasets = {k: Dataset.from_dict(v) for k, v in datasets.items()}
        self._loaded = True

        for evaluation in list(self._evaluations.values()):
            if evaluation.status == EvaluationStatus.RUNNING:
                interrupted = copy.deepcopy(evaluation)
                interrupted.status = EvaluationStatus.FAILED
                interrupted.error = "interrupted"
                interrupted.completed_at = interrupted.updated_at = utc_now()
                await self._save_evaluation(interrupted)
                self.logger.warning(
                    f"Evaluation {evaluation.id} was running at shutdown; marked failed",
                    source_module=self._source_module,
                    context={"model_id": evaluation.model_id},
                )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _save_evaluation(self, evaluation: Evaluation | None, key: str | None = None) -> None:
        async with self._write_lock:
            snapshot = dict(self._evaluations)
            if evaluation is None:
                snapshot.pop(key or "", None)
            else:
                snapshot[evaluation.id] = evaluation
            await self._store.save(
                self.EVALUATIONS_COLLECTION, {k: v.to_dict() for k, v in snapshot.items()})
            self._evaluations = snapshot

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    def _copy(self, evaluation_id: str) -> Evaluation:
        evaluation = self._evaluations.get(evaluation_id)
        if evaluation is None:
            raise EvaluationNotFoundError(evaluation_id)
        return copy.deepcopy(evaluation)

    # --- Datasets ---

    async def register_dataset(self, dataset_id: str, metadata: dict[str, Any] | None = None) -> Dataset:
        """Register or replace dataset metadata."""
        await self._ensure_loaded()
        metadata = dict(metadata or {})
        dataset = Dataset(
            id=dataset_id,
            name=metadata.pop("name", dataset_id),
            type=metadata.pop("type", "tabular"),
            size=int(metadata.pop("size", 0)),
            features=list(metadata.pop("features", [])),
            metadata=metadata,
        )
        async with self._write_lock:
            snapshot = dict(self._datasets)
            snapshot[dataset_id] = dataset
            await self._store.save(
                self.DATASETS_COLLECTION, {k: v.to_dict() for k, v in snapshot.items()})
            self._datasets = snapshot
        self.logger.info(f"Registered dataset {dataset_id}", source_module=self._source_module)
        return copy.deepcopy(dataset)

    async def get_dataset(self, dataset_id: str) -> Dataset:
        """Return dataset metadata."""
        await self._ensure_loaded()
        dataset = self._datasets.get(dataset_id)
        if dataset is None:
            raise DatasetNotFoundError(dataset_id)
        return copy.deepcopy(dataset)

    # --- Evaluations ---

    async def create_evaluation(
        self,
        name: str,
        model_id: str,
        dataset_id: str,
        config: dict[str, Any] | None = None,
    ) -> Evaluation:
        """Create a pending evaluation.

        Args:
            name: Display name
            model_id: ``name@version`` of the model version under evaluation
            dataset_id: Dataset to evaluate against
            config: Optional ``type``, ``parameters``, ``tags``, ``experiment_id``,
                ``run_id``, ``notes`` and ``user_id``
        """
        await self._ensure_loaded()
        config = config or {}
        evaluation = Evaluation(
            id=f"eval-{uuid.uuid4().hex[:16]}",
            name=name,
            model_id=model_id,
            dataset_id=dataset_id,
            type=coerce_enum(EvaluationType, config.get("type", "classification"), "type"),
            parameters=dict(config.get("parameters", {})),
            tags=list(config.get("tags", [])),
            experiment_id=config.get("experiment_id"),
            run_id=config.get("run_id"),
            notes=config.get("notes"),
            user_id=config.get("user_id"),
        )
        await self._save_evaluation(evaluation)

        self.logger.info(
            f"Created evaluation {evaluation.id} for {model_id}",
            source_module=self._source_module,
            context={"dataset_id": dataset_id, "type": evaluation.type.value},
        )
        await self._publish(EvaluationCreatedEvent.create(
            self._source_module,
            evaluation_id=evaluation.id,
            model_id=model_id,
            dataset_id=dataset_id,
        ))
        return copy.deepcopy(evaluation)

    async def start_evaluation(self, evaluation_id: str) -> Evaluation:
        """Mark a pending evaluation running and score it in the background."""
        await self._ensure_loaded()
        async with self._locks.hold(evaluation_id):
            evaluation = self._copy(evaluation_id)
            if evaluation.status != EvaluationStatus.PENDING:
                raise InvalidStateError("Evaluation", evaluation_id, evaluation.status.value)
            evaluation.status = EvaluationStatus.RUNNING
            evaluation.started_at = evaluation.updated_at = utc_now()
            await self._save_evaluation(evaluation)

        self._waiter_for(evaluation_id)
        task = asyncio.create_task(self._run_evaluation(evaluation_id))
        self._tasks[evaluation_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(evaluation_id, None))

        await self._publish(EvaluationStartedEvent.create(
            self._source_module, evaluation_id=evaluation_id, model_id=evaluation.model_id))
        return copy.deepcopy(evaluation)

    def _waiter_for(self, evaluation_id: str) -> asyncio.Future[None]:
        waiter = self._waiters.get(evaluation_id)
        if waiter is None or waiter.done():
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[evaluation_id] = waiter
        return waiter

    def _resolve_waiter(self, evaluation_id: str) -> None:
        waiter = self._waiters.pop(evaluation_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _run_evaluation(self, evaluation_id: str) -> None:
        """Score an evaluation, then record the outcome on the evaluation, run and registry."""
        evaluation = self._copy(evaluation_id)
        owned_run_id: str | None = None
        try:
            dataset = self._datasets.get(evaluation.dataset_id)
            if dataset is None and self._require_dataset:
                raise DatasetNotFoundError(evaluation.dataset_id)

            if evaluation.experiment_id and not evaluation.run_id:
                run = await self._tracking.create_run(
                    evaluation.experiment_id,
                    f"Evaluation: {evaluation.name}",
                    {
                        "parameters": evaluation.parameters,
                        "tags": ["evaluation", evaluation.type.value],
                        "metadata": {
                            "evaluation_id": evaluation.id,
                            "model_id": evaluation.model_id,
                            "dataset_id": evaluation.dataset_id,
                        },
                    },
                )
                await self._tracking.start_run(run.id)
                owned_run_id = run.id
                evaluation.run_id = run.id

            metrics = await self._scorer.score(evaluation, dataset)

            evaluation.status = EvaluationStatus.COMPLETED
            evaluation.metrics = dict(metrics)
            evaluation.completed_at = evaluation.updated_at = utc_now()
            await self._save_evaluation(evaluation)
        except Exception as e:
            try:
                await self._record_failure(evaluation, owned_run_id, e)
            finally:
                self._resolve_waiter(evaluation_id)
            return

        # A completed evaluation is final; bookkeeping below only logs its failures
        try:
            await self._record_run_metrics(evaluation, owned_run_id)
            await self._propagate_metrics(evaluation)

            self.logger.info(
                f"Evaluation {evaluation_id} completed",
                source_module=self._source_module,
                context={"model_id": evaluation.model_id, "metrics": evaluation.metrics},
            )
            await self._publish(EvaluationCompletedEvent.create(
                self._source_module,
                evaluation_id=evaluation_id,
                model_id=evaluation.model_id,
                metrics=dict(evaluation.metrics),
            ))
        finally:
            self._resolve_waiter(evaluation_id)

    async def _record_run_metrics(self, evaluation: Evaluation, owned_run_id: str | None) -> None:
        try:
            if owned_run_id:
                await self._tracking.complete_run(owned_run_id, {"metrics": evaluation.metrics})
            elif evaluation.run_id:
                await self._tracking.log_metrics(evaluation.run_id, evaluation.metrics)
        except ModelOpsError as e:
            self.logger.warning(
                f"Could not record metrics of evaluation {evaluation.id} "
                f"on run {evaluation.run_id}: {e}",
                source_module=self._source_module,
            )

    async def _record_failure(
        self, evaluation: Evaluation, owned_run_id: str | None, error: Exception,
    ) -> None:
        self.logger.error(
            f"Evaluation {evaluation.id} failed: {error}",
            source_module=self._source_module,
            context={"model_id": evaluation.model_id, "dataset_id": evaluation.dataset_id},
            exc_info=error,
        )
        failed = copy.deepcopy(self._evaluations.get(evaluation.id, evaluation))
        failed.status = EvaluationStatus.FAILED
        failed.error = str(error)
        failed.run_id = evaluation.run_id
        failed.completed_at = failed.updated_at = utc_now()
        try:
            await self._save_evaluation(failed)
            if owned_run_id:
                await self._tracking.fail_run(owned_run_id, error)
        except ModelOpsError:
            self.logger.exception(
                f"Could not record failure of evaluation {evaluation.id}",
                source_module=self._source_module,
            )
        await self._publish(EvaluationFailedEvent.create(
            self._source_module,
            evaluation_id=evaluation.id,
            model_id=evaluation.model_id,
            error=str(error),
        ))

    async def _propagate_metrics(self, evaluation: Evaluation) -> None:
        name, version = parse_model_id(evaluation.model_id)
        if version is None:
            return
        try:
            await self._registry.add_model_version_metrics(name, version, evaluation.metrics)
        except ModelOpsError as e:
            self.logger.warning(
                f"Could not attach evaluation metrics to {evaluation.model_id}: {e}",
                source_module=self._source_module,
            )

    async def wait_for_evaluation(self, evaluation_id: str, timeout: float = 60.0) -> Evaluation:
        """Wait until an evaluation completes or fails and return it.

        Raises:
            EvaluationTimeoutError: If it is still unfinished after ``timeout`` seconds
        """
        await self._ensure_loaded()
        evaluation = self._copy(evaluation_id)
        if evaluation.is_terminal:
            return evaluation

        waiter = self._waiter_for(evaluation_id)
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
        except TimeoutError as e:
            raise EvaluationTimeoutError(evaluation_id, timeout) from e
        return self._copy(evaluation_id)

    async def get_evaluation(self, evaluation_id: str) -> Evaluation:
        """Return an evaluation."""
        await self._ensure_loaded()
        return self._copy(evaluation_id)

    async def get_evaluations(self, filters: dict[str, Any] | None = None) -> list[Evaluation]:
        """Return evaluations newest first, filtered by ``model_id``, ``dataset_id``,
        ``status`` or ``type``.
        """
        await self._ensure_loaded()
        filters = filters or {}
        status = filters.get("status")
        if status is not None:
            status = coerce_enum(EvaluationStatus, status, "status")
        kind = filters.get("type")
        if kind is not None:
            kind = coerce_enum(EvaluationType, kind, "type")

        result = [
            copy.deepcopy(e) for e in self._evaluations.values()
            if (not filters.get("model_id") or e.model_id == filters["model_id"])
            and (not filters.get("dataset_id") or e.dataset_id == filters["dataset_id"])
            and (status is None or e.status == status)
            and (kind is None or e.type == kind)
        ]
        result.sort(key=lambda e: e.created_at, reverse=True)
        return result

    async def delete_evaluation(self, evaluation_id: str) -> None:
        """Delete an evaluation that is not running."""
        await self._ensure_loaded()
        async with self._locks.hold(evaluation_id):
            evaluation = self._copy(evaluation_id)
            if evaluation.status == EvaluationStatus.RUNNING:
                raise InvalidStateError("Evaluation", evaluation_id, evaluation.status.value)
            await self._save_evaluation(None, key=evaluation_id)
        self._locks.discard(evaluation_id)
        await self._publish(EvaluationDeletedEvent.create(
            self._source_module, evaluation_id=evaluation_id))

    async def compare_evaluations(self, evaluation_ids: list[str]) -> EvaluationComparison:
        """Line up the metrics of completed evaluations."""
        await self._ensure_loaded()
        evaluations = [self._copy(evaluation_id) for evaluation_id in evaluation_ids]
        for evaluation in evaluations:
            if evaluation.status != EvaluationStatus.COMPLETED:
                raise InvalidStateError("Evaluation", evaluation.id, evaluation.status.value)
        metrics: dict[str, list[tuple[str, Any]]] = {}
        for evaluation in evaluations:
            for key, value in evaluation.metrics.items():
                metrics.setdefault(key, []).append((evaluation.id, value))
        return EvaluationComparison(evaluations=evaluations, metrics=metrics)

    async def get_best_evaluation(
        self, model_id: str, metric: str, *, higher_is_better: bool = True,
    ) -> Evaluation:
        """Return the completed evaluation of ``model_id`` with the best ``metric``."""
        candidates = [
            e for e in await self.get_evaluations(
                {"model_id": model_id, "status": EvaluationStatus.COMPLETED})
            if isinstance(e.metrics.get(metric), (int, float))
        ]
        if not candidates:
            raise EvaluationNotFoundError(
                model_id,
                f"No completed evaluations of {model_id} with metric '{metric}'")
        chooser = max if higher_is_better else min
        return chooser(candidates, key=lambda e: e.metrics[metric])

    async def stop(self) -> None:
        """Wait for in-flight evaluations to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
