"""Staged promotion pipelines for model versions.

A pipeline runs its stages strictly in order: validation and testing evaluate the
version against a dataset and check the metrics against thresholds; staging and
production flip the registry status. The first stage that does not succeed halts
the pipeline.
"""

from __future__ import annotations

import asyncio
import copy
import operator
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any

from modelops.core.events import (
    Event,
    PipelineCompletedEvent,
    PipelineCreatedEvent,
    PipelineDeletedEvent,
    PipelineFailedEvent,
    PipelineStageCompletedEvent,
    PipelineStageFailedEvent,
    PipelineStageStartedEvent,
    PipelineStartedEvent,
)
from modelops.core.locks import KeyedLocks
from modelops.exceptions import (
    EvaluationFailedError,
    InvalidPipelineConfigError,
    InvalidStateError,
    ModelOpsError,
    PipelineNotFoundError,
    PipelineTimeoutError,
)
from modelops.utils.time_utils import from_iso, to_iso, utc_now

from .enums import (
    EvaluationStatus,
    EvaluationType,
    ModelStage,
    ModelStatus,
    PipelineStage,
    PipelineStatus,
)
from .registry import coerce_enum, is_valid_stage_transition

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService

    from .evaluation import ModelEvaluationService
    from .experiment_tracking import ExperimentTrackingService
    from .registry import ModelRegistry, ModelVersion


OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}

STAGE_ORDER: list[PipelineStage] = list(PipelineStage)

_EVALUATED_STAGES: dict[PipelineStage, ModelStage] = {
    PipelineStage.VALIDATION: ModelStage.VALIDATION,
    PipelineStage.TESTING: ModelStage.TESTING,
}

_PROMOTION_STAGES: dict[PipelineStage, tuple[ModelStatus, ModelStage]] = {
    PipelineStage.STAGING: (ModelStatus.STAGING, ModelStage.DEPLOYMENT),
    PipelineStage.PRODUCTION: (ModelStatus.PRODUCTION, ModelStage.MONITORING),
}


def check_thresholds(
    metrics: dict[str, Any], thresholds: dict[str, dict[str, Any]],
) -> list[dict[str, Any]]:
    """Return the thresholds ``metrics`` violate; metrics absent from the result are skipped."""
    failed = []
    for metric, rule in thresholds.items():
        if metric not in metrics:
            continue
        compare = OPERATORS[rule["operator"]]
        if not compare(metrics[metric], rule["value"]):
            failed.append({
                "metric": metric,
                "value": metrics[metric],
                "operator": rule["operator"],
                "threshold": rule["value"],
            })
    return failed


@dataclass
class Pipeline:
    """A promotion pipeline for one model version."""

    id: str
    name: str
    model_name: str
    model_version: str
    stages: list[PipelineStage]
    status: PipelineStatus = PipelineStatus.PENDING
    current_stage: PipelineStage | None = None
    stage_results: dict[str, dict[str, Any]] = field(default_factory=dict)
    thresholds: dict[str, dict[str, dict[str, Any]]] = field(default_factory=dict)
    evaluation_datasets: dict[str, str] = field(default_factory=dict)
    evaluation_type: EvaluationType = EvaluationType.CLASSIFICATION
    promotion_policy: str = "automatic"
    tags: list[str] = field(default_factory=list)
    experiment_id: str | None = None
    run_id: str | None = None
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    @property
    def model_id(self) -> str:
        """The ``name@version`` identifier of the promoted version."""
        return f"{self.model_name}@{self.model_version}"

    @property
    def is_terminal(self) -> bool:
        """Whether the pipeline has completed or failed."""
        return self.status in (PipelineStatus.COMPLETED, PipelineStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "model_name": self.model_name,
            "model_version": self.model_version,
            "model_id": self.model_id,
            "stages": [s.value for s in self.stages],
            "status": self.status.value,
            "current_stage": self.current_stage.value if self.current_stage else None,
            "stage_results": self.stage_results,
            "thresholds": self.thresholds,
            "evaluation_datasets": self.evaluation_datasets,
            "evaluation_type": self.evaluation_type.value,
            "promotion_policy": self.promotion_policy,
            "tags": self.tags,
            "experiment_id": self.experiment_id,
            "run_id": self.run_id,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Pipeline:
        """Create a pipeline from its stored form."""
        data = dict(data)
        data.pop("model_id", None)
        data["stages"] = [PipelineStage(s) for s in data.get("stages", [])]
        data["status"] = PipelineStatus(data.get("status", "pending"))
        current = data.get("current_stage")
        data["current_stage"] = PipelineStage(current) if current else None
        data["evaluation_type"] = EvaluationType(data.get("evaluation_type", "classification"))
        for date_field in ("created_at", "updated_at"):
            data[date_field] = from_iso(data.get(date_field)) or utc_now()
        for date_field in ("started_at", "completed_at"):
            data[date_field] = from_iso(data.get(date_field))
        return cls(**data)


class ModelCICDService:
    """Create and execute promotion pipelines."""

    COLLECTION = "pipelines"

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        registry: ModelRegistry,
        experiment_tracking: ExperimentTrackingService,
        evaluation: ModelEvaluationService,
        pubsub: PubSubManager | None = None,
    ) -> None:
        """Initialize the CI/CD service.

        Args:
            config: Configuration manager
            logger: Logger service
            store: Document store for the ``pipelines`` collection
            registry: Registry the promotions are written to
            experiment_tracking: Tracking service for the pipeline's run
            evaluation: Evaluation service used by the validation and testing stages
            pubsub: Optional event bus
        """
        self.config = config
        self.logger = logger
        self._store = store
        self._registry = registry
        self._tracking = experiment_tracking
        self._evaluation = evaluation
        self._pubsub = pubsub
        self._source_module = self.__class__.__name__

        self._evaluation_timeout_s = config.get_float("cicd.evaluation_timeout_seconds", 60.0)
        self._default_stages = config.get_list(
            "cicd.default_stages", [s.value for s in STAGE_ORDER])

        self._pipelines: dict[str, Pipeline] = {}
        self._loaded = False
        self._locks = KeyedLocks()
        self._write_lock = asyncio.Lock()
        self._tasks: dict[str, asyncio.Task] = {}
        self._waiters: dict[str, asyncio.Future[None]] = {}

    async def initialize(self) -> None:
        """Load pipelines; mark pipelines interrupted by a shutdown as failed."""
        if self._loaded:
            return
        document = await self._store.load(self.COLLECTION) or {}
        self._pipelines = {k: Pipeline.from_dict(v) for k, v in document.items()}
        self._loaded = True

        for pipeline in list(self._pipelines.values()):
            if pipeline.status == PipelineStatus.RUNNING:
                interrupted = copy.deepcopy(pipeline)
                interrupted.status = PipelineStatus.FAILED
                interrupted.error = "interrupted"
                interrupted.completed_at = interrupted.updated_at = utc_now()
                await self._save(interrupted)
                self.logger.warning(
                    f"Pipeline {pipeline.id} was running at shutdown; marked failed",
                    source_module=self._source_module,
                    context={"model_id": pipeline.model_id},
                )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _save(self, pipeline: Pipeline | None, key: str | None = None) -> None:
        async with self._write_lock:
            snapshot = dict(self._pipelines)
            if pipeline is None:
                snapshot.pop(key or "", None)
            else:
                pipeline.updated_at = utc_now()
                snapshot[pipeline.id] = pipeline
            await self._store.save(self.COLLECTION, {k: v.to_dict() for k, v in snapshot.items()})
            self._pipelines = snapshot

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    def _copy(self, pipeline_id: str) -> Pipeline:
        pipeline = self._pipelines.get(pipeline_id)
        if pipeline is None:
            raise PipelineNotFoundError(pipeline_id)
        return copy.deepcopy(pipeline)

    # --- Definition ---

    @staticmethod
    def _parse_stages(raw: list[Any]) -> list[PipelineStage]:
        if not raw:
            raise InvalidPipelineConfigError("stages", raw, message="A pipeline needs at least one stage")
        allowed = [s.value for s in STAGE_ORDER]
        stages = []
        for value in raw:
            try:
                stages.append(PipelineStage(value.value if isinstance(value, PipelineStage) else value))
            except ValueError:
                raise InvalidPipelineConfigError("stages", value, allowed) from None
        positions = [STAGE_ORDER.index(s) for s in stages]
        if any(later <= earlier for earlier, later in zip(positions, positions[1:], strict=False)):
            raise InvalidPipelineConfigError(
                "stages", [s.value for s in stages],
                message=f"Stages must be unique and follow the order {' -> '.join(allowed)}")
        return stages

    @staticmethod
    def _parse_thresholds(raw: dict[str, Any]) -> dict[str, dict[str, dict[str, Any]]]:
        allowed = [s.value for s in STAGE_ORDER]
        thresholds: dict[str, dict[str, dict[str, Any]]] = {}
        for stage, rules in (raw or {}).items():
            if stage not in allowed:
                raise InvalidPipelineConfigError("thresholds", stage, allowed)
            if not isinstance(rules, dict):
                raise InvalidPipelineConfigError(
                    f"thresholds.{stage}", rules, message="Stage thresholds must be a mapping")
            parsed: dict[str, dict[str, Any]] = {}
            for metric, rule in rules.items():
                # A bare number means ">="
                condition = rule if isinstance(rule, dict) else {"operator": ">=", "value": rule}
                op = condition.get("operator", ">=")
                if op not in OPERATORS:
                    raise InvalidPipelineConfigError(
                        f"thresholds.{stage}.{metric}.operator", op, list(OPERATORS))
                if "value" not in condition:
                    raise InvalidPipelineConfigError(
                        f"thresholds.{stage}.{metric}", condition, message="Threshold has no value")
                parsed[metric] = {"operator": op, "value": condition["value"]}
            thresholds[stage] = parsed
        return thresholds

    async def create_pipeline(
        self,
        name: str,
        model_name: str,
        model_version: str,
        config: dict[str, Any] | None = None,
    ) -> Pipeline:
        """Define a pending pipeline for a registered model version.

        Args:
            name: Display name
            model_name: Registered model name
            model_version: Version label, e.g. ``v3``
            config: Optional ``stages``, ``thresholds``, ``evaluation_datasets``,
                ``evaluation_type``, ``experiment_id``, ``promotion_policy`` and ``tags``

        Raises:
            InvalidPipelineConfigError: For unknown or out-of-order stages and unknown
                threshold operators
        """
        await self._ensure_loaded()
        config = config or {}
        await self._registry.get_model_version(model_name, model_version)

        stages = self._parse_stages(list(config.get("stages") or self._default_stages))
        datasets = dict(config.get("evaluation_datasets", {}))
        unknown = [s for s in datasets if s not in {st.value for st in STAGE_ORDER}]
        if unknown:
            raise InvalidPipelineConfigError(
                "evaluation_datasets", unknown, [s.value for s in STAGE_ORDER])
        if config.get("experiment_id"):
            await self._tracking.get_experiment(config["experiment_id"])

        pipeline = Pipeline(
            id=f"pipeline-{uuid.uuid4().hex[:16]}",
            name=name,
            model_name=model_name,
            model_version=model_version,
            stages=stages,
            thresholds=self._parse_thresholds(config.get("thresholds", {})),
            evaluation_datasets=datasets,
            evaluation_type=coerce_enum(
                EvaluationType, config.get("evaluation_type", "classification"), "evaluation_type"),
            promotion_policy=str(config.get("promotion_policy", "automatic")),
            tags=list(config.get("tags", [])),
            experiment_id=config.get("experiment_id"),
        )
        await self._save(pipeline)

        self.logger.info(
            f"Created pipeline {pipeline.id} for {pipeline.model_id}",
            source_module=self._source_module,
            context={"stages": [s.value for s in stages]},
        )
        await self._publish(PipelineCreatedEvent.create(
            self._source_module, pipeline_id=pipeline.id, model_id=pipeline.model_id))
        return copy.deepcopy(pipeline)

    # --- Execution ---

    async def start_pipeline(self, pipeline_id: str) -> Pipeline:
        """Mark a pending pipeline running and execute its stages in the background."""
        await self._ensure_loaded()
        async with self._locks.hold(pipeline_id):
            pipeline = self._copy(pipeline_id)
            if pipeline.status != PipelineStatus.PENDING:
                raise InvalidStateError("Pipeline", pipeline_id, pipeline.status.value)

            if pipeline.experiment_id:
                run = await self._tracking.create_run(
                    pipeline.experiment_id,
                    f"Pipeline: {pipeline.name}",
                    {
                        "parameters": {
                            "model_id": pipeline.model_id,
                            "stages": [s.value for s in pipeline.stages],
                        },
                        "tags": ["pipeline", *pipeline.tags],
                        "metadata": {"pipeline_id": pipeline.id},
                    },
                )
                await self._tracking.start_run(run.id)
                pipeline.run_id = run.id

            pipeline.status = PipelineStatus.RUNNING
            pipeline.started_at = utc_now()
            await self._save(pipeline)

        self._waiter_for(pipeline_id)
        task = asyncio.create_task(self._run_pipeline(pipeline_id))
        self._tasks[pipeline_id] = task
        task.add_done_callback(lambda _: self._tasks.pop(pipeline_id, None))

        self.logger.info(
            f"Started pipeline {pipeline_id}",
            source_module=self._source_module,
            context={"model_id": pipeline.model_id},
        )
        await self._publish(PipelineStartedEvent.create(
            self._source_module, pipeline_id=pipeline_id, model_id=pipeline.model_id))
        return copy.deepcopy(pipeline)

    def _waiter_for(self, pipeline_id: str) -> asyncio.Future[None]:
        waiter = self._waiters.get(pipeline_id)
        if waiter is None or waiter.done():
            waiter = asyncio.get_running_loop().create_future()
            self._waiters[pipeline_id] = waiter
        return waiter

    def _resolve_waiter(self, pipeline_id: str) -> None:
        waiter = self._waiters.pop(pipeline_id, None)
        if waiter is not None and not waiter.done():
            waiter.set_result(None)

    async def _run_pipeline(self, pipeline_id: str) -> None:
        pipeline = self._copy(pipeline_id)
        failed_stage: PipelineStage | None = None
        try:
            for stage in pipeline.stages:
                pipeline.current_stage = stage
                await self._save(pipeline)
                await self._publish(PipelineStageStartedEvent.create(
                    self._source_module,
                    pipeline_id=pipeline_id, model_id=pipeline.model_id, stage=stage.value))

                try:
                    result = await self._execute_stage(pipeline, stage)
                except Exception as e:
                    self.logger.error(
                        f"Stage {stage.value} of pipeline {pipeline_id} raised: {e}",
                        source_module=self._source_module,
                        context={"model_id": pipeline.model_id, "stage": stage.value, "error": str(e)},
                        exc_info=e,
                    )
                    result = {"success": False, "error": str(e)}
                    pipeline.error = str(e)

                pipeline.stage_results[stage.value] = result
                await self._save(pipeline)
                await self._log_stage_to_run(pipeline, stage, result)

                event_cls = (PipelineStageCompletedEvent if result["success"]
                             else PipelineStageFailedEvent)
                await self._publish(event_cls.create(
                    self._source_module,
                    pipeline_id=pipeline_id,
                    model_id=pipeline.model_id,
                    stage=stage.value,
                    result=copy.deepcopy(result),
                ))
                if not result["success"]:
                    failed_stage = stage
                    break

            await self._finish(pipeline, failed_stage)
        except Exception as e:
            self.logger.exception(
                f"Pipeline {pipeline_id} aborted",
                source_module=self._source_module,
                context={"model_id": pipeline.model_id, "error": str(e)},
            )
            pipeline.error = pipeline.error or str(e)
            await self._finish(pipeline, pipeline.current_stage, persist_errors=False)
        finally:
            self._resolve_waiter(pipeline_id)

    async def _finish(
        self,
        pipeline: Pipeline,
        failed_stage: PipelineStage | None,
        *,
        persist_errors: bool = True,
    ) -> None:
        succeeded = failed_stage is None and all(
            pipeline.stage_results.get(s.value, {}).get("success") for s in pipeline.stages)
        pipeline.status = PipelineStatus.COMPLETED if succeeded else PipelineStatus.FAILED
        pipeline.completed_at = utc_now()
        try:
            await self._save(pipeline)
            if pipeline.run_id:
                if succeeded:
                    await self._tracking.complete_run(
                        pipeline.run_id, {"metadata": {"pipeline_status": pipeline.status.value}})
                else:
                    await self._tracking.fail_run(
                        pipeline.run_id,
                        pipeline.error or f"stage {failed_stage.value if failed_stage else '?'} failed")
        except ModelOpsError:
            if persist_errors:
                raise
            self.logger.exception(
                f"Could not record the outcome of pipeline {pipeline.id}",
                source_module=self._source_module,
            )

        if succeeded:
            self.logger.info(
                f"Pipeline {pipeline.id} completed; {pipeline.model_id} promoted",
                source_module=self._source_module,
            )
            await self._publish(PipelineCompletedEvent.create(
                self._source_module, pipeline_id=pipeline.id, model_id=pipeline.model_id))
        else:
            self.logger.warning(
                f"Pipeline {pipeline.id} failed",
                source_module=self._source_module,
                context={
                    "model_id": pipeline.model_id,
                    "stage": failed_stage.value if failed_stage else None,
                    "error": pipeline.error,
                },
            )
            await self._publish(PipelineFailedEvent.create(
                self._source_module,
                pipeline_id=pipeline.id,
                model_id=pipeline.model_id,
                failed_stage=failed_stage.value if failed_stage else None,
                error=pipeline.error,
            ))

    async def _execute_stage(self, pipeline: Pipeline, stage: PipelineStage) -> dict[str, Any]:
        if stage in _EVALUATED_STAGES:
            return await self._evaluate_stage(pipeline, stage)
        status, model_stage = _PROMOTION_STAGES[stage]
        await self._require_active(pipeline)
        await self._registry.update_model_version_status(
            pipeline.model_name, pipeline.model_version, status)
        await self._advance_stage(pipeline, model_stage)
        return {"success": True, "status": status.value, "stage": model_stage.value}

    async def _evaluate_stage(self, pipeline: Pipeline, stage: PipelineStage) -> dict[str, Any]:
        dataset_id = pipeline.evaluation_datasets.get(stage.value)
        if not dataset_id:
            raise InvalidPipelineConfigError(
                "evaluation_datasets", stage.value,
                message=f"No evaluation dataset configured for stage '{stage.value}'")

        evaluation = await self._evaluation.create_evaluation(
            f"{pipeline.name} - {stage.value}",
            pipeline.model_id,
            dataset_id,
            {
                "type": pipeline.evaluation_type,
                "tags": ["pipeline", stage.value],
                "parameters": {"pipeline_id": pipeline.id, "stage": stage.value},
            },
        )
        await self._evaluation.start_evaluation(evaluation.id)
        evaluation = await self._evaluation.wait_for_evaluation(
            evaluation.id, self._evaluation_timeout_s)
        if evaluation.status == EvaluationStatus.FAILED:
            raise EvaluationFailedError(evaluation.id, evaluation.error)

        metrics = dict(evaluation.metrics)
        failed_metrics = check_thresholds(metrics, pipeline.thresholds.get(stage.value, {}))
        if failed_metrics:
            self.logger.info(
                f"Stage {stage.value} of pipeline {pipeline.id} did not meet its thresholds",
                source_module=self._source_module,
                context={"model_id": pipeline.model_id, "failed_metrics": failed_metrics},
            )
            return {
                "success": False,
                "evaluation_id": evaluation.id,
                "metrics": metrics,
                "failed_metrics": failed_metrics,
            }

        await self._advance_stage(pipeline, _EVALUATED_STAGES[stage])
        return {"success": True, "evaluation_id": evaluation.id, "metrics": metrics}

    async def _require_active(self, pipeline: Pipeline) -> ModelVersion:
        version = await self._registry.get_model_version(
            pipeline.model_name, pipeline.model_version)
        if version.stage == ModelStage.RETIRED:
            raise InvalidStateError("Model version", pipeline.model_id, version.stage.value)
        return version

    async def _advance_stage(self, pipeline: Pipeline, target: ModelStage) -> None:
        """Move the version forward to ``target``; versions already past it stay put."""
        version = await self._require_active(pipeline)
        if version.stage != target and is_valid_stage_transition(version.stage, target):
            await self._registry.update_model_version_stage(
                pipeline.model_name, pipeline.model_version, target)

    async def _log_stage_to_run(
        self, pipeline: Pipeline, stage: PipelineStage, result: dict[str, Any],
    ) -> None:
        if not pipeline.run_id:
            return
        metrics: dict[str, Any] = {f"{stage.value}_success": 1.0 if result["success"] else 0.0}
        for key, value in result.get("metrics", {}).items():
            if isinstance(value, (int, float)):
                metrics[f"{stage.value}_{key}"] = value
        try:
            await self._tracking.log_metrics(pipeline.run_id, metrics)
        except ModelOpsError as e:
            self.logger.warning(
                f"Could not log stage {stage.value} to run {pipeline.run_id}: {e}",
                source_module=self._source_module,
            )

    async def wait_for_pipeline(self, pipeline_id: str, timeout: float = 300.0) -> Pipeline:
        """Wait until a pipeline completes or fails and return it.

        Raises:
            PipelineTimeoutError: If it is still unfinished after ``timeout`` seconds
        """
        await self._ensure_loaded()
        pipeline = self._copy(pipeline_id)
        if pipeline.is_terminal:
            return pipeline
        waiter = self._waiter_for(pipeline_id)
        try:
            await asyncio.wait_for(asyncio.shield(waiter), timeout=timeout)
        except TimeoutError as e:
            raise PipelineTimeoutError(pipeline_id, timeout) from e
        return self._copy(pipeline_id)

    # --- Queries ---

    async def get_pipeline(self, pipeline_id: str) -> Pipeline:
        """Return a pipeline."""
        await self._ensure_loaded()
        return self._copy(pipeline_id)

    async def get_pipelines(self, filters: dict[str, Any] | None = None) -> list[Pipeline]:
        """Return pipelines newest first.

        Filters: ``status``, ``model_name``, ``model_version`` and ``tags`` (any-match).
        """
        await self._ensure_loaded()
        filters = filters or {}
        status = filters.get("status")
        if status is not None:
            status = coerce_enum(PipelineStatus, status, "status")
        tags = set(filters.get("tags") or [])

        result = [
            copy.deepcopy(p) for p in self._pipelines.values()
            if (status is None or p.status == status)
            and (not filters.get("model_name") or p.model_name == filters["model_name"])
            and (not filters.get("model_version") or p.model_version == filters["model_version"])
            and (not tags or tags.intersection(p.tags))
        ]
        result.sort(key=lambda p: p.created_at, reverse=True)
        return result

    async def delete_pipeline(self, pipeline_id: str) -> None:
        """Delete a pipeline that is not running."""
        await self._ensure_loaded()
        async with self._locks.hold(pipeline_id):
            pipeline = self._copy(pipeline_id)
            if pipeline.status == PipelineStatus.RUNNING:
                raise InvalidStateError("Pipeline", pipeline_id, pipeline.status.value)
            await self._save(None, key=pipeline_id)
        self._locks.discard(pipeline_id)
        self.logger.info(f"Deleted pipeline {pipeline_id}", source_module=self._source_module)
        await self._publish(PipelineDeletedEvent.create(
            self._source_module, pipeline_id=pipeline_id, model_id=pipeline.model_id))

    async def stop(self) -> None:
        """Wait for running pipelines to finish."""
        if self._tasks:
            await asyncio.gather(*self._tasks.values(), return_exceptions=True)
