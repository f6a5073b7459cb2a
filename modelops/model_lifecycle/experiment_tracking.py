"""Experiment and run tracking ledger."""

from __future__ import annotations

import asyncio
import copy
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any

from modelops.core.events import (
    Event,
    ExperimentCreatedEvent,
    ExperimentDeletedEvent,
    ExperimentUpdatedEvent,
    RunCompletedEvent,
    RunCreatedEvent,
    RunFailedEvent,
    RunStartedEvent,
)
from modelops.core.locks import KeyedLocks
from modelops.exceptions import (
    ExperimentNotFoundError,
    InvalidParameterError,
    InvalidStateError,
    NoMatchingRunError,
    RunNotFoundError,
    StorageError,
)
from modelops.utils.files import copy_with_digest
from modelops.utils.time_utils import from_iso, to_iso, utc_now

from .enums import ExperimentStatus, RunStatus
from .registry import coerce_enum

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService


@dataclass
class Experiment:
    """A named group of runs."""

    id: str
    name: str
    description: str = ""
    status: ExperimentStatus = ExperimentStatus.CREATED
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    runs: list[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "status": self.status.value,
            "tags": self.tags,
            "metadata": self.metadata,
            "runs": self.runs,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Experiment:
        """Create an experiment from its stored form."""
        data = dict(data)
        data["status"] = ExperimentStatus(data.get("status", "created"))
        for date_field in ("created_at", "updated_at"):
            data[date_field] = from_iso(data.get(date_field)) or utc_now()
        return cls(**data)


@dataclass
class Run:
    """A single execution recorded inside an experiment."""

    id: str
    experiment_id: str
    name: str
    status: RunStatus = RunStatus.CREATED
    parameters: dict[str, Any] = field(default_factory=dict)
    metrics: dict[str, Any] = field(default_factory=dict)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    environment_id: str | None = None
    user_id: str | None = None
    notes: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "name": self.name,
            "status": self.status.value,
            "parameters": self.parameters,
            "metrics": self.metrics,
            "artifacts": self.artifacts,
            "tags": self.tags,
            "metadata": self.metadata,
            "environment_id": self.environment_id,
            "user_id": self.user_id,
            "notes": self.notes,
            "created_at": self.created_at.isoformat(),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Run:
        """Create a run from its stored form."""
        data = dict(data)
        data["status"] = RunStatus(data.get("status", "created"))
        data["created_at"] = from_iso(data.get("created_at")) or utc_now()
        data["started_at"] = from_iso(data.get("started_at"))
        data["completed_at"] = from_iso(data.get("completed_at"))
        return cls(**data)


@dataclass
class RunComparison:
    """Metrics and parameters of several runs lined up side by side."""

    runs: list[Run]
    metrics: dict[str, list[tuple[str, Any]]]
    parameters: dict[str, list[tuple[str, Any]]]


class ExperimentTrackingService:
    """Record experiments, runs, metrics and artifacts.

    Experiments and runs live in two collections (``experiments`` and ``runs``).
    Mutations of one experiment and its runs are serialized on the experiment id.
    """

    EXPERIMENTS_COLLECTION = "experiments"
    RUNS_COLLECTION = "runs"

    _RUN_TRANSITIONS: dict[RunStatus, set[RunStatus]] = {
        RunStatus.RUNNING: {RunStatus.CREATED},
        RunStatus.COMPLETED: {RunStatus.CREATED, RunStatus.RUNNING},
        RunStatus.FAILED: {RunStatus.CREATED, RunStatus.RUNNING},
    }
    _LOGGABLE_RUN_STATES = {RunStatus.RUNNING, RunStatus.COMPLETED}

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        pubsub: PubSubManager | None = None,
    ) -> None:
        """Initialize the experiment tracking service."""
        self.config = config
        self.logger = logger
        self._store = store
        self._pubsub = pubsub
        self._source_module = self.__class__.__name__
        self._artifacts_path = Path(config.get("experiments.artifacts_path", "data/artifacts"))

        self._experiments: dict[str, Experiment] = {}
        self._runs: dict[str, Run] = {}
        self._loaded = False
        self._locks = KeyedLocks()
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load experiments and runs from the store."""
        if self._loaded:
            return
        experiments = await self._store.load(self.EXPERIMENTS_COLLECTION) or {}
        runs = await self._store.load(self.RUNS_COLLECTION) or {}
        self._experiments = {k: Experiment.from_dict(v) for k, v in experiments.items()}
        self._runs = {k: Run.from_dict(v) for k, v in runs.items()}
        self._loaded = True
        self.logger.info(
            f"Loaded {len(self._experiments)} experiments and {len(self._runs)} runs",
            source_module=self._source_module,
        )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _commit(
        self,
        experiments: dict[str, Experiment | None] | None = None,
        runs: dict[str, Run | None] | None = None,
    ) -> None:
        """Persist changed entities; a None value deletes the key.

        In-memory maps are updated only after both collections were written.
        """
        async with self._write_lock:
            new_experiments = dict(self._experiments)
            new_runs = dict(self._runs)
            for key, experiment in (experiments or {}).items():
                if experiment is None:
                    new_experiments.pop(key, None)
                else:
                    new_experiments[key] = experiment
            for key, run in (runs or {}).items():
                if run is None:
                    new_runs.pop(key, None)
                else:
                    new_runs[key] = run

            if experiments:
                await self._store.save(
                    self.EXPERIMENTS_COLLECTION,
                    {k: v.to_dict() for k, v in new_experiments.items()},
                )
            if runs:
                await self._store.save(
                    self.RUNS_COLLECTION, {k: v.to_dict() for k, v in new_runs.items()},
                )
            self._experiments = new_experiments
            self._runs = new_runs

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    def _experiment_copy(self, experiment_id: str) -> Experiment:
        experiment = self._experiments.get(experiment_id)
        if experiment is None:
            raise ExperimentNotFoundError(experiment_id)
        return copy.deepcopy(experiment)

    def _run_copy(self, run_id: str) -> Run:
        run = self._runs.get(run_id)
        if run is None:
            raise RunNotFoundError(run_id)
        return copy.deepcopy(run)

    # --- Experiments ---

    async def create_experiment(
        self, name: str, metadata: dict[str, Any] | None = None,
    ) -> Experiment:
        """Create an experiment.

        Args:
            name: Display name
            metadata: Optional ``description``, ``tags`` and free-form ``metadata``
        """
        await self._ensure_loaded()
        metadata = metadata or {}
        experiment = Experiment(
            id=f"exp-{uuid.uuid4().hex[:16]}",
            name=name,
            description=metadata.get("description", ""),
            tags=list(metadata.get("tags", [])),
            metadata=dict(metadata.get("metadata", {})),
        )
        await self._commit(experiments={experiment.id: experiment})

        self.logger.info(
            f"Created experiment {experiment.id} ({name})",
            source_module=self._source_module,
            context={"tags": experiment.tags},
        )
        await self._publish(ExperimentCreatedEvent.create(
            self._source_module, experiment_id=experiment.id, name=name))
        return copy.deepcopy(experiment)

    async def get_experiment(self, experiment_id: str) -> Experiment:
        """Return an experiment."""
        await self._ensure_loaded()
        return self._experiment_copy(experiment_id)

    async def get_experiments(self, filters: dict[str, Any] | None = None) -> list[Experiment]:
        """Return experiments, newest first.

        Supported filters: ``status``, ``tags`` (any-match) and ``name`` (substring,
        case-insensitive).
        """
        await self._ensure_loaded()
        filters = filters or {}
        status = filters.get("status")
        if status is not None:
            status = coerce_enum(ExperimentStatus, status, "status")
        tags = set(filters.get("tags") or [])
        name = (filters.get("name") or "").lower()

        result = [
            copy.deepcopy(e) for e in self._experiments.values()
            if (status is None or e.status == status)
            and (not tags or tags & set(e.tags))
            and (not name or name in e.name.lower())
        ]
        result.sort(key=lambda e: e.created_at, reverse=True)
        return result

    async def update_experiment(self, experiment_id: str, updates: dict[str, Any]) -> Experiment:
        """Update name, description, status, tags or merge metadata."""
        await self._ensure_loaded()
        allowed = {"name", "description", "status", "tags", "metadata"}
        unknown = set(updates) - allowed
        if unknown:
            raise InvalidParameterError(
                "updates", sorted(unknown), sorted(allowed),
                message=f"Unsupported experiment fields: {sorted(unknown)}")

        async with self._locks.hold(experiment_id):
            experiment = self._experiment_copy(experiment_id)
            if "name" in updates:
                experiment.name = str(updates["name"])
            if "description" in updates:
                experiment.description = str(updates["description"])
            if "status" in updates:
                experiment.status = coerce_enum(ExperimentStatus, updates["status"], "status")
            if "tags" in updates:
                experiment.tags = list(updates["tags"])
            if "metadata" in updates:
                experiment.metadata.update(updates["metadata"])
            experiment.updated_at = utc_now()
            await self._commit(experiments={experiment_id: experiment})

        await self._publish(ExperimentUpdatedEvent.create(
            self._source_module, experiment_id=experiment_id, changes=dict(updates)))
        return copy.deepcopy(experiment)

    async def delete_experiment(self, experiment_id: str) -> None:
        """Delete an experiment together with all of its runs."""
        await self._ensure_loaded()
        async with self._locks.hold(experiment_id):
            experiment = self._experiment_copy(experiment_id)
            run_ids = [r.id for r in self._runs.values() if r.experiment_id == experiment_id]
            try:
                await self._commit(
                    experiments={experiment_id: None},
                    runs=dict.fromkeys(run_ids),
                )
            except StorageError:
                self.logger.exception(
                    f"Failed to delete experiment {experiment_id}",
                    source_module=self._source_module,
                )
                raise
        self._locks.discard(experiment_id)

        self.logger.info(
            f"Deleted experiment {experiment_id} ({experiment.name}) and {len(run_ids)} runs",
            source_module=self._source_module,
        )
        await self._publish(ExperimentDeletedEvent.create(
            self._source_module, experiment_id=experiment_id, run_ids=tuple(run_ids)))

    async def link_environment(self, experiment_id: str, environment_id: str) -> Experiment:
        """Attach a training environment id to an experiment's metadata."""
        return await self.update_experiment(
            experiment_id, {"metadata": {"environment_id": environment_id}})

    # --- Runs ---

    async def create_run(
        self,
        experiment_id: str,
        name: str | None = None,
        config: dict[str, Any] | None = None,
    ) -> Run:
        """Create a run inside an experiment.

        Args:
            experiment_id: Owning experiment
            name: Optional display name
            config: Optional ``parameters``, ``tags``, ``metadata``, ``environment_id``,
                ``user_id`` and ``notes``
        """
        await self._ensure_loaded()
        config = config or {}
        async with self._locks.hold(experiment_id):
            experiment = self._experiment_copy(experiment_id)
            if experiment.status == ExperimentStatus.ARCHIVED:
                raise InvalidStateError(
                    "Experiment", experiment_id, experiment.status.value,
                    message=f"Cannot add runs to archived experiment {experiment_id}")

            run_id = f"run-{uuid.uuid4().hex[:16]}"
            run = Run(
                id=run_id,
                experiment_id=experiment_id,
                name=name or f"Run {len(experiment.runs) + 1}",
                parameters=dict(config.get("parameters", {})),
                tags=list(config.get("tags", [])),
                metadata=dict(config.get("metadata", {})),
                environment_id=config.get("environment_id"),
                user_id=config.get("user_id"),
                notes=config.get("notes"),
            )
            experiment.runs.append(run_id)
            experiment.updated_at = utc_now()
            await self._commit(experiments={experiment_id: experiment}, runs={run_id: run})

        self.logger.debug(
            f"Created run {run_id} in experiment {experiment_id}",
            source_module=self._source_module,
        )
        await self._publish(RunCreatedEvent.create(
            self._source_module, run_id=run_id, experiment_id=experiment_id))
        return copy.deepcopy(run)

    async def get_run(self, run_id: str) -> Run:
        """Return a run."""
        await self._ensure_loaded()
        return self._run_copy(run_id)

    async def get_runs(
        self, experiment_id: str, filters: dict[str, Any] | None = None,
    ) -> list[Run]:
        """Return the runs of an experiment in creation order, optionally by ``status``."""
        await self._ensure_loaded()
        experiment = self._experiment_copy(experiment_id)
        status = (filters or {}).get("status")
        if status is not None:
            status = coerce_enum(RunStatus, status, "status")
        runs = [copy.deepcopy(self._runs[r]) for r in experiment.runs if r in self._runs]
        return [r for r in runs if status is None or r.status == status]

    def _transition(self, run: Run, target: RunStatus) -> None:
        if run.status not in self._RUN_TRANSITIONS[target]:
            raise InvalidStateError(
                "Run", run.id, run.status.value,
                message=f"Cannot move run {run.id} from {run.status.value} to {target.value}")
        run.status = target

    async def start_run(self, run_id: str) -> Run:
        """Move a created run to running."""
        await self._ensure_loaded()
        experiment_id = self._run_copy(run_id).experiment_id
        async with self._locks.hold(experiment_id):
            run = self._run_copy(run_id)
            self._transition(run, RunStatus.RUNNING)
            run.started_at = utc_now()

            changed_experiments: dict[str, Experiment | None] = {}
            experiment = self._experiments.get(experiment_id)
            if experiment is not None and experiment.status == ExperimentStatus.CREATED:
                experiment = copy.deepcopy(experiment)
                experiment.status = ExperimentStatus.RUNNING
                experiment.updated_at = utc_now()
                changed_experiments[experiment_id] = experiment
            await self._commit(experiments=changed_experiments, runs={run_id: run})

        await self._publish(RunStartedEvent.create(
            self._source_module, run_id=run_id, experiment_id=experiment_id))
        return copy.deepcopy(run)

    async def complete_run(self, run_id: str, results: dict[str, Any] | None = None) -> Run:
        """Complete a run, merging final ``metrics``, ``artifacts``, ``metadata`` and ``notes``."""
        await self._ensure_loaded()
        results = results or {}
        experiment_id = self._run_copy(run_id).experiment_id
        async with self._locks.hold(experiment_id):
            run = self._run_copy(run_id)
            self._transition(run, RunStatus.COMPLETED)
            run.completed_at = utc_now()
            run.metrics.update(results.get("metrics", {}))
            run.artifacts.extend(results.get("artifacts", []))
            run.metadata.update(results.get("metadata", {}))
            if results.get("notes"):
                run.notes = results["notes"]
            await self._commit(runs={run_id: run})

        self.logger.info(
            f"Completed run {run_id}",
            source_module=self._source_module,
            context={"experiment_id": experiment_id, "metrics": list(run.metrics)},
        )
        await self._publish(RunCompletedEvent.create(
            self._source_module,
            run_id=run_id,
            experiment_id=experiment_id,
            metrics=dict(run.metrics),
        ))
        return copy.deepcopy(run)

    async def fail_run(self, run_id: str, error: str | BaseException | None = None) -> Run:
        """Mark a run failed and keep the error message in its metadata."""
        await self._ensure_loaded()
        message = str(error) if error is not None else "unknown error"
        experiment_id = self._run_copy(run_id).experiment_id
        async with self._locks.hold(experiment_id):
            run = self._run_copy(run_id)
            self._transition(run, RunStatus.FAILED)
            run.completed_at = utc_now()
            run.metadata["error"] = message
            await self._commit(runs={run_id: run})

        self.logger.warning(
            f"Run {run_id} failed: {message}",
            source_module=self._source_module,
            context={"experiment_id": experiment_id},
        )
        await self._publish(RunFailedEvent.create(
            self._source_module, run_id=run_id, experiment_id=experiment_id, error=message))
        return copy.deepcopy(run)

    def _require_loggable(self, run: Run) -> None:
        if run.status not in self._LOGGABLE_RUN_STATES:
            raise InvalidStateError(
                "Run", run.id, run.status.value,
                message=f"Run {run.id} must be running or completed to log to it")

    async def log_metrics(self, run_id: str, metrics: dict[str, Any]) -> Run:
        """Merge metrics into a running or completed run."""
        await self._ensure_loaded()
        experiment_id = self._run_copy(run_id).experiment_id
        async with self._locks.hold(experiment_id):
            run = self._run_copy(run_id)
            self._require_loggable(run)
            run.metrics.update(metrics)
            await self._commit(runs={run_id: run})
        return copy.deepcopy(run)

    async def log_artifact(
        self,
        run_id: str,
        name: str,
        file_path: str | Path,
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Copy a file into the run's artifact directory and record it on the run."""
        await self._ensure_loaded()
        source = Path(file_path)
        if not source.is_file():
            raise InvalidParameterError(
                "file_path", str(source), message=f"Artifact file not found: {source}")

        experiment_id = self._run_copy(run_id).experiment_id
        async with self._locks.hold(experiment_id):
            run = self._run_copy(run_id)
            self._require_loggable(run)
            destination = self._artifacts_path / experiment_id / run_id / source.name
            try:
                size, digest = await asyncio.to_thread(copy_with_digest, source, destination)
            except OSError as e:
                raise StorageError("artifacts", "copy", str(e)) from e

            artifact = {
                "name": name,
                "path": str(destination),
                "size": size,
                "md5": digest,
                "metadata": dict(metadata or {}),
                "created_at": to_iso(utc_now()),
            }
            run.artifacts.append(artifact)
            await self._commit(runs={run_id: run})

        self.logger.debug(
            f"Logged artifact {name} for run {run_id}",
            source_module=self._source_module,
            context={"size": size},
        )
        return artifact

    # --- Projections ---

    async def compare_runs(self, run_ids: list[str]) -> RunComparison:
        """Line up metrics and parameters of several runs."""
        await self._ensure_loaded()
        runs = [self._run_copy(run_id) for run_id in run_ids]
        metrics: dict[str, list[tuple[str, Any]]] = {}
        parameters: dict[str, list[tuple[str, Any]]] = {}
        for run in runs:
            for key, value in run.metrics.items():
                metrics.setdefault(key, []).append((run.id, value))
            for key, value in run.parameters.items():
                parameters.setdefault(key, []).append((run.id, value))
        return RunComparison(runs=runs, metrics=metrics, parameters=parameters)

    async def get_best_run(
        self, experiment_id: str, metric: str, *, higher_is_better: bool = True,
    ) -> Run:
        """Return the completed run with the best value of ``metric``.

        Raises:
            NoMatchingRunError: If no completed run carries the metric
        """
        candidates = [
            run for run in await self.get_runs(experiment_id, {"status": RunStatus.COMPLETED})
            if isinstance(run.metrics.get(metric), (int, float))
        ]
        if not candidates:
            raise NoMatchingRunError(experiment_id, metric)
        chooser = max if higher_is_better else min
        return chooser(candidates, key=lambda run: run.metrics[metric])

