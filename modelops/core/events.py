"""Core event definitions for the ModelOps lifecycle services.

This module defines the event hierarchy used for communication between the
registry, tracking, evaluation, monitoring, retraining and CI/CD services.
All events are implemented as immutable dataclasses.

Design Notes
------------
- Events are frozen dataclasses; ``event_type`` is fixed per class and is the
  topic the event is published on.
- Timestamps are UTC.
- UUIDs are used for unique event identification.
- Factory methods (``.create()``) fill in ``event_id`` and ``timestamp``.
"""

import datetime as dt
import uuid
from dataclasses import asdict, dataclass, field
from enum import Enum, auto
from typing import Any, Self


class EventType(Enum):
    """Topics of the in-process event bus.

    Lower values are dispatched first when several events are queued.
    """

    # Monitoring signals
    DRIFT_DETECTED = auto()
    PERFORMANCE_DROP = auto()

    # Retraining outcomes
    RETRAINING_STARTED = auto()
    RETRAINING_FAILED = auto()
    RETRAINING_COOLDOWN = auto()
    RETRAINING_POLICY_DENIED = auto()
    RETRAINING_APPROVAL_DENIED = auto()

    # Pipeline lifecycle
    PIPELINE_CREATED = auto()
    PIPELINE_STARTED = auto()
    PIPELINE_STAGE_STARTED = auto()
    PIPELINE_STAGE_COMPLETED = auto()
    PIPELINE_STAGE_FAILED = auto()
    PIPELINE_COMPLETED = auto()
    PIPELINE_FAILED = auto()
    PIPELINE_DELETED = auto()

    # Evaluation lifecycle
    EVALUATION_CREATED = auto()
    EVALUATION_STARTED = auto()
    EVALUATION_COMPLETED = auto()
    EVALUATION_FAILED = auto()
    EVALUATION_DELETED = auto()

    # Registry
    MODEL_REGISTERED = auto()
    MODEL_VERSION_ADDED = auto()
    MODEL_VERSION_UPDATED = auto()
    MODEL_DELETED = auto()

    # Experiment tracking
    EXPERIMENT_CREATED = auto()
    EXPERIMENT_UPDATED = auto()
    EXPERIMENT_DELETED = auto()
    RUN_CREATED = auto()
    RUN_STARTED = auto()
    RUN_COMPLETED = auto()
    RUN_FAILED = auto()

    # Monitoring bookkeeping
    BASELINE_CREATED = auto()
    DRIFT_DETECTION_COMPLETED = auto()
    CUSTOM_METRIC_TRACKED = auto()
    INFERENCE_TRACKED = auto()
    METRICS_COLLECTED = auto()


def _now() -> dt.datetime:
    return dt.datetime.now(dt.UTC)


@dataclass(frozen=True)
class Event:
    """Base class for all events."""

    source_module: str
    event_id: uuid.UUID
    timestamp: dt.datetime

    def to_dict(self) -> dict[str, Any]:
        """Convert the event to a JSON-friendly dictionary."""
        data = asdict(self)
        data["event_id"] = str(self.event_id)
        data["timestamp"] = self.timestamp.isoformat()
        event_type = getattr(self, "event_type", None)
        if isinstance(event_type, EventType):
            data["event_type"] = event_type.name
        return data

    @classmethod
    def create(cls, source_module: str, **fields: Any) -> Self:
        """Create an event stamped with a fresh id and the current UTC time."""
        return cls(
            source_module=source_module,
            event_id=uuid.uuid4(),
            timestamp=_now(),
            **fields,
        )


# --- Registry ---


@dataclass(frozen=True)
class ModelRegisteredEvent(Event):
    """A new model name was registered."""

    model_name: str
    event_type: EventType = field(default=EventType.MODEL_REGISTERED, init=False)


@dataclass(frozen=True)
class ModelVersionAddedEvent(Event):
    """A version was added to a registered model."""

    model_name: str
    version: str
    model_id: str
    event_type: EventType = field(default=EventType.MODEL_VERSION_ADDED, init=False)


@dataclass(frozen=True)
class ModelVersionUpdatedEvent(Event):
    """A version's status, stage, metrics or artifacts changed."""

    model_name: str
    version: str
    field_name: str
    old_value: Any = None
    new_value: Any = None
    event_type: EventType = field(default=EventType.MODEL_VERSION_UPDATED, init=False)


@dataclass(frozen=True)
class ModelDeletedEvent(Event):
    """A model and all its versions were removed."""

    model_name: str
    event_type: EventType = field(default=EventType.MODEL_DELETED, init=False)


# --- Experiment tracking ---


@dataclass(frozen=True)
class ExperimentCreatedEvent(Event):
    """An experiment was created."""

    experiment_id: str
    name: str
    event_type: EventType = field(default=EventType.EXPERIMENT_CREATED, init=False)


@dataclass(frozen=True)
class ExperimentUpdatedEvent(Event):
    """An experiment's fields changed."""

    experiment_id: str
    changes: dict[str, Any]
    event_type: EventType = field(default=EventType.EXPERIMENT_UPDATED, init=False)


@dataclass(frozen=True)
class ExperimentDeletedEvent(Event):
    """An experiment and its runs were removed."""

    experiment_id: str
    run_ids: tuple[str, ...] = ()
    event_type: EventType = field(default=EventType.EXPERIMENT_DELETED, init=False)


@dataclass(frozen=True)
class RunCreatedEvent(Event):
    """A run was created inside an experiment."""

    run_id: str
    experiment_id: str
    event_type: EventType = field(default=EventType.RUN_CREATED, init=False)


@dataclass(frozen=True)
class RunStartedEvent(Event):
    """A run moved to running."""

    run_id: str
    experiment_id: str
    event_type: EventType = field(default=EventType.RUN_STARTED, init=False)


@dataclass(frozen=True)
class RunCompletedEvent(Event):
    """A run completed with its final metrics."""

    run_id: str
    experiment_id: str
    metrics: dict[str, Any] = field(default_factory=dict)
    event_type: EventType = field(default=EventType.RUN_COMPLETED, init=False)


@dataclass(frozen=True)
class RunFailedEvent(Event):
    """A run failed."""

    run_id: str
    experiment_id: str
    error: str | None = None
    event_type: EventType = field(default=EventType.RUN_FAILED, init=False)


# --- Evaluation ---


@dataclass(frozen=True)
class EvaluationCreatedEvent(Event):
    """An evaluation was created in the pending state."""

    evaluation_id: str
    model_id: str
    dataset_id: str
    event_type: EventType = field(default=EventType.EVALUATION_CREATED, init=False)


@dataclass(frozen=True)
class EvaluationStartedEvent(Event):
    """An evaluation began scoring."""

    evaluation_id: str
    model_id: str
    event_type: EventType = field(default=EventType.EVALUATION_STARTED, init=False)


@dataclass(frozen=True)
class EvaluationCompletedEvent(Event):
    """An evaluation finished with metrics."""

    evaluation_id: str
    model_id: str
    metrics: dict[str, Any] = field(default_factory=dict)
    event_type: EventType = field(default=EventType.EVALUATION_COMPLETED, init=False)


@dataclass(frozen=True)
class EvaluationFailedEvent(Event):
    """An evaluation failed."""

    evaluation_id: str
    model_id: str
    error: str | None = None
    event_type: EventType = field(default=EventType.EVALUATION_FAILED, init=False)


@dataclass(frozen=True)
class EvaluationDeletedEvent(Event):
    """An evaluation was removed."""

    evaluation_id: str
    event_type: EventType = field(default=EventType.EVALUATION_DELETED, init=False)


# --- Drift ---


@dataclass(frozen=True)
class BaselineCreatedEvent(Event):
    """A drift baseline was created or refreshed."""

    model_id: str
    features: tuple[str, ...] = ()
    event_type: EventType = field(default=EventType.BASELINE_CREATED, init=False)


@dataclass(frozen=True)
class DriftDetectedEvent(Event):
    """Drift at or above the low threshold was found for a model."""

    model_id: str
    severity: str
    report: dict[str, Any] = field(default_factory=dict)
    event_type: EventType = field(default=EventType.DRIFT_DETECTED, init=False)


@dataclass(frozen=True)
class DriftDetectionCompletedEvent(Event):
    """A periodic drift sweep finished."""

    models_checked: int
    event_type: EventType = field(default=EventType.DRIFT_DETECTION_COMPLETED, init=False)


# --- Performance ---


@dataclass(frozen=True)
class InferenceTrackedEvent(Event):
    """One inference (or batch) was recorded."""

    model_id: str
    latency_ms: float
    success: bool
    batch_size: int = 1
    event_type: EventType = field(default=EventType.INFERENCE_TRACKED, init=False)


@dataclass(frozen=True)
class CustomMetricTrackedEvent(Event):
    """A custom metric data point was recorded."""

    model_id: str
    metric_name: str
    value: float
    event_type: EventType = field(default=EventType.CUSTOM_METRIC_TRACKED, init=False)


@dataclass(frozen=True)
class PerformanceDropEvent(Event):
    """The watched performance metric fell below its threshold."""

    model_id: str
    metric_name: str
    value: float
    threshold: float
    event_type: EventType = field(default=EventType.PERFORMANCE_DROP, init=False)


@dataclass(frozen=True)
class MetricsCollectedEvent(Event):
    """A sampling interval was converted into data points."""

    model_ids: tuple[str, ...] = ()
    event_type: EventType = field(default=EventType.METRICS_COLLECTED, init=False)


# --- Retraining ---


@dataclass(frozen=True)
class RetrainingEvent(Event):
    """Base payload shared by every retraining outcome."""

    model_id: str
    reason: str
    experiment_id: str | None = None
    environment_id: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RetrainingStartedEvent(RetrainingEvent):
    """A retraining run was provisioned and started."""

    event_type: EventType = field(default=EventType.RETRAINING_STARTED, init=False)


@dataclass(frozen=True)
class RetrainingFailedEvent(RetrainingEvent):
    """A retraining attempt passed its gates but failed to start."""

    event_type: EventType = field(default=EventType.RETRAINING_FAILED, init=False)


@dataclass(frozen=True)
class RetrainingCooldownEvent(RetrainingEvent):
    """A retraining attempt was denied because the model is cooling down."""

    event_type: EventType = field(default=EventType.RETRAINING_COOLDOWN, init=False)


@dataclass(frozen=True)
class RetrainingPolicyDeniedEvent(RetrainingEvent):
    """A retraining attempt was denied by the custom policy."""

    event_type: EventType = field(default=EventType.RETRAINING_POLICY_DENIED, init=False)


@dataclass(frozen=True)
class RetrainingApprovalDeniedEvent(RetrainingEvent):
    """A retraining attempt was denied by the approval callback."""

    event_type: EventType = field(default=EventType.RETRAINING_APPROVAL_DENIED, init=False)


# --- Pipelines ---


@dataclass(frozen=True)
class PipelineEvent(Event):
    """Base payload shared by pipeline lifecycle events."""

    pipeline_id: str
    model_id: str


@dataclass(frozen=True)
class PipelineCreatedEvent(PipelineEvent):
    """A pipeline was defined."""

    event_type: EventType = field(default=EventType.PIPELINE_CREATED, init=False)


@dataclass(frozen=True)
class PipelineStartedEvent(PipelineEvent):
    """A pipeline began executing its stages."""

    event_type: EventType = field(default=EventType.PIPELINE_STARTED, init=False)


@dataclass(frozen=True)
class PipelineCompletedEvent(PipelineEvent):
    """Every stage of a pipeline succeeded."""

    event_type: EventType = field(default=EventType.PIPELINE_COMPLETED, init=False)


@dataclass(frozen=True)
class PipelineFailedEvent(PipelineEvent):
    """A pipeline halted on a failed stage."""

    failed_stage: str | None = None
    error: str | None = None
    event_type: EventType = field(default=EventType.PIPELINE_FAILED, init=False)


@dataclass(frozen=True)
class PipelineDeletedEvent(PipelineEvent):
    """A pipeline definition was removed."""

    event_type: EventType = field(default=EventType.PIPELINE_DELETED, init=False)


@dataclass(frozen=True)
class PipelineStageEvent(PipelineEvent):
    """Base payload for per-stage pipeline events."""

    stage: str
    result: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class PipelineStageStartedEvent(PipelineStageEvent):
    """A pipeline stage began."""

    event_type: EventType = field(default=EventType.PIPELINE_STAGE_STARTED, init=False)


@dataclass(frozen=True)
class PipelineStageCompletedEvent(PipelineStageEvent):
    """A pipeline stage passed."""

    event_type: EventType = field(default=EventType.PIPELINE_STAGE_COMPLETED, init=False)


@dataclass(frozen=True)
class PipelineStageFailedEvent(PipelineStageEvent):
    """A pipeline stage did not pass or raised."""

    event_type: EventType = field(default=EventType.PIPELINE_STAGE_FAILED, init=False)
