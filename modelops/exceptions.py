"""Standard exceptions for the ModelOps application."""

from typing import Any


class ModelOpsError(Exception):
    """Base class for ModelOps specific errors."""


class ConfigurationError(ModelOpsError):
    """Exception raised for errors in the configuration."""


class OperationalError(ModelOpsError):
    """Base class for errors during application operation."""


# --- Not found ---


class NotFoundError(OperationalError):
    """An addressed entity does not exist."""

    entity_type = "Entity"

    def __init__(self, entity_id: str, message: str | None = None) -> None:
        """Initialize NotFoundError.

        Args:
            entity_id: Identifier of the missing entity
            message: Optional custom error message
        """
        self.entity_id = entity_id
        if message is None:
            message = f"{self.entity_type} not found: {entity_id}"
        super().__init__(message)


class ModelNotFoundError(NotFoundError):
    """Raised when a registered model name is unknown."""

    entity_type = "Model"


class ModelVersionNotFoundError(NotFoundError):
    """Raised when a model version is unknown."""

    entity_type = "Model version"

    def __init__(
        self,
        model_name: str,
        version: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize ModelVersionNotFoundError."""
        self.model_name = model_name
        self.version = version
        entity_id = f"{model_name}@{version}" if version else model_name
        super().__init__(entity_id, message)


class ExperimentNotFoundError(NotFoundError):
    """Raised when an experiment id is unknown."""

    entity_type = "Experiment"


class RunNotFoundError(NotFoundError):
    """Raised when a run id is unknown."""

    entity_type = "Run"


class NoMatchingRunError(NotFoundError):
    """Raised when no completed run carries the requested metric."""

    entity_type = "Run"

    def __init__(self, experiment_id: str, metric: str) -> None:
        """Initialize NoMatchingRunError."""
        self.experiment_id = experiment_id
        self.metric = metric
        super().__init__(
            experiment_id,
            f"No completed runs with metric '{metric}' in experiment {experiment_id}",
        )


class EvaluationNotFoundError(NotFoundError):
    """Raised when an evaluation id is unknown."""

    entity_type = "Evaluation"


class DatasetNotFoundError(NotFoundError):
    """Raised when a dataset id is unknown."""

    entity_type = "Dataset"


class BaselineNotFoundError(NotFoundError):
    """Raised when a model has no drift baseline."""

    entity_type = "Drift baseline"


class PipelineNotFoundError(NotFoundError):
    """Raised when a pipeline id is unknown."""

    entity_type = "Pipeline"


class EnvironmentNotFoundError(NotFoundError):
    """Raised when a training environment id is unknown."""

    entity_type = "Training environment"


# --- Invalid state ---


class InvalidStateError(OperationalError):
    """An operation is incompatible with the entity's current state."""

    def __init__(
        self,
        entity_type: str,
        entity_id: str,
        state: str | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize InvalidStateError.

        Args:
            entity_type: Kind of entity, e.g. "Pipeline"
            entity_id: Identifier of the entity
            state: Current state that blocks the operation
            message: Optional custom error message
        """
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.state = state
        if message is None:
            message = f"{entity_type} {entity_id} is in invalid state"
            if state:
                message += f" '{state}'"
            message += " for this operation."
        super().__init__(message)


class ModelAlreadyExistsError(InvalidStateError):
    """Raised when registering a model name that is already taken."""

    def __init__(self, model_name: str) -> None:
        """Initialize ModelAlreadyExistsError."""
        super().__init__(
            "Model", model_name, message=f"Model already exists: {model_name}",
        )


class InvalidStageTransitionError(InvalidStateError):
    """Raised when a model version stage change is not in the transition table."""

    def __init__(self, model_id: str, current: str, target: str) -> None:
        """Initialize InvalidStageTransitionError."""
        self.current = current
        self.target = target
        super().__init__(
            "Model version",
            model_id,
            current,
            message=f"Illegal stage transition for {model_id}: {current} -> {target}",
        )


class InvalidParameterError(OperationalError, ValueError):
    """Error when a caller supplies an unsupported value.

    Inherits from ValueError for semantic compatibility where applicable.
    """

    def __init__(
        self,
        parameter: str,
        value: Any,
        allowed: list[str] | None = None,
        message: str | None = None,
    ) -> None:
        """Initialize InvalidParameterError."""
        self.parameter = parameter
        self.value = value
        self.allowed = allowed
        if message is None:
            message = f"Invalid value for '{parameter}': {value!r}."
            if allowed:
                message += f" Allowed values are: {', '.join(allowed)}."
        super().__init__(message)


class InvalidPipelineConfigError(InvalidParameterError):
    """Raised when a pipeline definition is malformed."""


# --- Infrastructure ---


class InfrastructureError(ModelOpsError):
    """Base class for storage, provisioning and other infrastructure failures."""


class StorageError(InfrastructureError):
    """Raised when a document cannot be read from or written to the store."""

    def __init__(self, collection: str, operation: str, details: str | None = None) -> None:
        """Initialize StorageError."""
        self.collection = collection
        self.operation = operation
        message = f"Storage {operation} failed for collection '{collection}'."
        if details:
            message += f" Details: {details}"
        super().__init__(message)


class EnvironmentProvisioningError(InfrastructureError):
    """Raised when a training environment cannot be created or started."""


class EvaluationTimeoutError(InfrastructureError):
    """Raised when an evaluation does not finish within the allotted time."""

    def __init__(self, evaluation_id: str, timeout_s: float) -> None:
        """Initialize EvaluationTimeoutError."""
        self.evaluation_id = evaluation_id
        self.timeout_s = timeout_s
        super().__init__(f"Evaluation {evaluation_id} did not finish within {timeout_s}s")


class EvaluationFailedError(InfrastructureError):
    """Raised when an awaited evaluation ends in the failed state."""

    def __init__(self, evaluation_id: str, error: str | None = None) -> None:
        """Initialize EvaluationFailedError."""
        self.evaluation_id = evaluation_id
        self.error = error
        super().__init__(f"Evaluation {evaluation_id} failed: {error or 'unknown error'}")


class RetrainingFailedError(InfrastructureError):
    """Raised when a retraining attempt passed its gates but could not be started."""

    def __init__(self, model_id: str, reason: str, error: str) -> None:
        """Initialize RetrainingFailedError."""
        self.model_id = model_id
        self.reason = reason
        self.error = error
        super().__init__(f"Retraining of {model_id} ({reason}) failed: {error}")


class PipelineTimeoutError(InfrastructureError):
    """Raised when a pipeline does not finish within the allotted time."""

    def __init__(self, pipeline_id: str, timeout_s: float) -> None:
        """Initialize PipelineTimeoutError."""
        self.pipeline_id = pipeline_id
        self.timeout_s = timeout_s
        super().__init__(f"Pipeline {pipeline_id} did not finish within {timeout_s}s")
