"""Enumerations shared by the model lifecycle services."""

from enum import Enum


class ModelStatus(Enum):
    """Release status of a model version."""

    DRAFT = "draft"
    STAGING = "staging"
    PRODUCTION = "production"
    ARCHIVED = "archived"


class ModelStage(Enum):
    """Lifecycle stage of a model version."""

    DEVELOPMENT = "development"
    TESTING = "testing"
    VALIDATION = "validation"
    DEPLOYMENT = "deployment"
    MONITORING = "monitoring"
    RETIRED = "retired"


class ExperimentStatus(Enum):
    """Status of an experiment."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    ARCHIVED = "archived"


class RunStatus(Enum):
    """Status of a run inside an experiment."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EvaluationStatus(Enum):
    """Status of a model evaluation."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EvaluationType(Enum):
    """Kind of task an evaluation scores."""

    CLASSIFICATION = "classification"
    REGRESSION = "regression"
    OBJECT_DETECTION = "object_detection"
    SEGMENTATION = "segmentation"
    ANOMALY_DETECTION = "anomaly_detection"
    RECOMMENDATION = "recommendation"
    CUSTOM = "custom"


class DriftSeverity(Enum):
    """Drift severity, ordered from none to critical."""

    NONE = "none"
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class MetricType(Enum):
    """Built-in performance metric series."""

    LATENCY = "latency"
    THROUGHPUT = "throughput"
    ERROR_RATE = "error_rate"
    MEMORY_USAGE = "memory_usage"
    CPU_USAGE = "cpu_usage"
    PREDICTION_ACCURACY = "prediction_accuracy"
    CUSTOM = "custom"


class TimeWindow(Enum):
    """Look-back windows for metric queries."""

    MINUTE = "1m"
    FIVE_MINUTES = "5m"
    FIFTEEN_MINUTES = "15m"
    HOUR = "1h"
    DAY = "1d"
    WEEK = "1w"
    MONTH = "30d"
    ALL = "all"


class RetrainReason(Enum):
    """What prompted a retraining attempt."""

    DRIFT = "drift"
    PERFORMANCE = "performance"
    MANUAL = "manual"


class RetrainStatus(Enum):
    """Outcome recorded for a retraining attempt."""

    ATTEMPTED = "attempted"
    COOLDOWN = "cooldown"
    POLICY_DENIED = "policy-denied"
    APPROVAL_DENIED = "approval-denied"
    STARTED = "started"
    FAILED = "failed"


class PipelineStage(Enum):
    """Stages of a promotion pipeline in execution order."""

    VALIDATION = "validation"
    TESTING = "testing"
    STAGING = "staging"
    PRODUCTION = "production"


class PipelineStatus(Enum):
    """Status of a promotion pipeline."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class EnvironmentStatus(Enum):
    """Status of a training environment."""

    CREATED = "created"
    RUNNING = "running"
    STOPPED = "stopped"
    COMPLETED = "completed"
    FAILED = "failed"
