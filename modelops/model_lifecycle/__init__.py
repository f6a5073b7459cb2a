"""Model lifecycle management components."""

from .cicd import ModelCICDService, Pipeline
from .drift import DataDriftService, DriftBaseline, DriftReport
from .enums import (
    DriftSeverity,
    EvaluationStatus,
    EvaluationType,
    MetricType,
    ModelStage,
    ModelStatus,
    PipelineStage,
    PipelineStatus,
    RetrainReason,
    RetrainStatus,
    TimeWindow,
)
from .evaluation import Dataset, Evaluation, ModelEvaluationService, SimulatedScorer
from .experiment_tracking import Experiment, ExperimentTrackingService, Run
from .performance import MetricSeries, ModelPerformanceService
from .registry import Model, ModelRegistry, ModelVersion
from .retraining import AutomatedRetrainingService, RetrainAuditEntry
from .training_environment import (
    LocalTrainingEnvironmentService,
    TrainingEnvironment,
    TrainingEnvironmentService,
)

__all__ = [
    "AutomatedRetrainingService",
    "DataDriftService",
    "Dataset",
    "DriftBaseline",
    "DriftReport",
    "DriftSeverity",
    "Evaluation",
    "EvaluationStatus",
    "EvaluationType",
    "Experiment",
    "ExperimentTrackingService",
    "LocalTrainingEnvironmentService",
    "MetricSeries",
    "MetricType",
    "Model",
    "ModelCICDService",
    "ModelEvaluationService",
    "ModelPerformanceService",
    "ModelRegistry",
    "ModelStage",
    "ModelStatus",
    "ModelVersion",
    "Pipeline",
    "PipelineStage",
    "PipelineStatus",
    "RetrainAuditEntry",
    "RetrainReason",
    "RetrainStatus",
    "Run",
    "SimulatedScorer",
    "TimeWindow",
    "TrainingEnvironment",
    "TrainingEnvironmentService",
]
