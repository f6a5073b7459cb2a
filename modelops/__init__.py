"""Model lifecycle operations: registry, experiments, evaluation, drift, performance,
automated retraining and promotion pipelines."""

__version__ = "0.1.0"
