"""Composition root for the model operations services.

Builds the configuration, logging, event bus and storage layers, wires every
lifecycle service to them and owns the start/stop sequence.
"""

from __future__ import annotations

import asyncio
import functools
import logging
import os
import signal
from pathlib import Path
from typing import TYPE_CHECKING

from .config_manager import ConfigManager
from .core.pubsub import PubSubManager
from .dal.audit_log import JsonLinesAuditLog
from .dal.document_store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from .dal.sql_document_store import SqlDocumentStore
from .exceptions import ConfigurationError
from .logger_service import LoggerService
from .model_lifecycle.cicd import ModelCICDService
from .model_lifecycle.drift import CurrentStatisticsProvider, DataDriftService
from .model_lifecycle.evaluation import EvaluationScorer, ModelEvaluationService
from .model_lifecycle.experiment_tracking import ExperimentTrackingService
from .model_lifecycle.performance import ModelPerformanceService
from .model_lifecycle.registry import ModelRegistry
from .model_lifecycle.retraining import AutomatedRetrainingService
from .model_lifecycle.training_environment import (
    LocalTrainingEnvironmentService,
    TrainingEnvironmentService,
)

if TYPE_CHECKING:
    from sqlalchemy.ext.asyncio import AsyncEngine

__version__ = "0.1.0"

log = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"


class ModelOpsApplication:
    """Own every service and its lifecycle.

    Collaborators that stand in for external systems (training environments, the
    scoring engine, the live statistics source) and the document store can be
    injected; otherwise the in-process defaults and the configured storage
    backend are used.
    """

    def __init__(
        self,
        config: ConfigManager,
        *,
        store: DocumentStore | None = None,
        training_environments: TrainingEnvironmentService | None = None,
        scorer: EvaluationScorer | None = None,
        statistics_provider: CurrentStatisticsProvider | None = None,
    ) -> None:
        """Initialize the application; services are built in :meth:`start`."""
        self.config = config
        self.logger = LoggerService(config)
        self.pubsub = PubSubManager(logging.getLogger("modelops.pubsub"), config)
        self._source_module = self.__class__.__name__

        self._store = store
        self._engine: AsyncEngine | None = None
        self._training_environments = training_environments
        self._scorer = scorer
        self._statistics_provider = statistics_provider
        self._started = False

        self.registry: ModelRegistry | None = None
        self.experiments: ExperimentTrackingService | None = None
        self.evaluation: ModelEvaluationService | None = None
        self.drift: DataDriftService | None = None
        self.performance: ModelPerformanceService | None = None
        self.retraining: AutomatedRetrainingService | None = None
        self.cicd: ModelCICDService | None = None
        self.environments: TrainingEnvironmentService | None = None

    async def _build_store(self) -> DocumentStore:
        backend = self.config.get("storage.backend", "json")
        if backend == "memory":
            return InMemoryDocumentStore()
        if backend == "database":
            url = self.config.get_database_url()
            if not url:
                raise ConfigurationError("storage.database.url is required for the database backend")
            store, self._engine = await SqlDocumentStore.connect(
                url, self.logger, echo=self.config.get_bool("storage.database.echo", default=False))
            return store
        if backend == "json":
            return JsonFileDocumentStore(self.config.get("storage.path", "data"))
        raise ConfigurationError(f"Unsupported storage backend: {backend!r}")

    def _build_services(self, store: DocumentStore) -> tuple[
        ModelRegistry, ExperimentTrackingService, ModelEvaluationService, DataDriftService,
        ModelPerformanceService, AutomatedRetrainingService, ModelCICDService,
    ]:
        """Create every lifecycle service on ``store``, in initialization order."""
        config, logger, pubsub = self.config, self.logger, self.pubsub

        environments = self._training_environments or LocalTrainingEnvironmentService(logger)
        registry = ModelRegistry(config, logger, store, pubsub)
        experiments = ExperimentTrackingService(config, logger, store, pubsub)
        evaluation = ModelEvaluationService(
            config, logger, store, experiments, registry, scorer=self._scorer, pubsub=pubsub)
        drift = DataDriftService(
            config, logger, store, pubsub, statistics_provider=self._statistics_provider)
        performance = ModelPerformanceService(config, logger, store, pubsub)

        audit_path = config.get("retraining.audit_log") or str(
            Path(config.get("storage.path", "data")) / "retrain-audit.log")
        retraining = AutomatedRetrainingService(
            config, logger, registry, experiments, environments,
            pubsub, JsonLinesAuditLog(audit_path))
        cicd = ModelCICDService(config, logger, store, registry, experiments, evaluation, pubsub)

        self.environments = environments
        self.registry, self.experiments, self.evaluation = registry, experiments, evaluation
        self.drift, self.performance = drift, performance
        self.retraining, self.cicd = retraining, cicd
        return registry, experiments, evaluation, drift, performance, retraining, cicd

    async def start(self) -> None:
        """Build the services, load their state and start the timers and subscriptions."""
        if self._started:
            return
        if not self.config.is_valid():
            raise ConfigurationError(
                "Invalid configuration: " + "; ".join(self.config.validation_errors))

        await self.logger.start()
        await self.pubsub.start()
        try:
            store = self._store or await self._build_store()
            services = self._build_services(store)
            for service in services:
                await service.initialize()

            _, _, _, drift, performance, retraining, _ = services

            await retraining.start()
            await drift.start()
            await performance.start()
        except Exception:
            self.logger.exception("Application startup failed", source_module=self._source_module)
            await self.stop()
            raise

        self._started = True
        self.logger.info(
            f"ModelOps {__version__} started",
            source_module=self._source_module,
            context={"storage_backend": self.config.get("storage.backend", "json")},
        )

    async def stop(self) -> None:
        """Stop timers, wait for detached work and release resources."""
        self.logger.info("Stopping ModelOps services", source_module=self._source_module)
        if self.performance is not None:
            await self.performance.dispose()
        if self.drift is not None:
            await self.drift.dispose()
        if self.retraining is not None:
            await self.retraining.stop()
        if self.cicd is not None:
            await self.cicd.stop()
        if self.evaluation is not None:
            await self.evaluation.stop()
        if isinstance(self.environments, LocalTrainingEnvironmentService):
            await self.environments.close()

        await self.pubsub.stop()
        if self._engine is not None:
            await self._engine.dispose()
            self._engine = None
        self._started = False
        await self.logger.stop()


async def main(config_path: str | None = None) -> None:
    """Run the application until SIGINT or SIGTERM."""
    config = ConfigManager(
        config_path or os.getenv("MODELOPS_CONFIG", DEFAULT_CONFIG_PATH),
        logger_service=logging.getLogger("modelops.config"),
    )
    app = ModelOpsApplication(config)
    shutdown_event = asyncio.Event()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, functools.partial(_handle_shutdown, sig, shutdown_event))
        except NotImplementedError:
            log.warning("Signal handling for %s not supported on this platform.", sig.name)

    await app.start()
    try:
        await shutdown_event.wait()
    finally:
        await app.stop()


def _handle_shutdown(sig: signal.Signals, shutdown_event: asyncio.Event) -> None:
    log.warning("Received shutdown signal: %s. Initiating graceful shutdown...", sig.name)
    shutdown_event.set()


if __name__ == "__main__":
    asyncio.run(main())
