"""Automated retraining triggered by drift and performance events.

Every trigger passes three gates in order: the per-model cooldown, an optional
policy callback and an optional approval callback. A trigger that clears all of
them marks the cooldown, creates an experiment and a training environment, links
the two and starts training. Each attempt is written to a JSON-Lines audit log and
announced with a retraining event, whatever its outcome.
"""

from __future__ import annotations

import inspect
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import TYPE_CHECKING, Any

from modelops.core.events import (
    DriftDetectedEvent,
    Event,
    EventType,
    PerformanceDropEvent,
    RetrainingApprovalDeniedEvent,
    RetrainingCooldownEvent,
    RetrainingEvent,
    RetrainingFailedEvent,
    RetrainingPolicyDeniedEvent,
    RetrainingStartedEvent,
)
from modelops.core.locks import KeyedLocks
from modelops.dal.audit_log import JsonLinesAuditLog
from modelops.exceptions import (
    EnvironmentProvisioningError,
    ModelOpsError,
    NotFoundError,
    RetrainingFailedError,
)
from modelops.utils.time_utils import from_iso, to_iso, utc_now

from .enums import MetricType, RetrainReason, RetrainStatus
from .registry import coerce_enum

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.logger_service import LoggerService

    from .experiment_tracking import ExperimentTrackingService
    from .registry import ModelRegistry
    from .training_environment import TrainingEnvironmentService


DEFAULT_COOLDOWN_MS = 6 * 60 * 60 * 1000


@dataclass(frozen=True)
class RetrainRequest:
    """What the policy and approval callbacks are asked about."""

    model_id: str
    reason: RetrainReason
    event: dict[str, Any] | None = None


@dataclass
class RetrainAuditEntry:
    """One line of the retraining audit log."""

    model_id: str
    reason: RetrainReason
    status: RetrainStatus
    event: dict[str, Any] | None = None
    experiment_id: str | None = None
    environment_id: str | None = None
    error: str | None = None
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        """Convert to the audit log record."""
        return {
            "model_id": self.model_id,
            "reason": self.reason.value,
            "status": self.status.value,
            "event": self.event,
            "experiment_id": self.experiment_id,
            "environment_id": self.environment_id,
            "error": self.error,
            "timestamp": to_iso(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetrainAuditEntry:
        """Create an entry from an audit log record."""
        return cls(
            model_id=data["model_id"],
            reason=RetrainReason(data["reason"]),
            status=RetrainStatus(data["status"]),
            event=data.get("event"),
            experiment_id=data.get("experiment_id"),
            environment_id=data.get("environment_id"),
            error=data.get("error"),
            timestamp=from_iso(data.get("timestamp")) or utc_now(),
        )


GateCallback = Callable[[RetrainRequest], Awaitable[bool] | bool]
NotifyCallback = Callable[[RetrainAuditEntry], Awaitable[None] | None]

_STATUS_EVENTS: dict[RetrainStatus, type[RetrainingEvent]] = {
    RetrainStatus.COOLDOWN: RetrainingCooldownEvent,
    RetrainStatus.POLICY_DENIED: RetrainingPolicyDeniedEvent,
    RetrainStatus.APPROVAL_DENIED: RetrainingApprovalDeniedEvent,
    RetrainStatus.STARTED: RetrainingStartedEvent,
    RetrainStatus.FAILED: RetrainingFailedEvent,
}


def _summarize_event(event: Event | dict[str, Any] | None) -> dict[str, Any] | None:
    if event is None:
        return None
    data = event.to_dict() if isinstance(event, Event) else dict(event)
    report = data.pop("report", None)
    if isinstance(report, dict):
        data["report_id"] = report.get("id")
        data["overall_score"] = report.get("drift_results", {}).get("overall_score")
    return data


async def _resolve(value: Any) -> Any:  # noqa: ANN401
    if inspect.isawaitable(value):
        return await value
    return value


class AutomatedRetrainingService:
    """Decide on and start retraining for models that drift or degrade."""

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        registry: ModelRegistry,
        experiment_tracking: ExperimentTrackingService,
        training_environments: TrainingEnvironmentService,
        pubsub: PubSubManager | None = None,
        audit_log: JsonLinesAuditLog | None = None,
        *,
        policy: GateCallback | None = None,
        approval: GateCallback | None = None,
        notify: NotifyCallback | None = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        """Initialize the retraining service.

        Args:
            config: Configuration manager
            logger: Logger service
            registry: Registry used to look up the model's framework and dependencies
            experiment_tracking: Tracking service the retraining experiment is created in
            training_environments: Environment provisioner
            pubsub: Optional event bus; required for the automatic subscriptions
            audit_log: Audit log; defaults to ``retraining.audit_log``
            policy: Optional gate deciding whether a model should be retrained
            approval: Optional gate asking for approval of a retrain
            notify: Optional callback receiving started and failed entries
            clock: Source of the current time
        """
        self.config = config
        self.logger = logger
        self._registry = registry
        self._tracking = experiment_tracking
        self._environments = training_environments
        self._pubsub = pubsub
        self._audit_log = audit_log or JsonLinesAuditLog(
            config.get("retraining.audit_log", "data/retrain-audit.log"))
        self._policy = policy
        self._approval = approval
        self._notify = notify
        self._clock = clock
        self._source_module = self.__class__.__name__

        self._last_retrain: dict[str, datetime] = {}
        self._locks = KeyedLocks()
        self._loaded = False
        self._subscribed = False

    # --- Configuration ---

    def set_policy(self, policy: GateCallback | None) -> None:
        """Replace the policy gate."""
        self._policy = policy

    def set_approval_callback(self, approval: GateCallback | None) -> None:
        """Replace the approval gate."""
        self._approval = approval

    def set_notification_callback(self, notify: NotifyCallback | None) -> None:
        """Replace the notification callback."""
        self._notify = notify

    def _settings(self, model_id: str) -> dict[str, Any]:
        settings: dict[str, Any] = {
            "cooldown_ms": self.config.get_float("retraining.cooldown_ms", DEFAULT_COOLDOWN_MS),
            "retrain_on_drift_severity": self.config.get_list(
                "retraining.retrain_on_drift_severity", ["high", "critical"]),
            "retrain_on_performance_drop": self.config.get_bool(
                "retraining.retrain_on_performance_drop", default=True),
            "performance_metric": self.config.get(
                "retraining.performance_metric", MetricType.PREDICTION_ACCURACY.value),
            "performance_threshold": self.config.get_float(
                "retraining.performance_threshold", 0.8),
        }
        settings.update(self.config.get_model_overrides("retraining", model_id))
        return settings

    def _cooldown(self, model_id: str) -> timedelta:
        return timedelta(milliseconds=float(self._settings(model_id)["cooldown_ms"]))

    # --- Lifecycle ---

    async def initialize(self) -> None:
        """Restore the last retrain time of each model from the audit log."""
        if self._loaded:
            return
        for record in await self._audit_log.read():
            if record.get("status") != RetrainStatus.STARTED.value:
                continue
            timestamp = from_iso(record.get("timestamp"))
            model_id = record.get("model_id")
            if not model_id or timestamp is None:
                continue
            previous = self._last_retrain.get(model_id)
            if previous is None or timestamp > previous:
                self._last_retrain[model_id] = timestamp
        self._loaded = True

    async def start(self) -> None:
        """Subscribe to drift and performance events."""
        await self.initialize()
        if self._pubsub is not None and not self._subscribed:
            # Provisioning can outlast the bus handler timeout
            self._pubsub.subscribe(
                EventType.DRIFT_DETECTED, self._handle_drift_detected, exempt_from_timeout=True)
            self._pubsub.subscribe(
                EventType.PERFORMANCE_DROP, self._handle_performance_drop, exempt_from_timeout=True)
            self._subscribed = True
        self.logger.info("AutomatedRetrainingService started.", source_module=self._source_module)

    async def stop(self) -> None:
        """Unsubscribe from drift and performance events."""
        if self._pubsub is not None and self._subscribed:
            self._pubsub.unsubscribe(EventType.DRIFT_DETECTED, self._handle_drift_detected)
            self._pubsub.unsubscribe(EventType.PERFORMANCE_DROP, self._handle_performance_drop)
            self._subscribed = False
        self.logger.info("AutomatedRetrainingService stopped.", source_module=self._source_module)

    # --- Event handlers ---

    async def _handle_drift_detected(self, event: DriftDetectedEvent) -> None:
        settings = self._settings(event.model_id)
        if event.severity not in settings["retrain_on_drift_severity"]:
            self.logger.debug(
                f"Drift severity {event.severity} for {event.model_id} does not trigger retraining",
                source_module=self._source_module,
            )
            return
        try:
            await self.trigger_retraining(event.model_id, RetrainReason.DRIFT, event)
        except ModelOpsError:
            self.logger.exception(
                f"Drift-triggered retraining of {event.model_id} failed",
                source_module=self._source_module,
                context={"model_id": event.model_id, "reason": RetrainReason.DRIFT.value},
            )

    async def _handle_performance_drop(self, event: PerformanceDropEvent) -> None:
        settings = self._settings(event.model_id)
        if not settings["retrain_on_performance_drop"]:
            return
        if event.metric_name != settings["performance_metric"]:
            return
        if event.value >= float(settings["performance_threshold"]):
            return
        try:
            await self.trigger_retraining(event.model_id, RetrainReason.PERFORMANCE, event)
        except ModelOpsError:
            self.logger.exception(
                f"Performance-triggered retraining of {event.model_id} failed",
                source_module=self._source_module,
                context={"model_id": event.model_id, "reason": RetrainReason.PERFORMANCE.value},
            )

    # --- Triggering ---

    async def trigger_retraining(
        self,
        model_id: str,
        reason: RetrainReason | str,
        event: Event | dict[str, Any] | None = None,
    ) -> RetrainAuditEntry:
        """Run the gates for a model and start retraining when they all pass.

        Returns:
            The audit entry of the attempt; gate denials are returned, not raised

        Raises:
            RetrainingFailedError: If the gates passed but retraining could not be started
        """
        await self.initialize()
        reason = coerce_enum(RetrainReason, reason, "reason")
        summary = _summarize_event(event)
        request = RetrainRequest(model_id=model_id, reason=reason, event=summary)

        async with self._locks.hold(model_id):
            now = self._clock()
            last = self._last_retrain.get(model_id)
            if last is not None and now - last < self._cooldown(model_id):
                self.logger.info(
                    f"Cooldown active for model {model_id}, skipping retrain",
                    source_module=self._source_module,
                    context={"model_id": model_id, "reason": reason.value},
                )
                return await self._record(RetrainAuditEntry(
                    model_id, reason, RetrainStatus.COOLDOWN, summary, timestamp=now))

            try:
                if self._policy is not None and not await _resolve(self._policy(request)):
                    self.logger.info(
                        f"Retrain policy denied retraining of model {model_id}",
                        source_module=self._source_module,
                    )
                    return await self._record(RetrainAuditEntry(
                        model_id, reason, RetrainStatus.POLICY_DENIED, summary, timestamp=now))

                if self._approval is not None and not await _resolve(self._approval(request)):
                    self.logger.info(
                        f"Retraining of model {model_id} was not approved",
                        source_module=self._source_module,
                    )
                    return await self._record(RetrainAuditEntry(
                        model_id, reason, RetrainStatus.APPROVAL_DENIED, summary, timestamp=now))

                self._last_retrain[model_id] = now
                experiment_id, environment_id = await self._provision(model_id, reason, summary)
            except Exception as e:
                self.logger.error(
                    f"Failed to trigger retraining for model {model_id}: {e}",
                    source_module=self._source_module,
                    context={"model_id": model_id, "reason": reason.value, "error": str(e)},
                    exc_info=e,
                )
                entry = RetrainAuditEntry(
                    model_id, reason, RetrainStatus.FAILED, summary,
                    error=str(e), timestamp=self._clock())
                try:
                    await self._record(entry)
                except ModelOpsError:
                    self.logger.exception(
                        f"Could not write the failed retrain of model {model_id} to the audit log",
                        source_module=self._source_module,
                        context={"model_id": model_id, "error": str(e)},
                    )
                await self._send_notification(entry)
                raise RetrainingFailedError(model_id, reason.value, str(e)) from e

            entry = await self._record(RetrainAuditEntry(
                model_id, reason, RetrainStatus.STARTED, summary,
                experiment_id=experiment_id, environment_id=environment_id,
                timestamp=self._clock()))

        self.logger.info(
            f"Retraining started for model {model_id} in environment {environment_id}",
            source_module=self._source_module,
            context={"model_id": model_id, "reason": reason.value, "experiment_id": experiment_id},
        )
        await self._send_notification(entry)
        return entry

    async def _model_profile(self, model_id: str) -> tuple[str, list[str]]:
        try:
            _, version = await self._registry.resolve_model_version(model_id)
        except NotFoundError:
            self.logger.warning(
                f"Model {model_id} is not registered; provisioning a generic environment",
                source_module=self._source_module,
            )
            return "custom", []
        return version.framework or "custom", list(version.dependencies)

    async def _provision(
        self, model_id: str, reason: RetrainReason, event: dict[str, Any] | None,
    ) -> tuple[str, str]:
        framework, dependencies = await self._model_profile(model_id)

        experiment = await self._tracking.create_experiment(
            f"AutoRetrain: {model_id} ({reason.value})",
            {
                "description": f"Automated retraining of {model_id} triggered by {reason.value}",
                "tags": ["auto-retrain", reason.value, model_id],
                "metadata": {"model_id": model_id, "reason": reason.value, "event": event},
            },
        )
        environment = await self._environments.create_environment(
            f"AutoRetrainEnv-{model_id}-{int(self._clock().timestamp() * 1000)}",
            framework,
            {"packages": dependencies, "tags": ["auto-retrain", model_id]},
        )
        await self._tracking.link_environment(experiment.id, environment.id)
        started = await self._environments.start_environment(
            environment.id,
            {
                "model_id": model_id,
                "experiment_id": experiment.id,
                "reason": reason.value,
                "event": event,
            },
        )
        if not started:
            raise EnvironmentProvisioningError(
                f"Training environment {environment.id} did not start")
        return experiment.id, environment.id

    async def _record(self, entry: RetrainAuditEntry) -> RetrainAuditEntry:
        await self._audit_log.append(entry.to_dict())
        if self._pubsub is not None:
            await self._pubsub.publish(_STATUS_EVENTS[entry.status].create(
                self._source_module,
                model_id=entry.model_id,
                reason=entry.reason.value,
                experiment_id=entry.experiment_id,
                environment_id=entry.environment_id,
                error=entry.error,
            ))
        return entry

    async def _send_notification(self, entry: RetrainAuditEntry) -> None:
        if self._notify is None:
            return
        try:
            await _resolve(self._notify(entry))
        except Exception:
            self.logger.exception(
                f"Retraining notification callback failed for {entry.model_id}",
                source_module=self._source_module,
            )

    # --- Queries ---

    async def get_retrain_history(self, model_id: str) -> list[RetrainAuditEntry]:
        """Return a model's audit entries in the order they were written."""
        return [
            RetrainAuditEntry.from_dict(record)
            for record in await self._audit_log.read()
            if record.get("model_id") == model_id
        ]

    async def get_last_retrain_status(self, model_id: str) -> RetrainAuditEntry | None:
        """Return the most recent audit entry of a model."""
        history = await self.get_retrain_history(model_id)
        return history[-1] if history else None

    async def get_next_eligible_retrain_time(self, model_id: str) -> datetime:
        """Return when the cooldown of a model ends; now if it was never retrained."""
        await self.initialize()
        last = self._last_retrain.get(model_id)
        if last is None:
            return self._clock()
        return last + self._cooldown(model_id)
