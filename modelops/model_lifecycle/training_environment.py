"""Training environment provisioning contract and an in-process implementation."""

from __future__ import annotations

import asyncio
import contextlib
import copy
import uuid
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import TYPE_CHECKING, Any, Protocol, runtime_checkable

from modelops.exceptions import EnvironmentNotFoundError, InvalidStateError
from modelops.utils.time_utils import to_iso, utc_now

from .enums import EnvironmentStatus

if TYPE_CHECKING:
    from modelops.logger_service import LoggerService


@dataclass
class TrainingEnvironment:
    """A provisioned environment a training job runs in."""

    id: str
    name: str
    framework: str = "custom"
    status: EnvironmentStatus = EnvironmentStatus.CREATED
    packages: list[str] = field(default_factory=list)
    tags: list[str] = field(default_factory=list)
    options: dict[str, Any] = field(default_factory=dict)
    params: dict[str, Any] = field(default_factory=dict)
    error: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    started_at: datetime | None = None
    completed_at: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for logging and serialization."""
        return {
            "id": self.id,
            "name": self.name,
            "framework": self.framework,
            "status": self.status.value,
            "packages": self.packages,
            "tags": self.tags,
            "options": self.options,
            "params": self.params,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "started_at": to_iso(self.started_at),
            "completed_at": to_iso(self.completed_at),
        }


TrainingRunner = Callable[[TrainingEnvironment, dict[str, Any]], Awaitable[None]]


@runtime_checkable
class TrainingEnvironmentService(Protocol):
    """Contract of the external training-environment provisioner."""

    async def create_environment(
        self, name: str, framework: str, options: dict[str, Any] | None = None,
    ) -> TrainingEnvironment:
        """Provision an environment and return it."""
        ...

    async def start_environment(self, environment_id: str, params: dict[str, Any] | None = None) -> bool:
        """Start a training job in the environment."""
        ...

    async def stop_environment(self, environment_id: str) -> bool:
        """Stop the environment's job."""
        ...

    async def get_environment(self, environment_id: str) -> TrainingEnvironment:
        """Return the environment."""
        ...


class LocalTrainingEnvironmentService:
    """Keep environments in memory and run an optional coroutine per started job.

    Without a runner a started environment stays ``running`` until stopped. With
    one, the runner is executed as a detached task and the environment ends up
    ``completed`` or ``failed``.
    """

    def __init__(self, logger: LoggerService, runner: TrainingRunner | None = None) -> None:
        """Initialize the service with an optional training runner."""
        self.logger = logger
        self._runner = runner
        self._source_module = self.__class__.__name__
        self._environments: dict[str, TrainingEnvironment] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def _get(self, environment_id: str) -> TrainingEnvironment:
        environment = self._environments.get(environment_id)
        if environment is None:
            raise EnvironmentNotFoundError(environment_id)
        return environment

    async def create_environment(
        self, name: str, framework: str, options: dict[str, Any] | None = None,
    ) -> TrainingEnvironment:
        options = dict(options or {})
        environment = TrainingEnvironment(
            id=f"env-{uuid.uuid4().hex[:16]}",
            name=name,
            framework=framework or "custom",
            packages=list(options.pop("packages", [])),
            tags=list(options.pop("tags", [])),
            options=options,
        )
        self._environments[environment.id] = environment
        self.logger.info(
            f"Created training environment {environment.id} ({environment.framework})",
            source_module=self._source_module,
            context={"name": name},
        )
        return copy.deepcopy(environment)

    async def start_environment(self, environment_id: str, params: dict[str, Any] | None = None) -> bool:
        environment = self._get(environment_id)
        if environment.status == EnvironmentStatus.RUNNING:
            raise InvalidStateError("Environment", environment_id, environment.status.value)

        environment.status = EnvironmentStatus.RUNNING
        environment.params = dict(params or {})
        environment.started_at = utc_now()
        environment.completed_at = None
        environment.error = None

        if self._runner is not None:
            task = asyncio.create_task(self._run(environment, self._runner))
            self._tasks[environment_id] = task
            task.add_done_callback(lambda _: self._tasks.pop(environment_id, None))

        self.logger.info(
            f"Started training environment {environment_id}",
            source_module=self._source_module,
        )
        return True

    async def _run(self, environment: TrainingEnvironment, runner: TrainingRunner) -> None:
        try:
            await runner(copy.deepcopy(environment), dict(environment.params))
            environment.status = EnvironmentStatus.COMPLETED
        except asyncio.CancelledError:
            environment.status = EnvironmentStatus.STOPPED
            raise
        except Exception as e:
            environment.status = EnvironmentStatus.FAILED
            environment.error = str(e)
            self.logger.exception(
                f"Training job in environment {environment.id} failed",
                source_module=self._source_module,
            )
        finally:
            environment.completed_at = utc_now()

    async def stop_environment(self, environment_id: str) -> bool:
        environment = self._get(environment_id)
        task = self._tasks.get(environment_id)
        if task is not None and not task.done():
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        if environment.status == EnvironmentStatus.RUNNING:
            environment.status = EnvironmentStatus.STOPPED
            environment.completed_at = utc_now()
        return True

    async def get_environment(self, environment_id: str) -> TrainingEnvironment:
        return copy.deepcopy(self._get(environment_id))

    async def list_environments(self) -> list[TrainingEnvironment]:
        """Return all environments, oldest first."""
        return [copy.deepcopy(e) for e in
                sorted(self._environments.values(), key=lambda e: e.created_at)]

    async def close(self) -> None:
        """Stop every running job."""
        for environment_id in list(self._tasks):
            await self.stop_environment(environment_id)
