"""Centralized model registry for version control and metadata management."""

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
    ModelDeletedEvent,
    ModelRegisteredEvent,
    ModelVersionAddedEvent,
    ModelVersionUpdatedEvent,
)
from modelops.core.locks import KeyedLocks
from modelops.exceptions import (
    InvalidParameterError,
    InvalidStageTransitionError,
    ModelAlreadyExistsError,
    ModelNotFoundError,
    ModelVersionNotFoundError,
    StorageError,
)
from modelops.utils.files import copy_with_digest
from modelops.utils.time_utils import from_iso, to_iso, utc_now

from .enums import ModelStage, ModelStatus

if TYPE_CHECKING:
    from modelops.config_manager import ConfigManager
    from modelops.core.pubsub import PubSubManager
    from modelops.dal.document_store import DocumentStore
    from modelops.logger_service import LoggerService


# Forward order of the non-terminal stages. RETIRED is reachable from all of them.
_STAGE_ORDER: dict[ModelStage, int] = {
    ModelStage.DEVELOPMENT: 0,
    ModelStage.VALIDATION: 1,
    ModelStage.TESTING: 2,
    ModelStage.DEPLOYMENT: 3,
    ModelStage.MONITORING: 4,
}


def is_valid_stage_transition(current: ModelStage, target: ModelStage) -> bool:
    """Return whether ``current -> target`` is allowed by the forward-only stage table."""
    if current == target:
        return True
    if current == ModelStage.RETIRED:
        return False
    if target == ModelStage.RETIRED:
        return True
    return _STAGE_ORDER[target] > _STAGE_ORDER[current]


def parse_model_id(model_id: str) -> tuple[str, str | None]:
    """Split ``name@version`` into its parts; a bare name yields ``(name, None)``."""
    name, sep, version = model_id.partition("@")
    return name, (version or None) if sep else None


def coerce_enum(enum_cls: type, value: Any, parameter: str) -> Any:  # noqa: ANN401
    """Convert a raw value to ``enum_cls`` or raise InvalidParameterError."""
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        allowed = [member.value for member in enum_cls]  # type: ignore[attr-defined]
        raise InvalidParameterError(parameter, value, allowed) from None


@dataclass
class ModelVersion:
    """One registered version of a model."""

    model_name: str
    version: str
    version_number: int
    model_id: str
    status: ModelStatus = ModelStatus.DRAFT
    stage: ModelStage = ModelStage.DEVELOPMENT
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)
    created_by: str = "system"
    description: str = ""
    metrics: dict[str, Any] = field(default_factory=dict)
    parameters: dict[str, Any] = field(default_factory=dict)
    tags: list[str] = field(default_factory=list)
    artifacts: list[dict[str, Any]] = field(default_factory=list)
    experiment_id: str | None = None
    dataset_id: str | None = None
    pipeline_id: str | None = None
    model_type: str = "custom"
    framework: str = "custom"
    runtime: str | None = None
    dependencies: list[str] = field(default_factory=list)
    history: list[dict[str, Any]] = field(default_factory=list)

    @property
    def qualified_id(self) -> str:
        """The ``name@version`` identifier used by evaluations and pipelines."""
        return f"{self.model_name}@{self.version}"

    def record_transition(self, field_name: str, old: str, new: str, at: datetime) -> None:
        """Append a status or stage change to the version history."""
        self.history.append(
            {"field": field_name, "from": old, "to": new, "at": at.isoformat()},
        )
        self.updated_at = at

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "model_name": self.model_name,
            "version": self.version,
            "version_number": self.version_number,
            "model_id": self.model_id,
            "status": self.status.value,
            "stage": self.stage.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "created_by": self.created_by,
            "description": self.description,
            "metrics": self.metrics,
            "parameters": self.parameters,
            "tags": self.tags,
            "artifacts": self.artifacts,
            "experiment_id": self.experiment_id,
            "dataset_id": self.dataset_id,
            "pipeline_id": self.pipeline_id,
            "model_type": self.model_type,
            "framework": self.framework,
            "runtime": self.runtime,
            "dependencies": self.dependencies,
            "history": self.history,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ModelVersion:
        """Create a version from its stored form."""
        data = dict(data)
        data["status"] = ModelStatus(data.get("status", ModelStatus.DRAFT.value))
        data["stage"] = ModelStage(data.get("stage", ModelStage.DEVELOPMENT.value))
        for date_field in ("created_at", "updated_at"):
            data[date_field] = from_iso(data.get(date_field)) or utc_now()
        return cls(**data)


@dataclass
class Model:
    """A registered model name and its versions."""

    name: str
    description: str = ""
    tags: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    versions: list[ModelVersion] = field(default_factory=list)
    latest_version: str | None = None
    production_version: str | None = None
    staging_version: str | None = None
    created_at: datetime = field(default_factory=utc_now)
    updated_at: datetime = field(default_factory=utc_now)

    def get_version(self, version: str) -> ModelVersion | None:
        """Return the version with the given label, if any."""
        return next((v for v in self.versions if v.version == version), None)

    def next_version_number(self) -> int:
        """Return the next unused version number."""
        return max((v.version_number for v in self.versions), default=0) + 1

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for storage."""
        return {
            "name": self.name,
            "description": self.description,
            "tags": self.tags,
            "metadata": self.metadata,
            "versions": [v.to_dict() for v in self.versions],
            "latest_version": self.latest_version,
            "production_version": self.production_version,
            "staging_version": self.staging_version,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Model:
        """Create a model from its stored form."""
        data = dict(data)
        data["versions"] = [ModelVersion.from_dict(v) for v in data.get("versions", [])]
        for date_field in ("created_at", "updated_at"):
            data[date_field] = from_iso(data.get(date_field)) or utc_now()
        return cls(**data)


class ModelRegistry:
    """Authoritative store of model names, versions, stage/status, metrics and artifacts.

    Every mutating call works on a copy of the model, persists the whole registry
    document and only then swaps the copy in, so a failed write leaves the registry
    untouched. Calls for the same model are serialized with a per-model lock.
    """

    COLLECTION = "registry"

    def __init__(
        self,
        config: ConfigManager,
        logger: LoggerService,
        store: DocumentStore,
        pubsub: PubSubManager | None = None,
    ) -> None:
        """Initialize the model registry.

        Args:
            config: Configuration manager
            logger: Logger service
            store: Document store holding the ``registry`` collection
            pubsub: Optional event bus for registry events
        """
        self.config = config
        self.logger = logger
        self._store = store
        self._pubsub = pubsub
        self._source_module = self.__class__.__name__

        self._enforce_stage_transitions = config.get_bool(
            "registry.enforce_stage_transitions", default=True)
        self._artifacts_path = Path(
            config.get("registry.artifacts_path", "data/registry/artifacts"))

        self._models: dict[str, Model] = {}
        self._loaded = False
        self._locks = KeyedLocks()
        self._write_lock = asyncio.Lock()

    async def initialize(self) -> None:
        """Load the registry document from the store."""
        if self._loaded:
            return
        document = await self._store.load(self.COLLECTION) or {}
        self._models = {
            name: Model.from_dict(data) for name, data in document.get("models", {}).items()
        }
        self._loaded = True
        self.logger.info(
            f"Model registry loaded with {len(self._models)} models",
            source_module=self._source_module,
        )

    async def _ensure_loaded(self) -> None:
        if not self._loaded:
            await self.initialize()

    async def _commit(self, name: str, model: Model | None) -> None:
        """Persist the registry with ``model`` replacing (or, if None, removing) ``name``."""
        async with self._write_lock:
            snapshot = dict(self._models)
            if model is None:
                snapshot.pop(name, None)
            else:
                snapshot[name] = model
            document = {
                "last_updated": utc_now().isoformat(),
                "models": {n: m.to_dict() for n, m in snapshot.items()},
            }
            await self._store.save(self.COLLECTION, document)
            self._models = snapshot

    async def _publish(self, event: Event) -> None:
        if self._pubsub is not None:
            await self._pubsub.publish(event)

    def _working_copy(self, name: str) -> Model:
        model = self._models.get(name)
        if model is None:
            raise ModelNotFoundError(name)
        return copy.deepcopy(model)

    @staticmethod
    def _require_version(model: Model, version: str) -> ModelVersion:
        model_version = model.get_version(version)
        if model_version is None:
            raise ModelVersionNotFoundError(model.name, version)
        return model_version

    # --- Registration ---

    async def register_model(self, name: str, metadata: dict[str, Any] | None = None) -> Model:
        """Register a new model name.

        Args:
            name: Unique model name (must not contain '@')
            metadata: Optional ``description``, ``tags`` and free-form ``metadata``

        Returns:
            The registered model

        Raises:
            ModelAlreadyExistsError: If the name is taken
        """
        await self._ensure_loaded()
        async with self._locks.hold(name):
            model = await self._register_locked(name, metadata or {})
        return copy.deepcopy(model)

    async def _register_locked(self, name: str, metadata: dict[str, Any]) -> Model:
        if not name or "@" in name:
            raise InvalidParameterError(
                "name", name, message="Model name must be non-empty and must not contain '@'")
        if name in self._models:
            raise ModelAlreadyExistsError(name)

        model = Model(
            name=name,
            description=metadata.get("description", ""),
            tags=list(metadata.get("tags", [])),
            metadata=dict(metadata.get("metadata", {})),
        )
        try:
            await self._commit(name, model)
        except StorageError:
            self.logger.exception(
                f"Failed to persist registration of model {name}",
                source_module=self._source_module,
            )
            raise

        self.logger.info(
            f"Registered model {name}",
            source_module=self._source_module,
            context={"model_name": name},
        )
        await self._publish(ModelRegisteredEvent.create(self._source_module, model_name=name))
        return model

    async def add_model_version(
        self,
        name: str,
        external_model_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> ModelVersion:
        """Add a new version to a registered model.

        The version label is ``v<n>`` where ``n`` is one more than the highest number
        ever assigned to this model. New versions start as draft/development.
        """
        await self._ensure_loaded()
        async with self._locks.hold(name):
            model_version = await self._add_version_locked(
                name, external_model_id, metadata or {})
        return copy.deepcopy(model_version)

    async def _add_version_locked(
        self, name: str, external_model_id: str, metadata: dict[str, Any],
    ) -> ModelVersion:
        model = self._working_copy(name)
        number = model.next_version_number()
        now = utc_now()
        model_version = ModelVersion(
            model_name=name,
            version=f"v{number}",
            version_number=number,
            model_id=external_model_id,
            created_at=now,
            updated_at=now,
            created_by=metadata.get("created_by", "system"),
            description=metadata.get("description", ""),
            metrics=dict(metadata.get("metrics", {})),
            parameters=dict(metadata.get("parameters", {})),
            tags=list(metadata.get("tags", [])),
            experiment_id=metadata.get("experiment_id"),
            dataset_id=metadata.get("dataset_id"),
            pipeline_id=metadata.get("pipeline_id"),
            model_type=metadata.get("type", metadata.get("model_type", "custom")),
            framework=metadata.get("framework", "custom"),
            runtime=metadata.get("runtime"),
            dependencies=list(metadata.get("dependencies", [])),
        )
        model.versions.append(model_version)
        model.latest_version = model_version.version
        model.updated_at = now

        await self._commit(name, model)
        self.logger.info(
            f"Added version {model_version.version} to model {name}",
            source_module=self._source_module,
            context={"model_name": name, "external_model_id": external_model_id},
        )
        await self._publish(ModelVersionAddedEvent.create(
            self._source_module,
            model_name=name,
            version=model_version.version,
            model_id=external_model_id,
        ))
        return model_version

    async def import_model(
        self,
        name: str,
        external_model_id: str,
        metadata: dict[str, Any] | None = None,
    ) -> ModelVersion:
        """Register ``name`` if needed, then add a version for an externally built model."""
        await self._ensure_loaded()
        metadata = metadata or {}
        async with self._locks.hold(name):
            if name not in self._models:
                await self._register_locked(name, metadata)
            model_version = await self._add_version_locked(name, external_model_id, metadata)
        return copy.deepcopy(model_version)

    # --- Lifecycle transitions ---

    async def update_model_version_status(
        self, name: str, version: str, status: ModelStatus | str,
    ) -> ModelVersion:
        """Change a version's status and keep the production/staging pointers consistent.

        Promoting to production or staging displaces the previous holder of that
        pointer (production -> archived, staging -> draft) in the same write, so at
        most one version per model holds each status.
        """
        await self._ensure_loaded()
        new_status: ModelStatus = coerce_enum(ModelStatus, status, "status")

        async with self._locks.hold(name):
            model = self._working_copy(name)
            model_version = self._require_version(model, version)
            old_status = model_version.status
            now = utc_now()
            displaced: list[tuple[ModelVersion, ModelStatus]] = []

            if new_status == ModelStatus.PRODUCTION:
                displaced += self._displace(model, model.production_version, version,
                                            ModelStatus.ARCHIVED, now)
                model.production_version = version
            elif new_status == ModelStatus.STAGING:
                displaced += self._displace(model, model.staging_version, version,
                                            ModelStatus.DRAFT, now)
                model.staging_version = version

            if model.production_version == version and new_status != ModelStatus.PRODUCTION:
                model.production_version = None
            if model.staging_version == version and new_status != ModelStatus.STAGING:
                model.staging_version = None

            if old_status != new_status:
                model_version.status = new_status
                model_version.record_transition("status", old_status.value, new_status.value, now)
            model.updated_at = now

            try:
                await self._commit(name, model)
            except StorageError:
                self.logger.exception(
                    f"Failed to persist status change for {name}@{version}",
                    source_module=self._source_module,
                )
                raise

        self.logger.info(
            f"Updated status of {name}@{version}: {old_status.value} -> {new_status.value}",
            source_module=self._source_module,
            context={"displaced": [v.version for v, _ in displaced]},
        )
        for other, previous in displaced:
            await self._publish(ModelVersionUpdatedEvent.create(
                self._source_module,
                model_name=name,
                version=other.version,
                field_name="status",
                old_value=previous.value,
                new_value=other.status.value,
            ))
        await self._publish(ModelVersionUpdatedEvent.create(
            self._source_module,
            model_name=name,
            version=version,
            field_name="status",
            old_value=old_status.value,
            new_value=new_status.value,
        ))
        return copy.deepcopy(model_version)

    @staticmethod
    def _displace(
        model: Model,
        holder: str | None,
        incoming: str,
        fallback: ModelStatus,
        now: datetime,
    ) -> list[tuple[ModelVersion, ModelStatus]]:
        if holder is None or holder == incoming:
            return []
        previous = model.get_version(holder)
        if previous is None:
            return []
        old_status = previous.status
        previous.status = fallback
        previous.record_transition("status", old_status.value, fallback.value, now)
        return [(previous, old_status)]

    async def update_model_version_stage(
        self, name: str, version: str, stage: ModelStage | str,
    ) -> ModelVersion:
        """Move a version to another lifecycle stage.

        Raises:
            InvalidStageTransitionError: If the move is not in the forward-only table
        """
        await self._ensure_loaded()
        new_stage: ModelStage = coerce_enum(ModelStage, stage, "stage")

        async with self._locks.hold(name):
            model = self._working_copy(name)
            model_version = self._require_version(model, version)
            old_stage = model_version.stage

            if self._enforce_stage_transitions and not is_valid_stage_transition(
                old_stage, new_stage,
            ):
                raise InvalidStageTransitionError(
                    model_version.qualified_id, old_stage.value, new_stage.value)

            if old_stage == new_stage:
                return copy.deepcopy(model_version)

            now = utc_now()
            model_version.stage = new_stage
            model_version.record_transition("stage", old_stage.value, new_stage.value, now)
            model.updated_at = now
            await self._commit(name, model)

        self.logger.info(
            f"Updated stage of {name}@{version}: {old_stage.value} -> {new_stage.value}",
            source_module=self._source_module,
        )
        await self._publish(ModelVersionUpdatedEvent.create(
            self._source_module,
            model_name=name,
            version=version,
            field_name="stage",
            old_value=old_stage.value,
            new_value=new_stage.value,
        ))
        return copy.deepcopy(model_version)

    async def add_model_version_metrics(
        self, name: str, version: str, metrics: dict[str, Any],
    ) -> ModelVersion:
        """Merge metrics into a version."""
        await self._ensure_loaded()
        async with self._locks.hold(name):
            model = self._working_copy(name)
            model_version = self._require_version(model, version)
            model_version.metrics.update(metrics)
            model_version.updated_at = model.updated_at = utc_now()
            await self._commit(name, model)

        self.logger.debug(
            f"Added {len(metrics)} metrics to {name}@{version}",
            source_module=self._source_module,
        )
        await self._publish(ModelVersionUpdatedEvent.create(
            self._source_module,
            model_name=name,
            version=version,
            field_name="metrics",
            new_value=dict(metrics),
        ))
        return copy.deepcopy(model_version)

    async def add_model_version_artifact(
        self,
        name: str,
        version: str,
        artifact_path: str | Path,
        artifact_type: str = "model",
        metadata: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        """Copy a file into the registry's artifact area and attach it to a version."""
        await self._ensure_loaded()
        source = Path(artifact_path)
        if not source.is_file():
            raise InvalidParameterError(
                "artifact_path", str(source), message=f"Artifact file not found: {source}")

        async with self._locks.hold(name):
            model = self._working_copy(name)
            model_version = self._require_version(model, version)

            artifact_id = uuid.uuid4().hex[:16]
            destination = self._artifacts_path / name / version / f"{artifact_id}-{source.name}"
            try:
                size, digest = await asyncio.to_thread(copy_with_digest, source, destination)
            except OSError as e:
                raise StorageError("artifacts", "copy", str(e)) from e

            artifact = {
                "id": artifact_id,
                "type": artifact_type,
                "filename": source.name,
                "path": str(destination),
                "size": size,
                "md5": digest,
                "metadata": dict(metadata or {}),
                "created_at": to_iso(utc_now()),
            }
            model_version.artifacts.append(artifact)
            model_version.updated_at = model.updated_at = utc_now()
            try:
                await self._commit(name, model)
            except StorageError:
                destination.unlink(missing_ok=True)
                raise

        self.logger.info(
            f"Attached {artifact_type} artifact {source.name} to {name}@{version}",
            source_module=self._source_module,
            context={"artifact_id": artifact_id, "size": size},
        )
        await self._publish(ModelVersionUpdatedEvent.create(
            self._source_module,
            model_name=name,
            version=version,
            field_name="artifacts",
            new_value=artifact_id,
        ))
        return artifact

    # --- Reads ---

    async def get_model(self, name: str) -> Model:
        """Return a registered model."""
        await self._ensure_loaded()
        model = self._models.get(name)
        if model is None:
            raise ModelNotFoundError(name)
        return copy.deepcopy(model)

    async def get_models(self) -> list[Model]:
        """Return all registered models ordered by name."""
        await self._ensure_loaded()
        return [copy.deepcopy(self._models[name]) for name in sorted(self._models)]

    async def get_model_version(self, name: str, version: str) -> ModelVersion:
        """Return one version of a model."""
        model = await self.get_model(name)
        return self._require_version(model, version)

    async def resolve_model_version(self, model_id: str) -> tuple[Model, ModelVersion]:
        """Resolve ``name@version`` (or a bare name, meaning latest) to model and version."""
        name, version = parse_model_id(model_id)
        model = await self.get_model(name)
        label = version or model.latest_version
        if label is None:
            raise ModelVersionNotFoundError(name)
        return model, self._require_version(model, label)

    async def get_production_version(self, name: str) -> ModelVersion:
        """Return the version currently in production."""
        model = await self.get_model(name)
        if model.production_version is None:
            raise ModelVersionNotFoundError(
                name, message=f"Model {name} has no production version")
        return self._require_version(model, model.production_version)

    async def get_staging_version(self, name: str) -> ModelVersion:
        """Return the version currently in staging."""
        model = await self.get_model(name)
        if model.staging_version is None:
            raise ModelVersionNotFoundError(
                name, message=f"Model {name} has no staging version")
        return self._require_version(model, model.staging_version)

    async def search_models_by_tags(self, tags: list[str]) -> list[Model]:
        """Return models carrying any of the given tags."""
        wanted = set(tags)
        return [model for model in await self.get_models() if wanted & set(model.tags)]

    async def delete_model(self, name: str) -> None:
        """Remove a model and every version from the registry."""
        await self._ensure_loaded()
        async with self._locks.hold(name):
            if name not in self._models:
                raise ModelNotFoundError(name)
            await self._commit(name, None)
        self._locks.discard(name)

        self.logger.info(f"Deleted model {name}", source_module=self._source_module)
        await self._publish(ModelDeletedEvent.create(self._source_module, model_name=name))

