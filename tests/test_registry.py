"""Tests for the model registry."""

import asyncio
import hashlib

import pytest

from modelops.core.events import EventType
from modelops.exceptions import (
    InvalidParameterError,
    InvalidStageTransitionError,
    ModelAlreadyExistsError,
    ModelNotFoundError,
    ModelVersionNotFoundError,
    StorageError,
)
from modelops.model_lifecycle.enums import ModelStage, ModelStatus
from modelops.model_lifecycle.registry import (
    ModelRegistry,
    is_valid_stage_transition,
    parse_model_id,
)


@pytest.mark.asyncio
async def test_register_model_rejects_duplicates(registry: ModelRegistry) -> None:
    model = await registry.register_model(
        "fraud-detector", {"description": "Card fraud", "tags": ["fraud"]})

    assert model.name == "fraud-detector"
    assert model.tags == ["fraud"]
    assert model.latest_version is None

    with pytest.raises(ModelAlreadyExistsError):
        await registry.register_model("fraud-detector")


@pytest.mark.asyncio
@pytest.mark.parametrize("name", ["", "bad@name"])
async def test_register_model_rejects_invalid_names(registry: ModelRegistry, name: str) -> None:
    with pytest.raises(InvalidParameterError):
        await registry.register_model(name)


@pytest.mark.asyncio
async def test_new_versions_start_as_draft_development(registry: ModelRegistry) -> None:
    await registry.register_model("churn")
    version = await registry.add_model_version(
        "churn", "ext-1", {"framework": "xgboost", "dependencies": ["xgboost==2.0"]})

    assert version.version == "v1"
    assert version.version_number == 1
    assert version.status == ModelStatus.DRAFT
    assert version.stage == ModelStage.DEVELOPMENT
    assert version.qualified_id == "churn@v1"
    assert version.framework == "xgboost"

    model = await registry.get_model("churn")
    assert model.latest_version == "v1"


@pytest.mark.asyncio
async def test_version_numbers_are_unique_under_concurrent_adds(registry: ModelRegistry) -> None:
    await registry.register_model("ranker")

    versions = await asyncio.gather(
        *(registry.add_model_version("ranker", f"ext-{i}") for i in range(12)))

    numbers = sorted(v.version_number for v in versions)
    assert numbers == list(range(1, 13))
    model = await registry.get_model("ranker")
    assert model.latest_version == "v12"
    assert len({v.version for v in model.versions}) == 12


@pytest.mark.asyncio
async def test_add_version_to_unknown_model(registry: ModelRegistry) -> None:
    with pytest.raises(ModelNotFoundError):
        await registry.add_model_version("missing", "ext-1")


@pytest.mark.asyncio
async def test_import_model_registers_on_first_use(registry: ModelRegistry) -> None:
    first = await registry.import_model("imported", "ext-a", {"tags": ["external"]})
    second = await registry.import_model("imported", "ext-b")

    assert (first.version, second.version) == ("v1", "v2")
    model = await registry.get_model("imported")
    assert model.tags == ["external"]


@pytest.mark.asyncio
async def test_promoting_to_production_archives_previous_holder(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")

    await registry.update_model_version_status("fraud", "v1", ModelStatus.PRODUCTION)
    await registry.update_model_version_status("fraud", "v2", "production")

    model = await registry.get_model("fraud")
    assert model.production_version == "v2"
    assert model.get_version("v1").status == ModelStatus.ARCHIVED
    assert model.get_version("v2").status == ModelStatus.PRODUCTION
    assert [v.version for v in model.versions if v.status == ModelStatus.PRODUCTION] == ["v2"]

    production = await registry.get_production_version("fraud")
    assert production.version == "v2"


@pytest.mark.asyncio
async def test_promoting_to_staging_returns_previous_holder_to_draft(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")

    await registry.update_model_version_status("fraud", "v1", ModelStatus.STAGING)
    await registry.update_model_version_status("fraud", "v2", ModelStatus.STAGING)

    model = await registry.get_model("fraud")
    assert model.staging_version == "v2"
    assert model.get_version("v1").status == ModelStatus.DRAFT
    assert (await registry.get_staging_version("fraud")).version == "v2"

    await registry.update_model_version_status("fraud", "v2", ModelStatus.ARCHIVED)
    with pytest.raises(ModelVersionNotFoundError):
        await registry.get_staging_version("fraud")


@pytest.mark.asyncio
async def test_demoting_production_version_clears_pointer(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.update_model_version_status("fraud", "v1", ModelStatus.PRODUCTION)

    await registry.update_model_version_status("fraud", "v1", ModelStatus.ARCHIVED)

    model = await registry.get_model("fraud")
    assert model.production_version is None
    with pytest.raises(ModelVersionNotFoundError):
        await registry.get_production_version("fraud")


@pytest.mark.asyncio
async def test_production_state_round_trips_through_store(
    config, logger, store, registry: ModelRegistry,
) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")
    await registry.update_model_version_status("fraud", "v1", ModelStatus.PRODUCTION)
    await registry.update_model_version_status("fraud", "v2", ModelStatus.PRODUCTION)

    reloaded = ModelRegistry(config, logger, store)
    await reloaded.initialize()

    model = await reloaded.get_model("fraud")
    assert model.production_version == "v2"
    assert model.get_version("v1").status == ModelStatus.ARCHIVED
    history = model.get_version("v1").history
    assert [(h["from"], h["to"]) for h in history] == [
        ("draft", "production"), ("production", "archived")]


@pytest.mark.asyncio
async def test_stage_moves_forward_only(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")

    await registry.update_model_version_stage("fraud", "v1", ModelStage.VALIDATION)
    await registry.update_model_version_stage("fraud", "v1", ModelStage.DEPLOYMENT)

    with pytest.raises(InvalidStageTransitionError):
        await registry.update_model_version_stage("fraud", "v1", ModelStage.TESTING)

    version = await registry.get_model_version("fraud", "v1")
    assert version.stage == ModelStage.DEPLOYMENT


@pytest.mark.asyncio
async def test_retired_is_terminal(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")

    await registry.update_model_version_stage("fraud", "v1", ModelStage.RETIRED)

    with pytest.raises(InvalidStageTransitionError):
        await registry.update_model_version_stage("fraud", "v1", ModelStage.MONITORING)


@pytest.mark.asyncio
async def test_stage_transitions_unenforced_when_disabled(make_config, logger, store) -> None:
    config = make_config({"registry": {"enforce_stage_transitions": False}})
    registry = ModelRegistry(config, logger, store)
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")

    await registry.update_model_version_stage("fraud", "v1", ModelStage.MONITORING)
    version = await registry.update_model_version_stage("fraud", "v1", ModelStage.TESTING)

    assert version.stage == ModelStage.TESTING


@pytest.mark.parametrize(
    ("current", "target", "allowed"),
    [
        (ModelStage.DEVELOPMENT, ModelStage.VALIDATION, True),
        (ModelStage.DEVELOPMENT, ModelStage.TESTING, True),
        (ModelStage.VALIDATION, ModelStage.TESTING, True),
        (ModelStage.TESTING, ModelStage.DEPLOYMENT, True),
        (ModelStage.DEPLOYMENT, ModelStage.MONITORING, True),
        (ModelStage.MONITORING, ModelStage.MONITORING, True),
        (ModelStage.MONITORING, ModelStage.RETIRED, True),
        (ModelStage.TESTING, ModelStage.VALIDATION, False),
        (ModelStage.MONITORING, ModelStage.DEVELOPMENT, False),
        (ModelStage.RETIRED, ModelStage.DEVELOPMENT, False),
    ],
)
def test_stage_transition_table(current: ModelStage, target: ModelStage, allowed: bool) -> None:
    assert is_valid_stage_transition(current, target) is allowed


def test_parse_model_id() -> None:
    assert parse_model_id("fraud@v3") == ("fraud", "v3")
    assert parse_model_id("fraud") == ("fraud", None)
    assert parse_model_id("fraud@") == ("fraud", None)


@pytest.mark.asyncio
async def test_resolve_model_version_defaults_to_latest(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")

    _, latest = await registry.resolve_model_version("fraud")
    _, pinned = await registry.resolve_model_version("fraud@v1")

    assert latest.version == "v2"
    assert pinned.version == "v1"
    with pytest.raises(ModelVersionNotFoundError):
        await registry.resolve_model_version("fraud@v9")


@pytest.mark.asyncio
async def test_metrics_are_merged(registry: ModelRegistry) -> None:
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1", {"metrics": {"accuracy": 0.8}})

    version = await registry.add_model_version_metrics(
        "fraud", "v1", {"accuracy": 0.9, "auc": 0.95})

    assert version.metrics == {"accuracy": 0.9, "auc": 0.95}


@pytest.mark.asyncio
async def test_artifact_is_copied_with_digest(registry: ModelRegistry, tmp_path) -> None:
    source = tmp_path / "model.bin"
    source.write_bytes(b"weights")
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")

    artifact = await registry.add_model_version_artifact("fraud", "v1", source, "model")

    assert artifact["size"] == len(b"weights")
    assert artifact["md5"] == hashlib.md5(b"weights").hexdigest()  # noqa: S324
    version = await registry.get_model_version("fraud", "v1")
    assert version.artifacts[0]["id"] == artifact["id"]

    with pytest.raises(InvalidParameterError):
        await registry.add_model_version_artifact("fraud", "v1", tmp_path / "missing.bin")


@pytest.mark.asyncio
async def test_search_and_delete(registry: ModelRegistry) -> None:
    await registry.register_model("a", {"tags": ["vision"]})
    await registry.register_model("b", {"tags": ["nlp"]})

    found = await registry.search_models_by_tags(["nlp", "audio"])
    assert [m.name for m in found] == ["b"]

    await registry.delete_model("b")
    assert [m.name for m in await registry.get_models()] == ["a"]
    with pytest.raises(ModelNotFoundError):
        await registry.delete_model("b")


@pytest.mark.asyncio
async def test_status_change_publishes_updates_for_displaced_version(
    registry: ModelRegistry, pubsub, recorder,
) -> None:
    recorder.listen(pubsub, EventType.MODEL_VERSION_UPDATED)
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")
    await registry.update_model_version_status("fraud", "v1", ModelStatus.PRODUCTION)
    await registry.update_model_version_status("fraud", "v2", ModelStatus.PRODUCTION)
    await pubsub.drain()

    changes = [(e.version, e.old_value, e.new_value) for e in recorder.events]
    assert changes == [
        ("v1", "draft", "production"),
        ("v1", "production", "archived"),
        ("v2", "draft", "production"),
    ]


@pytest.mark.asyncio
async def test_failed_write_leaves_registry_unchanged(config, logger, failing_store) -> None:
    registry = ModelRegistry(config, logger, failing_store)
    await registry.register_model("fraud")
    await registry.add_model_version("fraud", "ext-1")
    await registry.add_model_version("fraud", "ext-2")
    await registry.update_model_version_status("fraud", "v1", ModelStatus.PRODUCTION)
    before = await registry.get_model("fraud")

    failing_store.failing.add(ModelRegistry.COLLECTION)
    with pytest.raises(StorageError):
        await registry.register_model("churn")
    with pytest.raises(StorageError):
        await registry.update_model_version_status("fraud", "v2", ModelStatus.PRODUCTION)

    assert await registry.get_model("fraud") == before
    assert (await registry.get_production_version("fraud")).version == "v1"
    assert [m.name for m in await registry.get_models()] == ["fraud"]
    with pytest.raises(ModelNotFoundError):
        await registry.get_model("churn")

    failing_store.failing.clear()
    reloaded = ModelRegistry(config, logger, failing_store)
    await reloaded.initialize()
    assert await reloaded.get_model("fraud") == before
