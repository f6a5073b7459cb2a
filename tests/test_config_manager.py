"""Tests for configuration loading and validation."""

from pathlib import Path

import pytest
import yaml

from modelops.config_manager import ConfigManager


def _write(path: Path, data: dict) -> str:
    path.write_text(yaml.safe_dump(data))
    return str(path)


def test_typed_getters(tmp_path: Path) -> None:
    config = ConfigManager(_write(tmp_path / "config.yaml", {
        "drift": {"thresholds": {"high": "0.6"}, "detection_interval_seconds": 30},
        "performance": {"collect_system_metrics": "yes"},
        "cicd": {"default_stages": ["validation", "production"]},
        "registry": {"artifacts_path": "data/artifacts"},
    }))

    assert config.is_valid()
    assert config.get("registry.artifacts_path") == "data/artifacts"
    assert config.get("registry.missing.key", "fallback") == "fallback"
    assert config.get_float("drift.thresholds.high", 0.5) == 0.6
    assert config.get_int("drift.detection_interval_seconds", 60) == 30
    assert config.get_bool("performance.collect_system_metrics", default=False) is True
    assert config.get_list("cicd.default_stages") == ["validation", "production"]
    assert config.get_dict("drift.thresholds") == {"high": "0.6"}
    assert config.get_dict("registry.artifacts_path") == {}


def test_missing_file_uses_defaults(tmp_path: Path) -> None:
    config = ConfigManager(str(tmp_path / "absent.yaml"))

    assert config.is_valid()
    assert config.get("storage.backend", "json") == "json"


@pytest.mark.parametrize(
    ("data", "fragment"),
    [
        ({"storage": {"backend": "cassandra"}}, "storage.backend"),
        ({"storage": {"backend": "database"}}, "storage.database.url"),
        ({"drift": {"thresholds": {"low": 0.5, "medium": 0.2}}}, "strictly ascending"),
        ({"drift": {"thresholds": {"high": "lots"}}}, "drift.thresholds.high"),
        ({"performance": {"retention_days": 0}}, "performance.retention_days"),
        ({"retraining": {"cooldown_ms": -1}}, "retraining.cooldown_ms"),
        ({"retraining": {"retrain_on_drift_severity": ["extreme"]}}, "extreme"),
        ({"retraining": {"models": {"fraud@v1": {"cooldown_ms": "soon"}}}}, "fraud@v1"),
        ({"cicd": {"default_stages": ["validation", "qa"]}}, "qa"),
        ({"cicd": {"evaluation_timeout_seconds": 0}}, "evaluation_timeout_seconds"),
    ],
)
def test_validation_errors(tmp_path: Path, monkeypatch, data: dict, fragment: str) -> None:
    monkeypatch.delenv("MODELOPS_DATABASE_URL", raising=False)
    config = ConfigManager(_write(tmp_path / "config.yaml", data))

    assert not config.is_valid()
    assert any(fragment in error for error in config.validation_errors)


def test_database_url_falls_back_to_environment(tmp_path: Path, monkeypatch) -> None:
    monkeypatch.setenv("MODELOPS_DATABASE_URL", "sqlite+aiosqlite:///modelops.db")
    config = ConfigManager(_write(tmp_path / "config.yaml", {"storage": {"backend": "database"}}))

    assert config.is_valid()
    assert config.get_database_url() == "sqlite+aiosqlite:///modelops.db"


def test_model_overrides(tmp_path: Path) -> None:
    config = ConfigManager(_write(tmp_path / "config.yaml", {
        "retraining": {"cooldown_ms": 1000, "models": {"fraud@v1": {"cooldown_ms": 5}}},
    }))

    assert config.get_model_overrides("retraining", "fraud@v1") == {"cooldown_ms": 5}
    assert config.get_model_overrides("retraining", "churn@v1") == {}


def test_reload_keeps_previous_config_when_invalid(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    config = ConfigManager(_write(path, {"retraining": {"cooldown_ms": 1000}}))

    _write(path, {"retraining": {"cooldown_ms": -5}})
    errors = config.reload_config()

    assert errors
    assert config.get_int("retraining.cooldown_ms") == 1000

    _write(path, {"retraining": {"cooldown_ms": 2000}})
    assert config.reload_config() == []
    assert config.get_int("retraining.cooldown_ms") == 2000


def test_malformed_yaml_loads_as_empty(tmp_path: Path) -> None:
    path = tmp_path / "config.yaml"
    path.write_text("storage: [unclosed\n")

    config = ConfigManager(str(path))

    assert config.get("storage") is None
    assert config.is_valid()
