"""Configuration for the ModelOps lifecycle services.

Settings come from a single YAML file and are looked up with dot-separated
keys such as ``retraining.cooldown_ms``. Every typed getter takes a default,
so a partial (or missing) file still yields a working configuration.

The file is read at construction time and again only on ``reload_config``.
"""

import logging
import operator
import os
from collections.abc import Callable
from functools import reduce
from pathlib import Path
from typing import Any, TypeVar

import yaml

log = logging.getLogger(__name__)

_T = TypeVar("_T")

_TRUTHY = frozenset({"true", "1", "yes", "on"})


class ConfigManager:
    """Load, validate and serve the YAML configuration."""

    _SUPPORTED_BACKENDS = ("json", "database", "memory")
    _SEVERITY_LEVELS = ("low", "medium", "high", "critical")
    _PIPELINE_STAGES = ("validation", "testing", "staging", "production")

    def __init__(
        self,
        config_path: str = "config/config.yaml",
        logger_service: logging.Logger | None = None,
    ) -> None:
        """Read and validate ``config_path``.

        Args:
            config_path: YAML file to read. A missing file means all defaults.
            logger_service: Logger to report through; the module logger otherwise.
        """
        self._logger: logging.Logger = logger_service or log
        self._path = Path(config_path).resolve()
        self._config: dict | None = None
        self.validation_errors: list[str] = []

        self.load_config()
        self.validation_errors = self.validate_configuration()
        for error in self.validation_errors:
            self._logger.error("Invalid configuration in %s: %s", self._path, error)

    def _read_file(self) -> Any:  # noqa: ANN401
        if not self._path.exists():
            self._logger.warning("No configuration file at %s, using defaults", self._path)
            return {}
        try:
            with self._path.open("r") as f:
                return yaml.safe_load(f)
        except yaml.YAMLError:
            self._logger.exception("%s is not valid YAML, ignoring it", self._path)
        except OSError:
            self._logger.exception("Could not read %s", self._path)
        return {}

    def load_config(self) -> None:
        """(Re)read the YAML file into memory."""
        loaded = self._read_file()
        if loaded is None:
            # Empty document
            loaded = {}
        if not isinstance(loaded, dict):
            self._logger.error(
                "%s holds a %s at the top level, expected a mapping; ignoring it",
                self._path, type(loaded).__name__,
            )
            loaded = {}
        self._config = loaded
        self._logger.info("Configuration loaded from %s", self._path)

    def get(self, key: str, default: Any | None = None) -> Any:  # noqa: ANN401
        """Look up a dot-separated key.

        Example:
            config.get('drift.thresholds.high', 0.5)

        Returns:
            The value stored under ``key`` or ``default`` when any part of the
            path is missing or walks into a non-mapping.
        """
        if self._config is None:
            self._logger.warning("Configuration read before it was loaded")
            return default
        try:
            return reduce(operator.getitem, key.split("."), self._config)
        except (KeyError, TypeError):
            self._logger.debug("'%s' is not configured, using %r", key, default)
            return default

    def _coerce(self, key: str, default: _T, cast: Callable[[Any], _T]) -> _T:
        value = self.get(key, default)
        try:
            return cast(value)
        except (ValueError, TypeError) as e:
            self._logger.warning(
                "'%s' = %r is not a valid %s (%s); using %r",
                key, value, getattr(cast, "__name__", cast), e, default,
            )
            return default

    def get_int(self, key: str, default: int = 0) -> int:
        """Integer setting."""
        return self._coerce(key, default, int)

    def get_float(self, key: str, default: float = 0.0) -> float:
        """Float setting."""
        return self._coerce(key, default, float)

    def get_bool(self, key: str, *, default: bool = False) -> bool:
        """Boolean setting; strings such as ``yes`` or ``on`` count as true."""
        value = self.get(key, default)
        if isinstance(value, str):
            return value.strip().lower() in _TRUTHY
        return bool(value)

    def get_list(self, key: str, default: list[Any] | None = None) -> list[Any]:
        """List setting, or ``default`` when the stored value is not a list."""
        value = self.get(key)
        if isinstance(value, list):
            return value
        return [] if default is None else default

    def get_dict(self, key: str, default: dict | None = None) -> dict:
        """Mapping setting, or ``default`` when the stored value is not a mapping."""
        value = self.get(key)
        if isinstance(value, dict):
            return value
        return {} if default is None else default

    def validate_configuration(self) -> list[str]:
        """Check every known section and collect human-readable problems."""
        if not isinstance(self._config, dict):
            return ["Configuration is not loaded or is not a mapping"]

        errors: list[str] = []
        for check in (
            self._validate_storage_section,
            self._validate_drift_section,
            self._validate_performance_section,
            self._validate_retraining_section,
            self._validate_cicd_section,
        ):
            check(errors)
        return errors

    def _validate_storage_section(self, errors: list[str]) -> None:
        """Validate the storage configuration section."""
        storage_config = self.get("storage", {})
        if not isinstance(storage_config, dict):
            errors.append("'storage' section must be a dictionary")
            return

        backend = storage_config.get("backend", "json")
        if backend not in self._SUPPORTED_BACKENDS:
            errors.append(
                f"'storage.backend' must be one of {list(self._SUPPORTED_BACKENDS)}, "
                f"got '{backend}'",
            )
        if backend == "database" and not (
            self.get("storage.database.url") or os.getenv("MODELOPS_DATABASE_URL")
        ):
            errors.append("'storage.database.url' is required for the database backend")

    def _validate_drift_section(self, errors: list[str]) -> None:
        """Validate drift thresholds are numeric and strictly ascending."""
        thresholds = self.get("drift.thresholds", {})
        if not isinstance(thresholds, dict):
            errors.append("'drift.thresholds' must be a dictionary")
            return

        previous: float | None = None
        for level in self._SEVERITY_LEVELS:
            if level not in thresholds:
                continue
            try:
                value = float(thresholds[level])
            except (ValueError, TypeError):
                errors.append(f"'drift.thresholds.{level}' must be a valid number")
                continue
            if value < 0:
                errors.append(f"'drift.thresholds.{level}' must not be negative")
            if previous is not None and value <= previous:
                errors.append("'drift.thresholds' must be strictly ascending (low < ... < critical)")
            previous = value

        interval = self.get("drift.detection_interval_seconds")
        if interval is not None and not self._is_positive_number(interval):
            errors.append("'drift.detection_interval_seconds' must be a positive number")

    def _validate_performance_section(self, errors: list[str]) -> None:
        """Validate the performance monitoring section."""
        for field in ("sampling_interval_seconds", "retention_days"):
            value = self.get(f"performance.{field}")
            if value is not None and not self._is_positive_number(value):
                errors.append(f"'performance.{field}' must be a positive number")

    def _validate_retraining_section(self, errors: list[str]) -> None:
        """Validate the retraining section, including per-model overrides."""
        cooldown = self.get("retraining.cooldown_ms")
        if cooldown is not None and not self._is_non_negative_number(cooldown):
            errors.append("'retraining.cooldown_ms' must be a non-negative number")

        severities = self.get("retraining.retrain_on_drift_severity")
        if severities is not None:
            if not isinstance(severities, list):
                errors.append("'retraining.retrain_on_drift_severity' must be a list")
            else:
                errors.extend(
                    f"Unknown drift severity in retraining config: '{severity}'"
                    for severity in severities
                    if severity not in self._SEVERITY_LEVELS
                )

        models = self.get("retraining.models", {})
        if not isinstance(models, dict):
            errors.append("'retraining.models' must be a dictionary")
            return
        for model_id, overrides in models.items():
            if not isinstance(overrides, dict):
                errors.append(f"'retraining.models.{model_id}' must be a dictionary")
                continue
            override = overrides.get("cooldown_ms")
            if override is not None and not self._is_non_negative_number(override):
                errors.append(
                    f"'retraining.models.{model_id}.cooldown_ms' must be a non-negative number",
                )

    def _validate_cicd_section(self, errors: list[str]) -> None:
        """Validate default pipeline stages and evaluation timeout."""
        stages = self.get("cicd.default_stages")
        if stages is not None:
            if not isinstance(stages, list):
                errors.append("'cicd.default_stages' must be a list")
            else:
                errors.extend(
                    f"Unknown pipeline stage in 'cicd.default_stages': '{stage}'"
                    for stage in stages
                    if stage not in self._PIPELINE_STAGES
                )
        timeout = self.get("cicd.evaluation_timeout_seconds")
        if timeout is not None and not self._is_positive_number(timeout):
            errors.append("'cicd.evaluation_timeout_seconds' must be a positive number")

    @staticmethod
    def _is_positive_number(value: Any) -> bool:  # noqa: ANN401
        try:
            return float(value) > 0
        except (ValueError, TypeError):
            return False

    @staticmethod
    def _is_non_negative_number(value: Any) -> bool:  # noqa: ANN401
        try:
            return float(value) >= 0
        except (ValueError, TypeError):
            return False

    def get_model_overrides(self, section: str, model_id: str) -> dict[str, Any]:
        """Get per-model overrides for a section, e.g. ``retraining.models.<id>``."""
        models = self.get_dict(f"{section}.models", {})
        overrides = models.get(model_id, {})
        return overrides if isinstance(overrides, dict) else {}

    def get_database_url(self) -> str | None:
        """Get the storage database URL from config or the environment."""
        url = self.get("storage.database.url")
        if url:
            return str(url)
        return os.getenv("MODELOPS_DATABASE_URL")

    def reload_config(self) -> list[str]:
        """Re-read the file, keeping the current settings if the new ones are invalid.

        Returns:
            The validation errors of the new file; empty when it was applied.
        """
        previous = self._config
        try:
            self.load_config()
            errors = self.validate_configuration()
        except Exception as e:
            self._config = previous
            self._logger.exception("Reloading %s failed, keeping the current settings", self._path)
            return [f"Configuration reload failed: {e!s}"]

        if errors:
            self._config = previous
            self._logger.error(
                "Reloaded %s is invalid (%d problems), keeping the current settings",
                self._path, len(errors),
            )
            return errors

        self.validation_errors = []
        self._logger.info("Configuration reloaded from %s", self._path)
        return []

    def is_valid(self) -> bool:
        """True when the active configuration passed validation."""
        return not self.validation_errors
