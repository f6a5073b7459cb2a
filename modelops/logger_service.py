# Logger Service Module
"""Centralized logging for the lifecycle services.

Every service logs through one ``LoggerService``: a readable console line and a
JSON line in a rotating file per record. Callers pass ``source_module`` to pick
the ``modelops.<module>`` child logger and ``context`` for structured fields;
secrets found in the context are masked before anything is written.
"""

import logging
import logging.handlers
import re
import sys
import types
from collections.abc import Mapping
from pathlib import Path
from typing import Any, Protocol, TypeAlias, TypeVar

from pythonjsonlogger import jsonlogger

_T = TypeVar("_T")

ExcInfoType: TypeAlias = (
    bool | tuple[type[BaseException], BaseException, types.TracebackType] | BaseException | None
)

ROOT_LOGGER_NAME = "modelops"
REDACTED = "********"

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s - [%(context)s]"
DEFAULT_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


class ConfigManagerProtocol(Protocol):
    """The configuration lookups the logger needs."""

    def get(self, key: str, default: _T | None = None) -> _T: ...

    def get_int(self, key: str, default: int = 0) -> int: ...

    def get_bool(self, key: str, *, default: bool = False) -> bool: ...


class ContextFormatter(logging.Formatter):
    """Console formatter rendering ``record.context`` as ``key=value`` pairs.

    When the context is empty the ``[%(context)s]`` placeholder and its
    separator are removed from the line.
    """

    def format(self, record: logging.LogRecord) -> str:
        context = getattr(record, "context", None) or {}
        record.context = context
        line = super().format(record)

        if self._fmt is None or "[%(context)s]" not in self._fmt:
            return line

        placeholder = f"[{context}]"
        if not context:
            return line.replace(f" - {placeholder}", "").replace(placeholder, "")
        if isinstance(context, dict):
            rendered = ", ".join(f"{k}={v}" for k, v in context.items())
        else:
            rendered = str(context)
        return line.replace(placeholder, f"[{rendered}]")


class LoggerService:
    """Owns the ``modelops`` logger hierarchy and its handlers.

    The level helpers mirror ``logging.Logger`` but take ``source_module`` and
    ``context`` keywords.
    """

    _SENSITIVE_KEYS = (
        "api_key",
        "secret",
        "password",
        "token",
        "credentials",
        "private_key",
        "auth",
        "access_key",
        "database_url",
    )
    # Long base64-looking strings are treated as credentials whatever their key
    _SECRET_LIKE_VALUE = re.compile(r"^[A-Za-z0-9/+]{32,}={0,2}$")

    def __init__(self, config_manager: ConfigManagerProtocol) -> None:
        self._config = config_manager
        self._level = str(config_manager.get("logging.level", "INFO")).upper()
        self._format = config_manager.get("logging.format", DEFAULT_FORMAT)
        self._date_format = config_manager.get("logging.date_format", DEFAULT_DATE_FORMAT)
        self._root: logging.Logger = logging.getLogger(ROOT_LOGGER_NAME)
        self._handlers: list[logging.Handler] = []

        self._install_handlers()
        self.info(
            "Logging configured at %s",
            self._level,
            source_module=self.__class__.__name__,
            context={"handlers": [type(h).__name__ for h in self._handlers]},
        )

    def _install_handlers(self) -> None:
        self._root.setLevel(self._level)
        # Rebuilding the service replaces whatever a previous instance installed
        for stale in list(self._root.handlers):
            self._root.removeHandler(stale)
            stale.close()

        if self._config.get_bool("logging.console.enabled", default=True):
            self._attach(self._console_handler())
        if self._config.get_bool("logging.file.enabled", default=True):
            self._attach(self._file_handler())

    def _console_handler(self) -> logging.Handler:
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ContextFormatter(self._format, datefmt=self._date_format))
        return handler

    def _file_handler(self) -> logging.Handler:
        directory = Path(str(self._config.get("logging.file.directory", "logs")))
        directory.mkdir(parents=True, exist_ok=True)
        handler = logging.handlers.RotatingFileHandler(
            str(directory / str(self._config.get("logging.file.filename", "modelops.log"))),
            maxBytes=self._config.get_int("logging.file.max_bytes", 10 * 1024 * 1024),
            backupCount=self._config.get_int("logging.file.backup_count", 5),
            encoding="utf-8",
        )
        handler.setFormatter(jsonlogger.JsonFormatter(
            self._format,
            datefmt=self._date_format,
            rename_fields={"levelname": "level"},
        ))
        return handler

    def _attach(self, handler: logging.Handler) -> None:
        handler.setLevel(self._level)
        self._root.addHandler(handler)
        self._handlers.append(handler)

    def _redact(self, context: Mapping[str, object] | None) -> dict[str, object]:
        """Copy ``context`` with sensitive keys and secret-looking strings masked.

        Nested mappings, including mappings inside lists, are masked too.
        """
        if not context:
            return {}

        masked: dict[str, object] = {}
        for key, value in context.items():
            if isinstance(value, Mapping):
                masked[key] = self._redact(value)
            elif isinstance(value, list):
                masked[key] = [
                    self._redact(item) if isinstance(item, Mapping) else item for item in value
                ]
            elif any(marker in str(key).lower() for marker in self._SENSITIVE_KEYS) or (
                isinstance(value, str) and self._SECRET_LIKE_VALUE.match(value)
            ):
                masked[key] = REDACTED
            else:
                masked[key] = value
        return masked

    def log(
        self,
        level: int,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        """Emit ``message % args`` at ``level``.

        Args:
            level: A ``logging`` level such as ``logging.WARNING``.
            message: %-style format string.
            *args: Values for ``message``.
            source_module: Child logger suffix, usually the caller's class name.
            context: Structured fields; masked before being attached to the record.
            exc_info: Passed through to ``logging.Logger.log``.
        """
        name = f"{ROOT_LOGGER_NAME}.{source_module}" if source_module else ROOT_LOGGER_NAME
        # stacklevel 3 attributes the record to whoever called the level helper
        logging.getLogger(name).log(
            level,
            message,
            *args,
            exc_info=exc_info,
            extra={"context": self._redact(context)},
            stacklevel=3,
        )

    def debug(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.DEBUG, message, *args, source_module=source_module, context=context)

    def info(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.INFO, message, *args, source_module=source_module, context=context)

    def warning(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        self.log(logging.WARNING, message, *args, source_module=source_module, context=context)

    def error(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        self.log(
            logging.ERROR, message, *args,
            source_module=source_module, context=context, exc_info=exc_info)

    def exception(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None) -> None:
        """ERROR with the active exception's traceback; call from an ``except`` block."""
        self.log(
            logging.ERROR, message, *args,
            source_module=source_module, context=context, exc_info=True)

    def critical(
        self,
        message: str,
        *args: object,
        source_module: str | None = None,
        context: Mapping[str, object] | None = None,
        exc_info: ExcInfoType = None) -> None:
        self.log(
            logging.CRITICAL, message, *args,
            source_module=source_module, context=context, exc_info=exc_info)

    async def start(self) -> None:
        """Handlers are live from construction; nothing to do."""
        self.debug("Logger service started", source_module=self.__class__.__name__)

    async def stop(self) -> None:
        """Flush, detach and close the handlers this service installed."""
        self.info("Logger service stopping", source_module=self.__class__.__name__)
        while self._handlers:
            handler = self._handlers.pop()
            handler.flush()
            self._root.removeHandler(handler)
            handler.close()
