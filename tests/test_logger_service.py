"""Tests for the logging service."""

import json
import logging
from pathlib import Path

import pytest

from modelops.logger_service import REDACTED, ContextFormatter, LoggerService


def _record(context) -> logging.LogRecord:
    record = logging.LogRecord("modelops.test", logging.INFO, __file__, 1, "hello", None, None)
    record.context = context
    return record


def test_context_formatter_renders_pairs() -> None:
    formatter = ContextFormatter("%(levelname)s - %(message)s - [%(context)s]")

    assert formatter.format(_record({"model_id": "fraud@v1", "run": 2})) == (
        "INFO - hello - [model_id=fraud@v1, run=2]")
    assert formatter.format(_record({})) == "INFO - hello"


@pytest.mark.asyncio
async def test_file_handler_writes_masked_json(make_config, tmp_path: Path) -> None:
    service = LoggerService(make_config({"logging": {"file": {"enabled": True}}}))

    service.info(
        "Registered %s",
        "fraud",
        source_module="ModelRegistry",
        context={
            "password": "hunter2",
            "storage": {"database_url": "postgresql://u:p@db/modelops"},
            "versions": [{"token": "abc"}, "v1"],
            "note": "A" * 40,
            "run": 3,
        },
    )
    await service.stop()

    lines = (tmp_path / "logs" / "modelops.log").read_text(encoding="utf-8").splitlines()
    records = [json.loads(line) for line in lines]
    registered = next(r for r in records if r["message"] == "Registered fraud")

    assert registered["name"] == "modelops.ModelRegistry"
    assert registered["level"] == "INFO"
    assert registered["context"] == {
        "password": REDACTED,
        "storage": {"database_url": REDACTED},
        "versions": [{"token": REDACTED}, "v1"],
        "note": REDACTED,
        "run": 3,
    }


@pytest.mark.asyncio
async def test_stop_detaches_handlers(make_config) -> None:
    service = LoggerService(make_config({"logging": {"console": {"enabled": True}}}))
    root = logging.getLogger("modelops")
    assert any(isinstance(h, logging.StreamHandler) for h in root.handlers)

    await service.stop()

    assert root.handlers == []
