"""Append-only JSON-Lines audit log."""

import asyncio
import json
import logging
from pathlib import Path
from typing import Any

from modelops.exceptions import StorageError

from .document_store import json_default

log = logging.getLogger(__name__)


class JsonLinesAuditLog:
    """Append one JSON record per line to a log file.

    Appends are serialized by an ``asyncio.Lock`` and performed in a worker thread.
    Lines that fail to parse on read are skipped with a warning.
    """

    def __init__(self, path: str | Path) -> None:
        """Initialize the audit log at ``path``."""
        self._path = Path(path)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> Path:
        """Location of the log file."""
        return self._path

    async def append(self, record: dict[str, Any]) -> None:
        """Append a record as a single JSON line."""
        line = json.dumps(record, default=json_default, separators=(",", ":"))
        async with self._lock:
            try:
                await asyncio.to_thread(self._append_line, line)
            except OSError as e:
                raise StorageError(self._path.name, "append", str(e)) from e

    async def read(self) -> list[dict[str, Any]]:
        """Return all records in file order."""
        async with self._lock:
            try:
                lines = await asyncio.to_thread(self._read_lines)
            except OSError as e:
                raise StorageError(self._path.name, "read", str(e)) from e

        records: list[dict[str, Any]] = []
        for number, line in enumerate(lines, start=1):
            if not line.strip():
                continue
            try:
                records.append(json.loads(line))
            except json.JSONDecodeError:
                log.warning("Skipping malformed audit line %s in %s", number, self._path)
        return records

    def _append_line(self, line: str) -> None:
        self._path.parent.mkdir(parents=True, exist_ok=True)
        with self._path.open("a", encoding="utf-8") as f:
            f.write(line + "\n")

    def _read_lines(self) -> list[str]:
        if not self._path.exists():
            return []
        return self._path.read_text(encoding="utf-8").splitlines()
