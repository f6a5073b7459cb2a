"""Document store abstraction backing every lifecycle service.

Each service persists its state as one JSON-compatible document per collection
(``registry``, ``experiments``, ``runs`` ...). Append-only histories such as drift
reports use one document per entry under a namespace (``drift_reports/<id>``).
"""

from __future__ import annotations

import asyncio
import copy
import enum
import json
import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Any, Protocol, runtime_checkable

from modelops.exceptions import StorageError

log = logging.getLogger(__name__)


def json_default(value: Any) -> Any:  # noqa: ANN401
    """Serialize the few non-JSON types that reach the store."""
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, (set, tuple)):
        return list(value)
    return str(value)


@runtime_checkable
class DocumentStore(Protocol):
    """Storage interface for JSON-compatible documents keyed by collection name."""

    async def load(self, collection: str) -> Any | None:  # noqa: ANN401
        """Return the stored document or None if the collection was never saved."""
        ...

    async def save(self, collection: str, document: Any) -> None:  # noqa: ANN401
        """Atomically replace the document of a collection."""
        ...

    async def delete(self, collection: str) -> None:
        """Remove a collection if present."""
        ...

    async def list_documents(self, namespace: str) -> list[Any]:
        """Return every document stored under ``<namespace>/``."""
        ...


class InMemoryDocumentStore:
    """Process-local store; documents are deep-copied on the way in and out."""

    def __init__(self) -> None:
        """Initialize the instance."""
        self._documents: dict[str, Any] = {}

    async def load(self, collection: str) -> Any | None:  # noqa: ANN401
        document = self._documents.get(collection)
        return copy.deepcopy(document)

    async def save(self, collection: str, document: Any) -> None:  # noqa: ANN401
        # Round-trip through JSON so callers see the same types as with a file store
        self._documents[collection] = json.loads(json.dumps(document, default=json_default))

    async def delete(self, collection: str) -> None:
        self._documents.pop(collection, None)

    async def list_documents(self, namespace: str) -> list[Any]:
        prefix = f"{namespace.rstrip('/')}/"
        return [
            copy.deepcopy(document)
            for key, document in sorted(self._documents.items())
            if key.startswith(prefix)
        ]


class JsonFileDocumentStore:
    """Store each collection as ``<root>/<collection>.json``.

    Writes go to a temporary file in the same directory followed by ``os.replace``
    so readers never observe a partially written document. File I/O runs in a
    worker thread and writes to one collection are serialized by a lock.
    """

    def __init__(self, root: str | Path) -> None:
        """Initialize the store rooted at ``root``."""
        self._root = Path(root)
        self._locks: dict[str, asyncio.Lock] = {}

    @property
    def root(self) -> Path:
        """Directory holding the collection files."""
        return self._root

    def _path_for(self, collection: str) -> Path:
        parts = [part for part in collection.split("/") if part not in ("", ".", "..")]
        if not parts:
            raise StorageError(collection, "resolve", "empty collection name")
        return self._root.joinpath(*parts[:-1], f"{parts[-1]}.json")

    def _lock_for(self, collection: str) -> asyncio.Lock:
        lock = self._locks.get(collection)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[collection] = lock
        return lock

    async def load(self, collection: str) -> Any | None:  # noqa: ANN401
        path = self._path_for(collection)
        try:
            return await asyncio.to_thread(self._read, path)
        except (OSError, ValueError) as e:
            raise StorageError(collection, "read", str(e)) from e

    async def save(self, collection: str, document: Any) -> None:  # noqa: ANN401
        path = self._path_for(collection)
        try:
            payload = json.dumps(document, indent=2, default=json_default)
        except (TypeError, ValueError) as e:
            raise StorageError(collection, "encode", str(e)) from e
        async with self._lock_for(collection):
            try:
                await asyncio.to_thread(self._write, path, payload)
            except OSError as e:
                raise StorageError(collection, "write", str(e)) from e
        log.debug("Saved collection %s to %s", collection, path)

    async def delete(self, collection: str) -> None:
        path = self._path_for(collection)
        async with self._lock_for(collection):
            try:
                await asyncio.to_thread(path.unlink, missing_ok=True)
            except OSError as e:
                raise StorageError(collection, "delete", str(e)) from e

    async def list_documents(self, namespace: str) -> list[Any]:
        directory = self._root.joinpath(*[p for p in namespace.split("/") if p])
        try:
            return await asyncio.to_thread(self._read_directory, directory)
        except (OSError, ValueError) as e:
            raise StorageError(namespace, "list", str(e)) from e

    @staticmethod
    def _read(path: Path) -> Any | None:  # noqa: ANN401
        if not path.exists():
            return None
        with path.open("r", encoding="utf-8") as f:
            return json.load(f)

    @staticmethod
    def _write(path: Path, payload: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{path.stem}.", suffix=".tmp", dir=path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(payload)
            os.replace(tmp_name, path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    @staticmethod
    def _read_directory(directory: Path) -> list[Any]:
        if not directory.is_dir():
            return []
        documents = []
        for path in sorted(directory.glob("*.json")):
            with path.open("r", encoding="utf-8") as f:
                documents.append(json.load(f))
        return documents
