"""Document store backed by a relational database through SQLAlchemy."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Any

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)

from modelops.exceptions import StorageError

from .document_store import json_default
from .models.models_base import Base
from .repositories.document_repository import DocumentRepository

if TYPE_CHECKING:
    from modelops.logger_service import LoggerService


class SqlDocumentStore:
    """Persist collection documents as rows of the ``documents`` table.

    Works with any async SQLAlchemy driver; PostgreSQL via asyncpg in deployment and
    SQLite via aiosqlite for local runs and tests.
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        logger: LoggerService,
    ) -> None:
        """Initialize the store with an existing session factory."""
        self._repository = DocumentRepository(session_maker, logger)
        self.logger = logger
        self._source_module = self.__class__.__name__

    @classmethod
    async def connect(
        cls, database_url: str, logger: LoggerService, *, echo: bool = False,
    ) -> tuple[SqlDocumentStore, AsyncEngine]:
        """Create an engine, ensure the schema exists and return the store with its engine."""
        engine = create_async_engine(database_url, echo=echo)
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)
        session_maker = async_sessionmaker(
            bind=engine, class_=AsyncSession, expire_on_commit=False, autoflush=False)
        logger.info(
            "SQL document store connected.",
            source_module=cls.__name__,
            context={"dialect": engine.dialect.name},
        )
        return cls(session_maker, logger), engine

    async def load(self, collection: str) -> Any | None:  # noqa: ANN401
        try:
            return await self._repository.get_payload(collection)
        except SQLAlchemyError as e:
            raise StorageError(collection, "read", str(e)) from e

    async def save(self, collection: str, document: Any) -> None:  # noqa: ANN401
        try:
            payload = json.loads(json.dumps(document, default=json_default))
        except (TypeError, ValueError) as e:
            raise StorageError(collection, "encode", str(e)) from e
        try:
            await self._repository.upsert(collection, payload)
        except SQLAlchemyError as e:
            raise StorageError(collection, "write", str(e)) from e

    async def delete(self, collection: str) -> None:
        try:
            await self._repository.delete_by_id(collection)
        except SQLAlchemyError as e:
            raise StorageError(collection, "delete", str(e)) from e

    async def list_documents(self, namespace: str) -> list[Any]:
        prefix = f"{namespace.rstrip('/')}/"
        try:
            documents = await self._repository.find_by_prefix(prefix)
        except SQLAlchemyError as e:
            raise StorageError(namespace, "list", str(e)) from e
        return [document.payload for document in documents]
