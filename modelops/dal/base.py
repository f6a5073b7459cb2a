"""Generic SQLAlchemy repository shared by the database-backed stores."""

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING, Any, Generic, TypeVar, cast

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .models.models_base import Base

if TYPE_CHECKING:
    from modelops.logger_service import LoggerService

T = TypeVar("T", bound=Base)


class BaseRepository(Generic[T]):
    """Primary-key operations on one mapped class, one session per call."""

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        model_class: type[T],
        logger: "LoggerService",
    ) -> None:
        self.session_maker = session_maker
        self.model_class = model_class
        self.logger = logger
        self._source_module = self.__class__.__name__

    @asynccontextmanager
    async def _session(self, action: str, entity_id: Any = None) -> AsyncIterator[AsyncSession]:  # noqa: ANN401
        """Open a session, logging and re-raising anything that fails inside it."""
        try:
            async with self.session_maker() as session:
                yield session
        except Exception:
            self.logger.exception(
                "%s %s failed",
                action,
                self.model_class.__name__,
                source_module=self._source_module,
                context={"entity_id": entity_id} if entity_id is not None else None,
            )
            raise

    async def get_by_id(self, entity_id: Any) -> T | None:  # noqa: ANN401
        async with self._session("Loading", entity_id) as session:
            return await session.get(self.model_class, entity_id)

    async def merge(self, entity: T) -> T:
        """Insert or update ``entity`` by primary key and commit."""
        async with self._session("Saving") as session:
            merged = await session.merge(entity)
            await session.commit()
            return cast("T", merged)

    async def delete_by_id(self, entity_id: Any) -> bool:  # noqa: ANN401
        """Delete the row with ``entity_id``; False when there was none."""
        async with self._session("Deleting", entity_id) as session:
            entity = await session.get(self.model_class, entity_id)
            if entity is None:
                return False
            await session.delete(entity)
            await session.commit()
        self.logger.debug(
            "Deleted %s %s",
            self.model_class.__name__,
            entity_id,
            source_module=self._source_module,
        )
        return True
