"""Repository for collection documents stored in the 'documents' table."""

from collections.abc import Sequence
from typing import TYPE_CHECKING, Any

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from modelops.dal.base import BaseRepository
from modelops.dal.models.document import Document

if TYPE_CHECKING:
    from modelops.logger_service import LoggerService


class DocumentRepository(BaseRepository[Document]):
    """Read and write whole collection documents."""

    def __init__(
        self, session_maker: async_sessionmaker[AsyncSession], logger: "LoggerService",
    ) -> None:
        """Initialize the document repository."""
        super().__init__(session_maker, Document, logger)

    async def get_payload(self, collection: str) -> Any | None:  # noqa: ANN401
        """Return the payload of a collection or None."""
        document = await self.get_by_id(collection)
        return document.payload if document is not None else None

    async def upsert(self, collection: str, payload: Any) -> None:  # noqa: ANN401
        """Replace the payload of a collection in a single transaction."""
        await self.merge(Document(collection=collection, payload=payload))

    async def find_by_prefix(self, prefix: str) -> Sequence[Document]:
        """Return documents whose collection name starts with ``prefix``, ordered by name."""
        stmt = (
            select(Document)
            .where(Document.collection.startswith(prefix, autoescape=True))
            .order_by(Document.collection)
        )
        async with self._session("Listing", prefix) as session:
            result = await session.execute(stmt)
            return result.scalars().all()
