"""SQLAlchemy model for the 'documents' table."""

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, String
from sqlalchemy.orm import Mapped, mapped_column
from sqlalchemy.sql import func

from .models_base import Base


class Document(Base):
    """One persisted collection document (registry, runs, a drift report, ...)."""

    __tablename__ = "documents"

    collection: Mapped[str] = mapped_column(String(512), primary_key=True)
    payload: Mapped[Any] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), server_default=func.current_timestamp())
    updated_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True),
        server_default=func.current_timestamp(),
        onupdate=func.current_timestamp())

    def __repr__(self) -> str:
        return f"<Document(collection='{self.collection}')>"
