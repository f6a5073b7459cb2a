"""Repositories over the SQLAlchemy models."""

from .document_repository import DocumentRepository

__all__ = ["DocumentRepository"]
