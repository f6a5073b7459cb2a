"""Data access layer: document stores, SQLAlchemy models and the audit log."""

from .audit_log import JsonLinesAuditLog
from .document_store import DocumentStore, InMemoryDocumentStore, JsonFileDocumentStore
from .sql_document_store import SqlDocumentStore

__all__ = [
    "DocumentStore",
    "InMemoryDocumentStore",
    "JsonFileDocumentStore",
    "JsonLinesAuditLog",
    "SqlDocumentStore",
]
