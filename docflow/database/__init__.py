"""Database module for SQLAlchemy models and session management."""

from docflow.database.base import Base, async_session_maker, engine
from docflow.database.client import DatabaseClient, close_database, db_client, init_database
from docflow.database.enums import (
    DocumentStatus,
    DocumentType,
    PipelineStage,
    PromptCategory,
    StageStatus,
)
from docflow.database.models import AuditLog, Document, ProcessingJob, PromptTemplate
from docflow.database.session import get_async_session

__all__ = [
    "Base",
    "engine",
    "async_session_maker",
    "get_async_session",
    "DatabaseClient",
    "db_client",
    "init_database",
    "close_database",
    "DocumentStatus",
    "DocumentType",
    "PipelineStage",
    "PromptCategory",
    "StageStatus",
    "AuditLog",
    "Document",
    "ProcessingJob",
    "PromptTemplate",
]
