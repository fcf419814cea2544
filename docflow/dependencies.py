"""Centralized dependency injection for the FastAPI application.

Factory functions for repositories, the stage engine and the pipeline
dispatcher. Tests override them through ``app.dependency_overrides``.
"""

from functools import lru_cache
from typing import Annotated, Awaitable, Callable, Optional

from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession
from temporalio.client import WorkflowHandle

from docflow.database.session import get_async_session
from docflow.pipeline.engine import StageTransitionEngine, create_stage_engine
from docflow.repositories.audit_repository import AuditLogRepository
from docflow.repositories.document_repository import DocumentRepository
from docflow.repositories.processing_job_repository import ProcessingJobRepository
from docflow.schemas.pipeline import RunStageCommand
from docflow.temporal.client import start_document_pipeline

PipelineDispatcher = Callable[[RunStageCommand], Awaitable[Optional[WorkflowHandle]]]


async def get_document_repository(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> DocumentRepository:
    """Get document repository instance.

    Args:
        db_session: Database session from dependency injection

    Returns:
        DocumentRepository: Repository for document operations
    """
    return DocumentRepository(db_session)


async def get_processing_job_repository(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> ProcessingJobRepository:
    return ProcessingJobRepository(db_session)


async def get_audit_repository(
    db_session: Annotated[AsyncSession, Depends(get_async_session)]
) -> AuditLogRepository:
    return AuditLogRepository(db_session)


@lru_cache
def get_stage_engine() -> StageTransitionEngine:
    """Process-wide engine; it opens its own sessions per command."""
    return create_stage_engine()


def get_pipeline_dispatcher() -> PipelineDispatcher:
    """Starts the Temporal workflow that delivers pipeline commands."""
    return start_document_pipeline


SessionDep = Annotated[AsyncSession, Depends(get_async_session)]
DocumentRepositoryDep = Annotated[DocumentRepository, Depends(get_document_repository)]
ProcessingJobRepositoryDep = Annotated[ProcessingJobRepository, Depends(get_processing_job_repository)]
AuditLogRepositoryDep = Annotated[AuditLogRepository, Depends(get_audit_repository)]
StageEngineDep = Annotated[StageTransitionEngine, Depends(get_stage_engine)]
PipelineDispatcherDep = Annotated[PipelineDispatcher, Depends(get_pipeline_dispatcher)]
