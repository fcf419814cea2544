"""Document pipeline API endpoints."""

from typing import List, Optional
from uuid import UUID

from fastapi import APIRouter, HTTPException, Query, status
from temporalio.exceptions import WorkflowAlreadyStartedError

from docflow.config import settings
from docflow.database.enums import DocumentStatus, DocumentType
from docflow.dependencies import (
    AuditLogRepositoryDep,
    DocumentRepositoryDep,
    PipelineDispatcherDep,
    ProcessingJobRepositoryDep,
    SessionDep,
    StageEngineDep,
)
from docflow.pipeline.review_gate import ReviewGate
from docflow.schemas.api import (
    AuditEntryResponse,
    DocumentResponse,
    DocumentStatusResponse,
    ProcessingJobResponse,
    ReviewRequest,
    StartPipelineRequest,
    StartPipelineResponse,
)
from docflow.schemas.pipeline import RunStageCommand
from docflow.utils.exceptions import (
    DocumentNotFoundError,
    MalformedOutputError,
    ReviewStateError,
)
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

router = APIRouter()


async def _dispatch(dispatcher, command: RunStageCommand) -> Optional[str]:
    try:
        handle = await dispatcher(command)
    except WorkflowAlreadyStartedError:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"A pipeline workflow is already running for document {command.document_id}",
        )
    except Exception as e:
        LOGGER.error(
            "Failed to dispatch pipeline command",
            exc_info=True,
            extra={"document_id": command.document_id, "stage": command.stage.value},
        )
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail=f"Document {command.document_id} is registered but dispatch failed: {e}",
        )
    return getattr(handle, "id", None)


@router.post(
    "",
    response_model=StartPipelineResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Register an uploaded document and start its pipeline",
    operation_id="start_document_pipeline",
)
async def start_pipeline(
    request: StartPipelineRequest,
    documents: DocumentRepositoryDep,
    engine: StageEngineDep,
    dispatcher: PipelineDispatcherDep,
) -> StartPipelineResponse:
    """Create the document and job rows, then dispatch the UPLOAD command."""
    if await documents.get_by_storage_key(request.storage_key) is not None:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Storage key {request.storage_key} is already registered",
        )

    command = await engine.register_upload(
        user_id=request.user_id,
        original_filename=request.original_filename,
        storage_bucket=request.storage_bucket or settings.storage.bucket,
        storage_key=request.storage_key,
        mime_type=request.mime_type,
        file_size=request.file_size,
    )
    workflow_id = await _dispatch(dispatcher, command)

    return StartPipelineResponse(
        document_id=UUID(command.document_id),
        workflow_id=workflow_id,
        command=command,
    )


@router.get(
    "",
    response_model=List[DocumentResponse],
    summary="List documents",
    operation_id="list_documents",
)
async def list_documents(
    documents: DocumentRepositoryDep,
    user_id: str = Query(..., min_length=1),
    status_filter: Optional[DocumentStatus] = Query(default=None, alias="status"),
    document_type: Optional[DocumentType] = Query(default=None),
    skip: int = Query(default=0, ge=0),
    limit: int = Query(default=20, ge=1, le=100),
) -> List[DocumentResponse]:
    """List a user's documents, newest first. Archived ones only with ``status=ARCHIVED``."""
    rows = await documents.list_for_user(
        user_id, status=status_filter, document_type=document_type, skip=skip, limit=limit
    )
    return [DocumentResponse.model_validate(row) for row in rows]


@router.get(
    "/{document_id}",
    response_model=DocumentStatusResponse,
    summary="Get document status with its full audit trail",
    operation_id="get_document_status",
)
async def get_document_status(
    document_id: UUID,
    documents: DocumentRepositoryDep,
    jobs: ProcessingJobRepositoryDep,
    audit_logs: AuditLogRepositoryDep,
) -> DocumentStatusResponse:
    """Every provider attempt is listed; sensitive rows have their text redacted."""
    document = await documents.get_by_id(document_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")

    job = await jobs.get_by_document_id(document_id)
    trail = await audit_logs.list_for_document(document_id)

    return DocumentStatusResponse(
        document=DocumentResponse.model_validate(document),
        job=ProcessingJobResponse.model_validate(job) if job else None,
        audit_trail=[AuditEntryResponse.model_validate(row).redacted() for row in trail],
    )


@router.post(
    "/{document_id}/resume",
    response_model=StartPipelineResponse,
    status_code=status.HTTP_202_ACCEPTED,
    summary="Re-dispatch the pending command of a stalled pipeline",
    operation_id="resume_document_pipeline",
)
async def resume_pipeline(
    document_id: UUID,
    jobs: ProcessingJobRepositoryDep,
    documents: DocumentRepositoryDep,
    dispatcher: PipelineDispatcherDep,
) -> StartPipelineResponse:
    document = await documents.get_by_id(document_id)
    job = await jobs.get_by_document_id(document_id)
    if document is None or job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    if job.current_stage.is_terminal or document.status == DocumentStatus.ARCHIVED or not job.next_attempt_id:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Document is {document.status.value} at {job.current_stage.value}; nothing to resume",
        )

    command = RunStageCommand(
        document_id=str(document_id),
        stage=job.current_stage,
        attempt_id=job.next_attempt_id,
        external_event_id=f"{job.external_job_id}:{job.next_attempt_id}",
    )
    workflow_id = await _dispatch(dispatcher, command)
    return StartPipelineResponse(document_id=document_id, workflow_id=workflow_id, command=command)


@router.post(
    "/{document_id}/review",
    response_model=DocumentResponse,
    summary="Record a reviewer's approval",
    operation_id="review_document",
)
async def review_document(
    document_id: UUID,
    request: ReviewRequest,
    db_session: SessionDep,
) -> DocumentResponse:
    try:
        document = await ReviewGate.mark_reviewed(db_session, document_id, request.model_dump())
    except DocumentNotFoundError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    except ReviewStateError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=e.message)
    except MalformedOutputError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=e.message)
    return DocumentResponse.model_validate(document)


@router.post(
    "/{document_id}/archive",
    response_model=DocumentResponse,
    summary="Archive a document",
    operation_id="archive_document",
)
async def archive_document(
    document_id: UUID,
    documents: DocumentRepositoryDep,
) -> DocumentResponse:
    """Soft-archive; pending pipeline commands for the document become no-ops."""
    document = await documents.archive(document_id)
    if document is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Document not found")
    await documents.session.commit()

    LOGGER.info("Document archived", extra={"document_id": str(document_id)})
    return DocumentResponse.model_validate(document)
