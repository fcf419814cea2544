"""Request and response models of the HTTP surface."""

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from docflow.database.enums import (
    DocumentStatus,
    DocumentType,
    PipelineStage,
    StageStatus,
)
from docflow.schemas.pipeline import RunStageCommand

REDACTED = "[redacted]"


class HealthCheckResponse(BaseModel):
    """Health check response model.

    Attributes:
        status: Service status
        version: Application version
        service: Service name
    """

    status: str = Field(
        default="healthy",
        description="Service health status",
        examples=["healthy", "degraded"],
    )
    version: str = Field(..., description="Application version", examples=["0.1.0"])
    service: str = Field(..., description="Service name", examples=["Docflow"])


class StartPipelineRequest(BaseModel):
    """An uploaded object to run through the pipeline."""

    user_id: str = Field(..., min_length=1, description="Owner of the document")
    original_filename: str = Field(..., min_length=1)
    storage_key: str = Field(..., min_length=1, description="Object key in the storage bucket")
    storage_bucket: Optional[str] = Field(default=None, description="Defaults to the configured bucket")
    mime_type: Optional[str] = None
    file_size: Optional[int] = Field(default=None, ge=0)


class StartPipelineResponse(BaseModel):
    document_id: UUID
    workflow_id: Optional[str] = None
    command: RunStageCommand


class ProcessingJobResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    external_job_id: str
    current_stage: PipelineStage
    stage_status: StageStatus
    retry_count: int
    correction_cycles: int
    error_message: Optional[str] = None
    started_at: datetime
    updated_at: datetime
    completed_at: Optional[datetime] = None


class AuditEntryResponse(BaseModel):
    """One provider call. Sensitive rows keep their metadata but not their text."""

    model_config = ConfigDict(from_attributes=True)

    id: UUID
    stage: PipelineStage
    llm_provider: str
    llm_model: str
    prompt_template: Optional[str] = None
    prompt_version: Optional[int] = None
    prompt_used: Optional[str] = None
    raw_response: Optional[str] = None
    extracted_data: Optional[Dict[str, Any]] = None
    error_message: Optional[str] = None
    error_kind: Optional[str] = None
    confidence: Optional[float] = None
    processing_time_ms: Optional[int] = None
    tokens_used: Optional[int] = None
    cost: Optional[float] = None
    attempt_id: str
    external_event_id: Optional[str] = None
    agreement_level: Optional[float] = None
    provider_weights: Optional[Dict[str, float]] = None
    sensitive: bool = False
    created_at: datetime

    def redacted(self) -> "AuditEntryResponse":
        if not self.sensitive:
            return self
        return self.model_copy(
            update={
                "prompt_used": REDACTED if self.prompt_used is not None else None,
                "raw_response": REDACTED if self.raw_response is not None else None,
                "extracted_data": None,
            }
        )


class DocumentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: str
    original_filename: str
    mime_type: Optional[str] = None
    file_size: Optional[int] = None
    storage_bucket: str
    storage_key: str
    status: DocumentStatus
    document_type: Optional[DocumentType] = None
    confidence: Optional[float] = None
    parsed_data: Optional[Dict[str, Any]] = None
    needs_review: bool
    reviewed_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    archived_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class DocumentStatusResponse(BaseModel):
    """Document, its job state and the full audit trail."""

    document: DocumentResponse
    job: Optional[ProcessingJobResponse] = None
    audit_trail: List[AuditEntryResponse] = Field(default_factory=list)


class ReviewRequest(BaseModel):
    reviewer_id: str = Field(..., min_length=1)
    notes: Optional[str] = None
    corrected_data: Optional[Dict[str, Any]] = Field(
        default=None, description="Replaces parsed data; validated against the document type"
    )


class ProviderStats(BaseModel):
    llm_provider: str
    llm_model: str
    calls: int
    failures: int
    tokens_used: int
    cost: float
    avg_confidence: Optional[float] = None
    avg_processing_time_ms: Optional[float] = None


class AuditStatsResponse(BaseModel):
    document_id: Optional[UUID] = None
    providers: List[ProviderStats]
