"""SQLAlchemy models for the pipeline tables."""

import uuid
from datetime import datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    Enum as SAEnum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    TIMESTAMP,
    UniqueConstraint,
    Uuid,
    event,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from docflow.database.base import Base, utcnow
from docflow.database.enums import (
    DocumentStatus,
    DocumentType,
    PipelineStage,
    PromptCategory,
    StageStatus,
)
from docflow.utils.exceptions import AuditLogImmutableError

JSONType = JSON().with_variant(JSONB(), "postgresql")


def _enum(enum_cls) -> SAEnum:
    return SAEnum(enum_cls, native_enum=False, length=32, validate_strings=True)


class Document(Base):
    """Uploaded document and its pipeline result."""

    __tablename__ = "documents"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(String, nullable=False, index=True)
    original_filename: Mapped[str] = mapped_column(String, nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String, nullable=True)
    file_size: Mapped[int | None] = mapped_column(Integer, nullable=True)
    storage_bucket: Mapped[str] = mapped_column(String, nullable=False)
    storage_key: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    status: Mapped[DocumentStatus] = mapped_column(
        _enum(DocumentStatus), nullable=False, default=DocumentStatus.UPLOADING
    )
    document_type: Mapped[DocumentType | None] = mapped_column(_enum(DocumentType), nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    parsed_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    needs_review: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    reviewed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    archived_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (Index("ix_documents_user_status", "user_id", "status"),)


class ProcessingJob(Base):
    """Mutable current-state row for a document's pipeline run."""

    __tablename__ = "processing_jobs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id"), unique=True, nullable=False
    )
    external_job_id: Mapped[str] = mapped_column(String, unique=True, nullable=False)
    current_stage: Mapped[PipelineStage] = mapped_column(
        _enum(PipelineStage), nullable=False, default=PipelineStage.UPLOAD
    )
    stage_status: Mapped[StageStatus] = mapped_column(
        _enum(StageStatus), nullable=False, default=StageStatus.PENDING
    )
    retry_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    correction_cycles: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    # Lease held by the worker currently advancing this job
    lease_owner: Mapped[str | None] = mapped_column(String, nullable=True)
    lease_expires_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)

    # Outcome of the last command that was applied, returned on redelivery
    last_stage: Mapped[PipelineStage | None] = mapped_column(_enum(PipelineStage), nullable=True)
    last_attempt_id: Mapped[str | None] = mapped_column(String, nullable=True)
    last_outcome: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    # Attempt id of the follow-up command the engine emitted; other attempts are stale
    next_attempt_id: Mapped[str | None] = mapped_column(String, nullable=True)

    stage_context: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False, default=dict)

    started_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )
    completed_at: Mapped[datetime | None] = mapped_column(TIMESTAMP(timezone=True), nullable=True)


class AuditLog(Base):
    """Append-only record of one provider call within a consensus round."""

    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    document_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("documents.id"), nullable=False, index=True
    )
    stage: Mapped[PipelineStage] = mapped_column(_enum(PipelineStage), nullable=False)
    llm_provider: Mapped[str] = mapped_column(String, nullable=False)
    llm_model: Mapped[str] = mapped_column(String, nullable=False)
    prompt_template: Mapped[str | None] = mapped_column(String, nullable=True)
    prompt_version: Mapped[int | None] = mapped_column(Integer, nullable=True)
    prompt_used: Mapped[str | None] = mapped_column(Text, nullable=True)
    raw_response: Mapped[str | None] = mapped_column(Text, nullable=True)
    extracted_data: Mapped[dict[str, Any] | None] = mapped_column(JSONType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_kind: Mapped[str | None] = mapped_column(String, nullable=True)
    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    processing_time_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tokens_used: Mapped[int | None] = mapped_column(Integer, nullable=True)
    cost: Mapped[float | None] = mapped_column(Float, nullable=True)
    attempt_id: Mapped[str] = mapped_column(String, nullable=False)
    external_event_id: Mapped[str | None] = mapped_column(String, nullable=True)
    agreement_level: Mapped[float | None] = mapped_column(Float, nullable=True)
    provider_weights: Mapped[dict[str, float] | None] = mapped_column(JSONType, nullable=True)
    sensitive: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint(
            "document_id",
            "stage",
            "attempt_id",
            "llm_provider",
            "llm_model",
            name="uq_audit_logs_round_provider",
        ),
        Index("ix_audit_logs_document_stage", "document_id", "stage"),
    )


class PromptTemplate(Base):
    """Versioned prompt template for a stage category."""

    __tablename__ = "prompt_templates"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String, nullable=False)
    category: Mapped[PromptCategory] = mapped_column(_enum(PromptCategory), nullable=False)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    template: Mapped[str] = mapped_column(Text, nullable=False)
    variables: Mapped[list[dict[str, Any]]] = mapped_column(JSONType, nullable=False, default=list)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    created_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        TIMESTAMP(timezone=True), default=utcnow, onupdate=utcnow, nullable=False
    )

    __table_args__ = (
        UniqueConstraint("name", "version", name="uq_prompt_templates_name_version"),
        Index("ix_prompt_templates_category_active", "category", "is_active"),
    )


@event.listens_for(AuditLog, "before_update")
def _reject_audit_update(mapper, connection, target) -> None:
    raise AuditLogImmutableError(f"Audit log {target.id} is append-only and cannot be updated")


@event.listens_for(AuditLog, "before_delete")
def _reject_audit_delete(mapper, connection, target) -> None:
    raise AuditLogImmutableError(f"Audit log {target.id} is append-only and cannot be deleted")
