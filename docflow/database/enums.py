"""Enumerations persisted as strings."""

import enum


class DocumentStatus(str, enum.Enum):
    UPLOADING = "UPLOADING"
    PROCESSING = "PROCESSING"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    ARCHIVED = "ARCHIVED"


class DocumentType(str, enum.Enum):
    INVOICE = "INVOICE"
    RECEIPT = "RECEIPT"
    PAYSLIP = "PAYSLIP"
    BANK_STATEMENT = "BANK_STATEMENT"
    TAX_FORM = "TAX_FORM"
    CONTRACT = "CONTRACT"
    OTHER = "OTHER"


class PipelineStage(str, enum.Enum):
    UPLOAD = "UPLOAD"
    CLASSIFICATION = "CLASSIFICATION"
    EXTRACTION = "EXTRACTION"
    VALIDATION = "VALIDATION"
    CORRECTION = "CORRECTION"
    REVALIDATION = "REVALIDATION"
    FINALIZE = "FINALIZE"
    DONE = "DONE"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAILED = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self in (PipelineStage.DONE, PipelineStage.NEEDS_REVIEW, PipelineStage.FAILED)


class StageStatus(str, enum.Enum):
    PENDING = "PENDING"
    RUNNING = "RUNNING"
    SUCCESS = "SUCCESS"
    FAILED = "FAILED"
    RETRYING = "RETRYING"


class PromptCategory(str, enum.Enum):
    CLASSIFICATION = "CLASSIFICATION"
    EXTRACTION = "EXTRACTION"
    VALIDATION = "VALIDATION"
    CORRECTION = "CORRECTION"
