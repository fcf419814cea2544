"""Stage payloads, commands and results exchanged by the pipeline."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Literal, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from docflow.database.enums import DocumentStatus, DocumentType, PipelineStage

Severity = Literal["error", "warning", "info"]

SEVERITY_ORDER: Dict[str, int] = {"error": 0, "warning": 1, "info": 2}


class ClassificationPayload(BaseModel):
    """Classification answer from one provider."""

    model_config = ConfigDict(extra="ignore")

    document_type: DocumentType = Field(
        ..., validation_alias=AliasChoices("document_type", "documentType", "type")
    )
    reasoning: str = ""


class ValidationIssue(BaseModel):
    """One problem found in extracted data."""

    model_config = ConfigDict(extra="ignore")

    field: str
    issue: str
    severity: Severity = "warning"
    suggested_fix: Optional[Any] = Field(
        default=None, validation_alias=AliasChoices("suggested_fix", "suggestedFix", "suggestion")
    )


class ValidationPayload(BaseModel):
    """Validation answer from one provider."""

    model_config = ConfigDict(extra="ignore")

    is_valid: bool = Field(..., validation_alias=AliasChoices("is_valid", "isValid", "valid"))
    issues: List[ValidationIssue] = Field(default_factory=list)


class CorrectionPayload(BaseModel):
    """Correction answer from one provider."""

    model_config = ConfigDict(extra="ignore")

    corrected_data: Dict[str, Any] = Field(
        ..., validation_alias=AliasChoices("corrected_data", "correctedData")
    )
    changes: List[Any] = Field(default_factory=list)


class RunStageCommand(BaseModel):
    """Inbound dispatch command: advance one document by one stage."""

    document_id: str
    stage: PipelineStage
    attempt_id: str
    external_event_id: str


class AdvanceResult(BaseModel):
    """Outcome of one ``advance`` call."""

    document_id: str
    new_stage: PipelineStage
    new_document_status: Optional[DocumentStatus]
    decision: str
    next_command: Optional[RunStageCommand] = None
    retry_delay_seconds: Optional[float] = None
    duplicate: bool = False
    claim_conflict: bool = False


@dataclass
class DocumentContext:
    """What a provider sees about the document besides the prompt."""

    document_id: str
    stage: PipelineStage
    mime_type: Optional[str] = None
    filename: Optional[str] = None
    document_type: Optional[DocumentType] = None
    content: Optional[bytes] = None


@dataclass
class ProviderResponse:
    """Normalized answer of a single provider invocation."""

    raw_response: str
    extracted_data: Dict[str, Any]
    confidence: float
    tokens_used: int = 0
    cost: float = 0.0


@dataclass
class ProviderCallResult:
    """One provider's share of a consensus round, success or failure."""

    provider: str
    model: str
    raw_response: Optional[str] = None
    extracted_data: Optional[Dict[str, Any]] = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    confidence: Optional[float] = None
    tokens_used: int = 0
    cost: float = 0.0
    latency_ms: int = 0

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.extracted_data is not None


@dataclass
class ConsensusResult:
    """Aggregate of the successful results of a round."""

    agreement_level: float
    merged_data: Dict[str, Any]
    confidence: float
    provider_weights: Dict[str, float] = field(default_factory=dict)
    winner: Optional[str] = None


@dataclass
class RenderedPrompt:
    """A template resolved and rendered for one stage."""

    name: str
    version: int
    text: str
