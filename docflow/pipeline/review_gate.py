"""Human-review decision and the reviewer approval action."""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.base import utcnow
from docflow.database.enums import DocumentStatus
from docflow.database.models import Document
from docflow.repositories.document_repository import DocumentRepository
from docflow.schemas.documents import dump_parsed_data, parse_parsed_data
from docflow.utils.exceptions import DocumentNotFoundError, ReviewStateError
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


@dataclass
class ReviewVerdict:
    needs_review: bool
    reasons: List[str] = field(default_factory=list)


class ReviewGate:
    """Flags documents whose final result should not be trusted unattended."""

    def __init__(self, confidence_threshold: float = 0.8, agreement_threshold: float = 0.7):
        self.confidence_threshold = confidence_threshold
        self.agreement_threshold = agreement_threshold

    def evaluate(
        self,
        final_confidence: Optional[float],
        agreement_levels: List[float],
        retries_exhausted: bool = False,
        corrections_exhausted: bool = False,
    ) -> ReviewVerdict:
        """Review is needed for low confidence, any low-agreement round, or exhaustion."""
        reasons = []
        if final_confidence is None or final_confidence < self.confidence_threshold:
            reasons.append(f"confidence {final_confidence} below {self.confidence_threshold}")

        low = [level for level in agreement_levels if level < self.agreement_threshold]
        if low:
            reasons.append(f"agreement {min(low):.2f} below {self.agreement_threshold}")
        if retries_exhausted:
            reasons.append("retries exhausted")
        if corrections_exhausted:
            reasons.append("correction cycles exhausted")

        return ReviewVerdict(needs_review=bool(reasons), reasons=reasons)

    @staticmethod
    async def mark_reviewed(
        session: AsyncSession,
        document_id: UUID,
        reviewer_context: Optional[Dict[str, Any]] = None,
    ) -> Document:
        """Record a reviewer's approval and commit.

        Clears ``needs_review`` and sets ``reviewed_at``. A NEEDS_REVIEW
        document is completed; when the reviewer supplies ``corrected_data``
        it replaces the parsed data and confidence becomes 1.0.

        Raises:
            DocumentNotFoundError: Unknown document
            ReviewStateError: The document is not awaiting review
            MalformedOutputError: Corrected data does not fit the document type
        """
        reviewer_context = reviewer_context or {}
        documents = DocumentRepository(session)
        document = await documents.get_by_id(document_id)
        if document is None:
            raise DocumentNotFoundError(f"Document {document_id} not found")

        if document.status != DocumentStatus.NEEDS_REVIEW and not document.needs_review:
            raise ReviewStateError(
                f"Document {document_id} is {document.status.value} and cannot be reviewed"
            )

        corrected = reviewer_context.get("corrected_data")
        if corrected is not None:
            if document.document_type is None:
                raise ReviewStateError(f"Document {document_id} has no type; corrected data cannot be validated")
            document.parsed_data = dump_parsed_data(parse_parsed_data(document.document_type, corrected))
            document.confidence = 1.0

        now = utcnow()
        document.needs_review = False
        document.reviewed_at = now
        if document.status == DocumentStatus.NEEDS_REVIEW:
            document.status = DocumentStatus.COMPLETED
            document.completed_at = now

        await session.commit()
        LOGGER.info(
            "Document review recorded",
            extra={
                "document_id": str(document_id),
                "reviewer": reviewer_context.get("reviewer_id"),
                "corrected": corrected is not None,
            },
        )
        return document
