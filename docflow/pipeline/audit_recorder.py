"""Writes the audit rows of a consensus round."""

from typing import Iterable, List, Optional
from uuid import UUID

from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.enums import PipelineStage
from docflow.database.models import AuditLog
from docflow.schemas.pipeline import ConsensusResult, ProviderCallResult, RenderedPrompt
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)


class AuditRecorder:
    """Adds one immutable ``AuditLog`` row per provider call.

    Rows are flushed into the caller's transaction so they commit together
    with the job and document updates of the same round.
    """

    def __init__(self, session: AsyncSession, sensitive_stages: Iterable[str] = ()):
        self.session = session
        self.sensitive_stages = {str(stage).upper() for stage in sensitive_stages}

    async def record_round(
        self,
        document_id: UUID,
        stage: PipelineStage,
        attempt_id: str,
        external_event_id: Optional[str],
        prompt: RenderedPrompt,
        results: List[ProviderCallResult],
        consensus: ConsensusResult,
    ) -> List[AuditLog]:
        sensitive = stage.value in self.sensitive_stages
        rows = [
            AuditLog(
                document_id=document_id,
                stage=stage,
                llm_provider=result.provider,
                llm_model=result.model,
                prompt_template=prompt.name,
                prompt_version=prompt.version,
                prompt_used=prompt.text,
                raw_response=result.raw_response,
                extracted_data=result.extracted_data,
                error_message=result.error,
                error_kind=result.error_kind,
                confidence=result.confidence,
                processing_time_ms=result.latency_ms,
                tokens_used=result.tokens_used,
                cost=result.cost,
                attempt_id=attempt_id,
                external_event_id=external_event_id,
                agreement_level=consensus.agreement_level,
                provider_weights=consensus.provider_weights,
                sensitive=sensitive,
            )
            for result in results
        ]
        self.session.add_all(rows)
        await self.session.flush()

        LOGGER.info(
            f"Recorded {len(rows)} audit row(s) for {stage.value}",
            extra={
                "document_id": str(document_id),
                "attempt_id": attempt_id,
                "agreement_level": consensus.agreement_level,
            },
        )
        return rows
