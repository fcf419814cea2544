"""Append-only repository for audit log rows."""

from typing import Any, Dict, List, Optional
from uuid import UUID

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from docflow.database.enums import PipelineStage
from docflow.database.models import AuditLog
from docflow.repositories.base_repository import BaseRepository
from docflow.utils.exceptions import AuditLogImmutableError


class AuditLogRepository(BaseRepository[AuditLog]):
    """Audit rows can be added and read, never changed."""

    def __init__(self, session: AsyncSession):
        super().__init__(session, AuditLog)

    async def update(self, id: UUID, **kwargs) -> Optional[AuditLog]:
        raise AuditLogImmutableError(f"Audit log {id} is append-only and cannot be updated")

    async def list_for_document(
        self, document_id: UUID, stage: Optional[PipelineStage] = None
    ) -> List[AuditLog]:
        """Full trail in creation order."""
        try:
            query = select(AuditLog).where(AuditLog.document_id == document_id)
            if stage is not None:
                query = query.where(AuditLog.stage == stage)
            query = query.order_by(AuditLog.created_at, AuditLog.stage, AuditLog.llm_provider)
            result = await self.session.execute(query)
            return list(result.scalars().all())
        except SQLAlchemyError as e:
            self.logger.error(f"Error listing audit logs for {document_id}: {str(e)}", exc_info=True)
            raise

    async def count_for_round(self, document_id: UUID, stage: PipelineStage, attempt_id: str) -> int:
        try:
            result = await self.session.execute(
                select(func.count())
                .select_from(AuditLog)
                .where(AuditLog.document_id == document_id)
                .where(AuditLog.stage == stage)
                .where(AuditLog.attempt_id == attempt_id)
            )
            return int(result.scalar_one())
        except SQLAlchemyError as e:
            self.logger.error(f"Error counting audit round for {document_id}: {str(e)}", exc_info=True)
            raise

    async def provider_stats(self, document_id: Optional[UUID] = None) -> List[Dict[str, Any]]:
        """Per provider/model call counts, failures, tokens, cost and mean confidence."""
        try:
            query = select(
                AuditLog.llm_provider,
                AuditLog.llm_model,
                func.count().label("calls"),
                func.count(AuditLog.error_message).label("failures"),
                func.coalesce(func.sum(AuditLog.tokens_used), 0).label("tokens_used"),
                func.coalesce(func.sum(AuditLog.cost), 0.0).label("cost"),
                func.avg(AuditLog.confidence).label("avg_confidence"),
                func.avg(AuditLog.processing_time_ms).label("avg_processing_time_ms"),
            ).group_by(AuditLog.llm_provider, AuditLog.llm_model)
            if document_id is not None:
                query = query.where(AuditLog.document_id == document_id)

            result = await self.session.execute(query.order_by(AuditLog.llm_provider, AuditLog.llm_model))
            return [
                {
                    "llm_provider": row.llm_provider,
                    "llm_model": row.llm_model,
                    "calls": int(row.calls),
                    "failures": int(row.failures),
                    "tokens_used": int(row.tokens_used),
                    "cost": float(row.cost),
                    "avg_confidence": float(row.avg_confidence) if row.avg_confidence is not None else None,
                    "avg_processing_time_ms": (
                        float(row.avg_processing_time_ms) if row.avg_processing_time_ms is not None else None
                    ),
                }
                for row in result.all()
            ]
        except SQLAlchemyError as e:
            self.logger.error(f"Error computing audit stats: {str(e)}", exc_info=True)
            raise
