"""Audit statistics endpoints."""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Query

from docflow.dependencies import AuditLogRepositoryDep
from docflow.schemas.api import AuditStatsResponse, ProviderStats

router = APIRouter()


@router.get(
    "/stats",
    response_model=AuditStatsResponse,
    summary="Provider call statistics",
    operation_id="get_audit_stats",
)
async def get_audit_stats(
    audit_logs: AuditLogRepositoryDep,
    document_id: Optional[UUID] = Query(default=None),
) -> AuditStatsResponse:
    """Calls, failures, tokens, cost and mean confidence per provider/model."""
    stats = await audit_logs.provider_stats(document_id)
    return AuditStatsResponse(
        document_id=document_id,
        providers=[ProviderStats(**row) for row in stats],
    )
