"""Health check API endpoints."""

from fastapi import APIRouter

from docflow.config import settings
from docflow.database.client import db_client
from docflow.schemas.api import HealthCheckResponse
from docflow.temporal.client import get_temporal_client
from docflow.utils.logging import get_logger

LOGGER = get_logger(__name__)

router = APIRouter()


@router.get(
    "/health",
    response_model=HealthCheckResponse,
    summary="Health check endpoint",
    description="Check if the service is running and healthy",
    operation_id="get_service_health_status",
)
async def health_check() -> HealthCheckResponse:
    """Health check endpoint."""
    db_health = await db_client.health_check()

    return HealthCheckResponse(
        status="healthy" if db_health["status"] == "healthy" else "degraded",
        version=settings.app_version,
        service=settings.app_name,
    )


@router.get("/health/detailed", operation_id="get_service_health_details")
async def detailed_health() -> dict:
    """Detailed health check including dependencies."""
    db_health = await db_client.health_check()

    temporal_healthy = False
    try:
        await get_temporal_client()
        temporal_healthy = True
    except Exception as e:
        LOGGER.warning(f"Temporal health check failed: {e}")

    return {
        "status": "healthy" if db_health["status"] == "healthy" and temporal_healthy else "degraded",
        "database": db_health,
        "temporal": {"status": "healthy" if temporal_healthy else "unhealthy"},
        "version": settings.app_version,
    }
