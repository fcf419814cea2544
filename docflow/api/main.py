from fastapi import APIRouter

from docflow.api.routes import audit, documents, health

api_router = APIRouter()

api_router.include_router(health.router, prefix="", tags=["Health"])
api_router.include_router(documents.router, prefix="/documents", tags=["Documents"])
api_router.include_router(audit.router, prefix="/audit", tags=["Audit"])
