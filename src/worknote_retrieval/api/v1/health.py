"""Health check endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from worknote_retrieval.config import get_settings
from worknote_retrieval.container import ServiceContainer
from worknote_retrieval.database.connection import check_connection
from worknote_retrieval.dependencies import get_container
from worknote_retrieval.utils.logging import get_logger

logger = get_logger("api.health")

router = APIRouter(tags=["health"])


@router.get("/health", summary="Health Check")
async def health_check(container: ServiceContainer = Depends(get_container)):
    """Service health with database connectivity and embedding configuration."""
    settings = get_settings()
    db_connected = await check_connection(container.engine)

    body = {
        "status": "healthy" if db_connected else "unhealthy",
        "app_name": settings.app_name,
        "environment": settings.environment.value,
        "database": "connected" if db_connected else "disconnected",
        "embedding_model": container.embedding_service.model_name,
        "collection": container.vector_index.collection_name,
    }
    if not db_connected:
        logger.warning("Health check failed: database not connected")
        return JSONResponse(status_code=503, content=body)
    return body
