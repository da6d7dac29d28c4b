"""Health check endpoint."""

import structlog
from fastapi import APIRouter
from fastapi.responses import JSONResponse

from tenantdb.dependencies import ServiceDep
from tenantdb.models import HealthResponse

logger = structlog.get_logger()
router = APIRouter(tags=["health"])


@router.get(
    "/health",
    response_model=HealthResponse,
    responses={503: {"model": HealthResponse}},
    summary="Health check",
    description="Run the database round-trip check and report pool state.",
)
async def health_check(db: ServiceDep):
    """
    Perform health check.

    Returns 200 when the database answers ``SELECT 1``, 503 otherwise.
    """
    healthy = await db.is_healthy()
    response = HealthResponse(
        status="healthy" if healthy else "unhealthy",
        version=db.settings.api_version,
        database=db.database_status,
        pool=db.pool.stats().as_dict(),
        background_tasks=db.scheduler.running_tasks,
    )

    logger.info("health_check", healthy=healthy, database=response.database)
    if not healthy:
        return JSONResponse(status_code=503, content=response.model_dump(mode="json"))
    return response
