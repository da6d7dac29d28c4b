"""Migration status endpoint."""

from fastapi import APIRouter

from tenantdb.dependencies import ServiceDep
from tenantdb.models import MigrationRecordResponse, MigrationStatusResponse

router = APIRouter(tags=["migrations"])


@router.get(
    "/migrations",
    response_model=MigrationStatusResponse,
    summary="Migration status",
    description="Applied migrations, current schema version and pending versions.",
)
async def migration_status(db: ServiceDep) -> MigrationStatusResponse:
    engine = db.migrations
    applied = await engine.applied_migrations()
    pending = await engine.pending()
    return MigrationStatusResponse(
        current_version=await engine.current_version(),
        applied=[
            MigrationRecordResponse(
                version=r.version,
                description=r.description,
                applied_at=r.applied_at,
                execution_time_ms=r.execution_time_ms,
            )
            for r in applied
        ],
        pending=[m.version for m in pending],
    )
