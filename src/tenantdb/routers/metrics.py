"""Prometheus metrics endpoint router."""

from fastapi import APIRouter
from fastapi.responses import PlainTextResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest

from tenantdb.dependencies import ServiceDep
from tenantdb.metrics import POOL_CONNECTIONS_IDLE, POOL_CONNECTIONS_IN_USE, TABLES_OWNED

router = APIRouter(tags=["metrics"])


@router.get(
    "/metrics",
    response_class=PlainTextResponse,
    summary="Prometheus metrics",
    description="Metrics in Prometheus text exposition format.",
)
async def get_metrics(db: ServiceDep) -> PlainTextResponse:
    # Refresh gauges that are otherwise only updated on change
    stats = db.pool.stats()
    POOL_CONNECTIONS_IN_USE.set(stats.in_use)
    POOL_CONNECTIONS_IDLE.set(stats.idle)
    TABLES_OWNED.set(db.ownership.count)

    return PlainTextResponse(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
