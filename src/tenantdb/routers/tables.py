"""Read-only table inspection endpoints."""

import structlog
from fastapi import APIRouter, HTTPException, status

from tenantdb.dependencies import ServiceDep
from tenantdb.errors import ValidationError
from tenantdb.models import ErrorResponse, TableDetailResponse, TableListResponse

logger = structlog.get_logger()
router = APIRouter(prefix="/tables", tags=["tables"])


@router.get(
    "",
    response_model=TableListResponse,
    summary="List tables",
)
async def list_tables(db: ServiceDep) -> TableListResponse:
    tables = await db.list_tables()
    return TableListResponse(tables=tables, owners=db.ownership.snapshot())


@router.get(
    "/{name}",
    response_model=TableDetailResponse,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
    },
    summary="Get table structure and owner",
)
async def get_table(name: str, db: ServiceDep) -> TableDetailResponse:
    try:
        info = await db.get_table_info(name)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail={"error": "invalid_table_name", "message": e.message},
        )

    if info is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail={"error": "table_not_found", "message": f"Table {name} not found"},
        )

    owner = await db.get_table_owner(name)
    return TableDetailResponse(name=info.name, columns=info.columns, owner=owner)
