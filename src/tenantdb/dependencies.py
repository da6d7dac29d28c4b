"""FastAPI dependencies."""

from typing import Annotated

from fastapi import Depends, Request

from tenantdb.service import DatabaseService


def get_service(request: Request) -> DatabaseService:
    """The DatabaseService started by the application lifespan."""
    return request.app.state.db


ServiceDep = Annotated[DatabaseService, Depends(get_service)]
