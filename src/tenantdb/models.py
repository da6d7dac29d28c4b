"""Data models returned by the facade and the ops API."""

from datetime import datetime

from pydantic import BaseModel, Field


class ColumnInfo(BaseModel):
    """One column of a table."""

    name: str = Field(description="Column name")
    type: str = Field(description="Backend data type, e.g. INTEGER or VARCHAR")
    nullable: bool = Field(description="Whether the column accepts NULL")
    primary_key: bool = Field(default=False, description="Whether the column is part of the primary key")


class TableInfo(BaseModel):
    """Table structure as reported by the backend."""

    name: str = Field(description="Table name")
    columns: list[ColumnInfo] = Field(description="Columns in ordinal order")


# ============================================
# Ops API responses
# ============================================


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = Field(description="Service status: 'healthy' or 'unhealthy'")
    version: str = Field(description="API version")
    database: str = Field(description="Database status: 'Connected' or 'Disconnected'")
    pool: dict = Field(description="Connection pool statistics")
    background_tasks: list[str] = Field(default_factory=list, description="Running scheduled tasks")


class TableDetailResponse(TableInfo):
    """Table structure plus its owning tenant."""

    owner: str | None = Field(default=None, description="Owning tenant, null when unclaimed")


class TableListResponse(BaseModel):
    tables: list[str] = Field(description="Table names in the main schema")
    owners: dict[str, str] = Field(description="Owner of every claimed table")


class MigrationRecordResponse(BaseModel):
    version: int = Field(description="Migration version")
    description: str = Field(description="Migration description")
    applied_at: datetime | None = Field(default=None, description="When the migration committed")
    execution_time_ms: int = Field(description="Wall-clock execution time in milliseconds")


class MigrationStatusResponse(BaseModel):
    """Applied migrations and the current schema version."""

    current_version: int = Field(description="Highest applied version, 0 when none")
    applied: list[MigrationRecordResponse] = Field(description="Applied migrations in version order")
    pending: list[int] = Field(description="Registered versions not yet applied")


class ErrorResponse(BaseModel):
    """Standard error response."""

    error: str = Field(description="Error type")
    message: str = Field(description="Error message")
