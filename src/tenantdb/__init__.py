"""tenantdb - shared multi-tenant database access layer over DuckDB."""

from tenantdb.batch import BatchOutcome, BatchProcessor
from tenantdb.blocking import BlockingDatabase, BlockingTransaction
from tenantdb.config import Settings
from tenantdb.errors import (
    ConnectionError,
    DatabaseError,
    InitializationError,
    MigrationError,
    OwnershipError,
    QueryError,
    TransactionError,
    ValidationError,
)
from tenantdb.identity import current_tenant, tenant_scope
from tenantdb.migrations import Migration, MigrationEngine, MigrationRecord
from tenantdb.models import ColumnInfo, TableInfo
from tenantdb.pool import ConnectionPool, PoolState
from tenantdb.query_builder import QueryBuilder
from tenantdb.service import DatabaseService
from tenantdb.transaction import Transaction

__version__ = "0.1.0"

__all__ = [
    "BatchOutcome",
    "BatchProcessor",
    "BlockingDatabase",
    "BlockingTransaction",
    "ColumnInfo",
    "ConnectionError",
    "ConnectionPool",
    "DatabaseError",
    "DatabaseService",
    "InitializationError",
    "Migration",
    "MigrationEngine",
    "MigrationError",
    "MigrationRecord",
    "OwnershipError",
    "PoolState",
    "QueryBuilder",
    "QueryError",
    "Settings",
    "TableInfo",
    "Transaction",
    "TransactionError",
    "ValidationError",
    "current_tenant",
    "tenant_scope",
]
