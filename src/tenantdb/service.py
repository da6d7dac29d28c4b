"""DatabaseService - the single entry point tenants call.

Composes the connection pool, ownership registry, batch processor,
migration engine and scheduler behind one async API.

Identity: every mutating call takes ``tenant=`` or uses the identity bound
with ``tenant_scope()``. Writes to a table owned by another tenant raise
``OwnershipError``. Reads are never gated.

Usage:
    db = DatabaseService()
    await db.start()
    with tenant_scope("billing"):
        await db.create_table("invoices", "CREATE TABLE invoices (id INTEGER PRIMARY KEY, total DOUBLE)")
        await db.insert("invoices", {"id": 1, "total": 9.5})
    rows = await db.select("invoices", ["id", "total"], "total > ?", [5])
    await db.shutdown()
"""

import asyncio
from collections.abc import Awaitable, Callable, Mapping, Sequence
from typing import Any, TypeVar

import duckdb
import structlog

from tenantdb import statements
from tenantdb.batch import BatchCallback, BatchProcessor
from tenantdb.config import Settings, settings as default_settings
from tenantdb.errors import ConnectionError, DatabaseError, QueryError, ValidationError
from tenantdb.identifiers import quote_table, validate_table_name
from tenantdb.identity import current_tenant, resolve_tenant
from tenantdb.metrics import track_operation
from tenantdb.migrations import Migration, MigrationEngine
from tenantdb.models import ColumnInfo, TableInfo
from tenantdb.ownership import OwnershipRegistry, ParsedStatement, describe_statement
from tenantdb.pool import ConnectionPool
from tenantdb.query_builder import QueryBuilder
from tenantdb.scheduler import TaskScheduler
from tenantdb.statements import Params, Row, query_errors
from tenantdb.transaction import Transaction, open_transaction

logger = structlog.get_logger()

T = TypeVar("T")

_TABLE_EXISTS_SQL = """
SELECT 1 FROM information_schema.tables
WHERE lower(table_name) = lower(?) AND table_schema = current_schema()
LIMIT 1
"""

_LIST_TABLES_SQL = """
SELECT table_name FROM information_schema.tables
WHERE table_schema = current_schema() AND table_type = 'BASE TABLE'
ORDER BY table_name
"""

_COLUMNS_SQL = """
SELECT column_name, data_type, is_nullable
FROM information_schema.columns
WHERE lower(table_name) = lower(?) AND table_schema = current_schema()
ORDER BY ordinal_position
"""

_PRIMARY_KEY_SQL = """
SELECT constraint_column_names
FROM duckdb_constraints()
WHERE lower(table_name) = lower(?)
  AND schema_name = current_schema()
  AND constraint_type = 'PRIMARY KEY'
"""


class DatabaseService:
    """Ownership-scoped access to one shared DuckDB database."""

    def __init__(
        self,
        settings: Settings | None = None,
        *,
        pool: ConnectionPool | None = None,
        ownership: OwnershipRegistry | None = None,
    ) -> None:
        self._settings = settings or default_settings
        self._pool = pool or ConnectionPool(self._settings)
        self._ownership = ownership or OwnershipRegistry()
        self._batch = BatchProcessor(self._pool, self._settings)
        self._migrations = MigrationEngine(self._pool)
        self._scheduler = TaskScheduler(self._batch, self._pool, self.is_healthy, self._settings)
        self._start_lock = asyncio.Lock()
        self._started = False
        self._closed = False

    # ------------------------------------------------------------------
    # Components
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def pool(self) -> ConnectionPool:
        return self._pool

    @property
    def ownership(self) -> OwnershipRegistry:
        return self._ownership

    @property
    def batch(self) -> BatchProcessor:
        return self._batch

    @property
    def migrations(self) -> MigrationEngine:
        return self._migrations

    @property
    def scheduler(self) -> TaskScheduler:
        return self._scheduler

    @property
    def started(self) -> bool:
        return self._started

    @property
    def database_status(self) -> str:
        return self._pool.status

    def register_migration(self, migration: Migration) -> None:
        self._migrations.register(migration)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        """
        Eager startup: open the pool, create the migration table, apply
        pending migrations (when ``migrate_on_startup``) and start the
        background tasks. Without ``start()`` the pool still initializes
        lazily on first use.
        """
        async with self._start_lock:
            if self._started:
                return
            if self._closed:
                raise ConnectionError("Database service is shut down")

            logger.info(
                "database_service_starting",
                path=self._settings.database_path,
                pool_size=self._settings.pool_maximum_size,
            )
            await self._pool.run_blocking(self._pool.initialize)
            await self._migrations.initialize()
            if self._settings.migrate_on_startup:
                await self._migrations.migrate()
            self._scheduler.start()
            self._started = True
            logger.info("database_service_started", status=self.database_status)

    async def shutdown(self) -> None:
        """Stop the scheduler, flush pending batches, then close the pool and worker threads."""
        if self._closed:
            return
        self._closed = True
        logger.info("database_service_stopping")
        await self._scheduler.shutdown()
        await self._batch.shutdown()
        await asyncio.to_thread(self._pool.shutdown)
        self._started = False
        logger.info("database_service_stopped")

    async def __aenter__(self) -> "DatabaseService":
        await self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.shutdown()

    # ------------------------------------------------------------------
    # Write gate
    # ------------------------------------------------------------------

    def _authorize(self, table: str, tenant: str | None, operation: str) -> str:
        caller = resolve_tenant(tenant, operation=operation)
        validate_table_name(table)
        self._ownership.require_write(table, caller, operation)
        return caller

    def _authorize_statement(
        self, sql: str, table: str | None, tenant: str | None, operation: str
    ) -> tuple[str, ParsedStatement, str | None]:
        """
        Resolve caller, parsed statement and gated table of raw SQL.

        A write to rows (INSERT, UPDATE, DELETE) or to a table's definition
        must be recognisable from its text; ``table=`` then has to agree
        with it. Other DDL (views, sequences) is gated on the table declared
        with ``table=``. Anything else is refused before it runs.
        """
        caller = resolve_tenant(tenant, operation=operation)
        statement = describe_statement(sql)
        if not statement.is_write:
            return caller, statement, None

        if table is not None:
            validate_table_name(table)
        target = statement.table
        if target is not None:
            if table is not None and target.lower() != table.lower():
                raise QueryError(
                    f"Statement targets table '{target}' but was declared for table '{table}'"
                )
        elif not statement.requires_table and table is not None:
            target = table

        if target is None:
            logger.warning("ungated_write_refused", keyword=statement.kind, operation=operation)
            if statement.requires_table:
                raise QueryError(f"Cannot determine the target table of this {statement.kind} statement")
            raise QueryError(
                f"Cannot determine the target table of this {statement.kind} statement; "
                "pass table= to declare it"
            )
        self._ownership.require_write(target, caller, operation)
        return caller, statement, target

    @staticmethod
    def _require_single(sql: str, kind: str) -> None:
        """Refuse rendered SQL that parses as anything but one ``kind`` statement."""
        statement = describe_statement(sql)
        if statement.kind != kind:
            raise QueryError(f"Expected a single {kind} statement, got {statement.kind}")

    # ------------------------------------------------------------------
    # Tables
    # ------------------------------------------------------------------

    async def create_table(self, name: str, schema_sql: str, *, tenant: str | None = None) -> bool:
        """
        Create a table and claim it for the caller.

        ``schema_sql`` must be a CREATE TABLE statement for ``name``.
        """
        with track_operation("create_table"):
            caller = self._authorize(name, tenant, "create")
            try:
                statement = describe_statement(schema_sql)
            except QueryError as e:
                raise ValidationError(f"Schema for table {name} is not a single statement") from e
            created = statement.table
            if not statement.creates_table or created is None:
                raise ValidationError(f"Schema for table {name} must be a CREATE TABLE statement")
            if created.lower() != name.lower():
                raise ValidationError(
                    f"Schema creates table '{created}' but table '{name}' was requested"
                )

            with query_errors(f"Failed to create table {name}", table=name):
                await self._pool.run(lambda conn: statements.execute_update(conn, schema_sql))

            self._ownership.claim(name, caller)
            logger.info("table_created", table=name, owner=self._ownership.get_owner(name))
            return True

    async def drop_table(self, name: str, *, tenant: str | None = None) -> bool:
        """Drop a table if it exists and forget its owner. Dropping a missing table succeeds."""
        with track_operation("drop_table"):
            self._authorize(name, tenant, "drop")
            sql = f"DROP TABLE IF EXISTS {quote_table(name)}"
            with query_errors(f"Failed to drop table {name}", table=name):
                await self._pool.run(lambda conn: statements.execute_update(conn, sql))
            self._ownership.release(name)
            logger.info("table_dropped", table=name)
            return True

    async def table_exists(self, name: str) -> bool:
        with track_operation("table_exists"):
            validate_table_name(name)
            with query_errors(f"Failed to check if table {name} exists", table=name):
                rows = await self._pool.run(
                    lambda conn: conn.execute(_TABLE_EXISTS_SQL, [name]).fetchall()
                )
            return bool(rows)

    async def get_table_info(self, name: str) -> TableInfo | None:
        """Columns of ``name`` with types, nullability and primary key flags, or None."""
        with track_operation("get_table_info"):
            validate_table_name(name)

            def work(conn: duckdb.DuckDBPyConnection) -> TableInfo | None:
                columns = conn.execute(_COLUMNS_SQL, [name]).fetchall()
                if not columns:
                    return None
                primary_keys: set[str] = set()
                for (names,) in conn.execute(_PRIMARY_KEY_SQL, [name]).fetchall():
                    primary_keys.update(names or [])
                return TableInfo(
                    name=name,
                    columns=[
                        ColumnInfo(
                            name=column,
                            type=data_type,
                            nullable=is_nullable == "YES",
                            primary_key=column in primary_keys,
                        )
                        for column, data_type, is_nullable in columns
                    ],
                )

            with query_errors(f"Failed to get table info for {name}", table=name):
                return await self._pool.run(work)

    async def list_tables(self) -> list[str]:
        with track_operation("list_tables"):
            with query_errors("Failed to list tables"):
                rows = await self._pool.run(lambda conn: conn.execute(_LIST_TABLES_SQL).fetchall())
            return [row[0] for row in rows]

    # ------------------------------------------------------------------
    # Rows
    # ------------------------------------------------------------------

    async def insert(self, table: str, data: Mapping[str, Any], *, tenant: str | None = None) -> int:
        """Insert one row; returns the generated key or the affected row count."""
        with track_operation("insert"):
            self._authorize(table, tenant, "insert")
            with query_errors(f"Failed to insert into table {table}", table=table):
                return await self._pool.run(lambda conn: statements.insert_row(conn, table, data))

    async def insert_batch(
        self, table: str, rows: Sequence[Mapping[str, Any]], *, tenant: str | None = None
    ) -> list[int]:
        """Insert rows atomically; all rows must share the same columns."""
        with track_operation("insert_batch"):
            self._authorize(table, tenant, "insert")
            if not rows:
                return []

            def work(conn: duckdb.DuckDBPyConnection) -> list[int]:
                conn.begin()
                try:
                    ids = statements.insert_rows(conn, table, rows)
                    conn.commit()
                except (duckdb.Error, ValidationError):
                    conn.rollback()
                    raise
                return ids

            with query_errors(f"Failed to batch insert into table {table}", table=table):
                return await self._pool.run(work)

    async def update(
        self,
        table: str,
        data: Mapping[str, Any],
        where: str,
        params: Params = (),
        *,
        tenant: str | None = None,
    ) -> int:
        with track_operation("update"):
            self._authorize(table, tenant, "update")
            sql = statements.render_update(table, statements.data_columns(data, "update"), where)
            self._require_single(sql, "UPDATE")
            with query_errors(f"Failed to update table {table}", table=table):
                return await self._pool.run(
                    lambda conn: statements.update_rows(conn, table, data, where, params)
                )

    async def delete(
        self, table: str, where: str, params: Params = (), *, tenant: str | None = None
    ) -> int:
        with track_operation("delete"):
            self._authorize(table, tenant, "delete")
            self._require_single(statements.render_delete(table, where), "DELETE")
            with query_errors(f"Failed to delete from table {table}", table=table):
                return await self._pool.run(
                    lambda conn: statements.delete_rows(conn, table, where, params)
                )

    async def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        where: str | None = None,
        params: Params = (),
    ) -> list[Row]:
        with track_operation("select"):
            sql = statements.render_select(table, columns, where)
            self._require_single(sql, "SELECT")
            with query_errors(f"Failed to select from table {table}", table=table):
                return await self._pool.run(lambda conn: statements.fetch_rows(conn, sql, params))

    # ------------------------------------------------------------------
    # Raw SQL
    # ------------------------------------------------------------------

    async def execute_query(self, sql: str, params: Params = ()) -> list[Row]:
        """Run a read-only statement. Write statements must go through ``execute_update``."""
        with track_operation("execute_query"):
            statement = describe_statement(sql)
            if statement.is_write:
                raise QueryError(
                    f"execute_query is read-only; use execute_update for {statement.kind} statements"
                )
            with query_errors("Failed to execute query"):
                return await self._pool.run(lambda conn: statements.fetch_rows(conn, sql, params))

    async def execute_update(
        self,
        sql: str,
        params: Params = (),
        *,
        table: str | None = None,
        tenant: str | None = None,
    ) -> int:
        """
        Run a raw write or DDL statement behind the ownership gate.

        ``sql`` must be one statement. The target table is read from
        INSERT/UPDATE/DELETE/TRUNCATE and TABLE or INDEX DDL text; ``table``
        must agree with it, and only declares the target of other DDL.
        A CREATE TABLE claims the table and a DROP TABLE releases it.
        """
        with track_operation("execute_update"):
            caller, statement, target = self._authorize_statement(sql, table, tenant, "update")
            with query_errors("Failed to execute update", table=target):
                affected = await self._pool.run(
                    lambda conn: statements.execute_update(conn, sql, params)
                )

            if statement.creates_table:
                self._ownership.claim(target, caller)
            elif statement.drops_table:
                self._ownership.release(target)
            return affected

    # ------------------------------------------------------------------
    # Batching
    # ------------------------------------------------------------------

    async def add_batch(
        self,
        sql: str,
        params: Params = (),
        callback: BatchCallback | None = None,
        *,
        table: str | None = None,
        tenant: str | None = None,
    ) -> None:
        """Queue a write for batched execution; ownership is checked now, at enqueue time."""
        with track_operation("add_batch"):
            self._authorize_statement(sql, table, tenant, "batch")
            await self._batch.add_batch(sql, params, callback)

    async def flush_batches(self, sql: str | None = None) -> int:
        with track_operation("flush_batches"):
            return await self._batch.flush(sql)

    # ------------------------------------------------------------------
    # Transactions and builders
    # ------------------------------------------------------------------

    async def with_transaction(
        self, body: Callable[[Transaction], Awaitable[T]], *, tenant: str | None = None
    ) -> T:
        """
        Run ``body(tx)`` inside one transaction.

        The caller must carry an identity to open the transaction. Statements
        issued through ``tx`` are not ownership-checked: opening the
        transaction is the authorization for everything inside it.

        Raises:
            TransactionError: the body raised; everything was rolled back.
        """
        with track_operation("with_transaction"):
            caller = resolve_tenant(tenant, operation="transaction")
            async with open_transaction(self._pool, caller) as tx:
                return await body(tx)

    def query_builder(self) -> QueryBuilder:
        return QueryBuilder(self)

    # ------------------------------------------------------------------
    # Health and ownership queries
    # ------------------------------------------------------------------

    async def is_healthy(self) -> bool:
        if self._closed:
            return False
        try:
            return await self._pool.is_healthy()
        except DatabaseError as e:
            logger.warning("database_health_check_failed", error=e.message)
            return False

    async def get_table_owner(self, table: str) -> str | None:
        return self._ownership.get_owner(table)

    async def is_table_owner(self, table: str, *, tenant: str | None = None) -> bool:
        """True when the caller may write to ``table`` (it owns it or nobody does)."""
        caller = tenant if tenant is not None else current_tenant()
        if caller is None:
            return self._ownership.get_owner(table) is None
        return self._ownership.check(table, caller)
