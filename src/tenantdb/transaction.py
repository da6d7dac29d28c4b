"""Transaction-scoped unit of work.

A ``Transaction`` is bound to one pooled connection for its whole life.
It performs no ownership checks: whoever opened the transaction (with an
identity, see ``DatabaseService.with_transaction``) is trusted for every
statement inside it. Identifier validation still applies.
"""

import asyncio
from collections.abc import AsyncIterator, Callable, Mapping, Sequence
from contextlib import asynccontextmanager
from typing import Any, TypeVar

import duckdb
import structlog

from tenantdb import statements
from tenantdb.errors import DatabaseError, TransactionError
from tenantdb.pool import ConnectionLease, ConnectionPool
from tenantdb.statements import Params, Row, query_errors

logger = structlog.get_logger()

T = TypeVar("T")


class Transaction:
    """
    Handle passed to a transaction body.

    Statements are executed one at a time in the order they were awaited;
    concurrent calls on the same handle queue up behind an ``asyncio.Lock``.
    """

    def __init__(self, pool: ConnectionPool, lease: ConnectionLease) -> None:
        self._pool = pool
        self._lease = lease
        self._lock = asyncio.Lock()
        self._active = True

    @property
    def active(self) -> bool:
        return self._active

    def _finish(self) -> None:
        self._active = False

    async def _run(self, func: Callable[..., T], *args: Any) -> T:
        async with self._lock:
            if not self._active:
                raise TransactionError("Transaction is no longer active")
            return await self._pool.run_blocking(func, self._lease.connection, *args)

    async def insert(self, table: str, data: Mapping[str, Any]) -> int:
        def work(conn: duckdb.DuckDBPyConnection) -> int:
            with query_errors(f"Failed to insert into table {table}", table=table):
                return statements.insert_row(conn, table, data)

        return await self._run(work)

    async def insert_batch(self, table: str, rows: Sequence[Mapping[str, Any]]) -> list[int]:
        def work(conn: duckdb.DuckDBPyConnection) -> list[int]:
            with query_errors(f"Failed to batch insert into table {table}", table=table):
                return statements.insert_rows(conn, table, rows)

        return await self._run(work)

    async def update(
        self, table: str, data: Mapping[str, Any], where: str, params: Params = ()
    ) -> int:
        def work(conn: duckdb.DuckDBPyConnection) -> int:
            with query_errors(f"Failed to update table {table}", table=table):
                return statements.update_rows(conn, table, data, where, params)

        return await self._run(work)

    async def delete(self, table: str, where: str, params: Params = ()) -> int:
        def work(conn: duckdb.DuckDBPyConnection) -> int:
            with query_errors(f"Failed to delete from table {table}", table=table):
                return statements.delete_rows(conn, table, where, params)

        return await self._run(work)

    async def select(
        self,
        table: str,
        columns: Sequence[str] = ("*",),
        where: str | None = None,
        params: Params = (),
    ) -> list[Row]:
        def work(conn: duckdb.DuckDBPyConnection) -> list[Row]:
            with query_errors(f"Failed to select from table {table}", table=table):
                return statements.select_rows(conn, table, columns, where, params)

        return await self._run(work)

    async def execute_query(self, sql: str, params: Params = ()) -> list[Row]:
        def work(conn: duckdb.DuckDBPyConnection) -> list[Row]:
            with query_errors("Failed to execute query"):
                return statements.fetch_rows(conn, sql, params)

        return await self._run(work)

    async def execute_update(self, sql: str, params: Params = ()) -> int:
        def work(conn: duckdb.DuckDBPyConnection) -> int:
            with query_errors("Failed to execute update"):
                return statements.execute_update(conn, sql, params)

        return await self._run(work)


@asynccontextmanager
async def open_transaction(pool: ConnectionPool, tenant: str) -> AsyncIterator[Transaction]:
    """
    Run the enclosed block as one database transaction.

    Commits when the block completes, rolls back and raises
    ``TransactionError`` when it raises. The connection always goes back to
    the pool.
    """
    lease = await pool.run_blocking(pool.checkout)
    tx = Transaction(pool, lease)
    try:
        try:
            await pool.run_blocking(lease.connection.begin)
        except duckdb.Error as e:
            raise TransactionError(f"Failed to begin transaction ({type(e).__name__})") from e
        logger.debug("transaction_started", owner=tenant)

        try:
            yield tx
        except Exception as e:
            tx._finish()
            await _rollback(pool, lease)
            logger.error("transaction_rolled_back", owner=tenant, error_type=type(e).__name__)
            if isinstance(e, TransactionError):
                raise
            detail = e.message if isinstance(e, DatabaseError) else type(e).__name__
            raise TransactionError(f"Transaction failed and was rolled back: {detail}") from e
        except BaseException:
            tx._finish()
            await asyncio.shield(_rollback(pool, lease))
            raise

        tx._finish()
        try:
            await pool.run_blocking(lease.connection.commit)
        except duckdb.Error as e:
            await _rollback(pool, lease)
            logger.error("transaction_commit_failed", owner=tenant, error_type=type(e).__name__)
            raise TransactionError(f"Transaction commit failed ({type(e).__name__})") from e
        logger.debug("transaction_committed", owner=tenant)
    finally:
        tx._finish()
        lease.release()


async def _rollback(pool: ConnectionPool, lease: ConnectionLease) -> None:
    try:
        await pool.run_blocking(lease.connection.rollback)
    except duckdb.Error as e:
        # Nothing to roll back when the driver already aborted the transaction
        logger.warning("transaction_rollback_failed", error_type=type(e).__name__)
