"""Blocking adapter over the async DatabaseService.

``BlockingDatabase`` runs the service on a private event loop thread and
exposes each facade operation as a plain method that waits for the async
result. The methods are generated from ``BLOCKING_METHODS`` so the two
surfaces cannot drift apart.

The tenant bound with ``tenant_scope()`` in the calling thread is carried
over to the loop for the duration of each call.

Usage:
    with BlockingDatabase(DatabaseService(settings)) as db:
        with tenant_scope("billing"):
            db.create_table("invoices", "CREATE TABLE invoices (id INTEGER, total DOUBLE)")
            db.insert("invoices", {"id": 1, "total": 9.5})
        db.select("invoices")
"""

import asyncio
import contextvars
import functools
import threading
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import structlog

from tenantdb.errors import ConnectionError
from tenantdb.identity import current_tenant, tenant_scope
from tenantdb.query_builder import QueryBuilder
from tenantdb.service import DatabaseService
from tenantdb.transaction import Transaction

logger = structlog.get_logger()

T = TypeVar("T")

BLOCKING_METHODS = (
    "start",
    "create_table",
    "drop_table",
    "table_exists",
    "get_table_info",
    "list_tables",
    "insert",
    "insert_batch",
    "update",
    "delete",
    "select",
    "execute_query",
    "execute_update",
    "add_batch",
    "flush_batches",
    "is_healthy",
    "get_table_owner",
    "is_table_owner",
)

TRANSACTION_METHODS = (
    "insert",
    "insert_batch",
    "update",
    "delete",
    "select",
    "execute_query",
    "execute_update",
)


def _blocking(source: Callable[..., Any], name: str) -> Callable[..., Any]:
    @functools.wraps(source)
    def method(self: "BlockingDatabase", *args: Any, **kwargs: Any) -> Any:
        return self.run(lambda: getattr(self._service, name)(*args, **kwargs))

    return method


def _blocking_tx(source: Callable[..., Any], name: str) -> Callable[..., Any]:
    @functools.wraps(source)
    def method(self: "BlockingTransaction", *args: Any, **kwargs: Any) -> Any:
        return self._submit(getattr(self._tx, name)(*args, **kwargs))

    return method


class BlockingTransaction:
    """Synchronous view of a ``Transaction`` for bodies running off the loop."""

    def __init__(self, tx: Transaction, loop: asyncio.AbstractEventLoop) -> None:
        self._tx = tx
        self._loop = loop

    def _submit(self, coro: Awaitable[T]) -> T:
        return asyncio.run_coroutine_threadsafe(coro, self._loop).result()

    @property
    def active(self) -> bool:
        return self._tx.active


class BlockingQueryBuilder(QueryBuilder):
    """Query builder whose ``execute`` and ``execute_count`` block."""

    def __init__(self, db: "BlockingDatabase") -> None:
        super().__init__(db.service)
        self._db = db

    def execute(self) -> list[dict[str, Any]]:  # type: ignore[override]
        return self._db.run(super().execute)

    def execute_count(self) -> int:  # type: ignore[override]
        return self._db.run(super().execute_count)


class BlockingDatabase:
    def __init__(self, service: DatabaseService | None = None, *, start: bool = True) -> None:
        self._service = service or DatabaseService()
        self._loop = asyncio.new_event_loop()
        self._thread = threading.Thread(
            target=self._run_loop, name="tenantdb-event-loop", daemon=True
        )
        self._closed = False
        self._thread.start()
        if start:
            try:
                self.start()
            except BaseException:
                self.close()
                raise

    @property
    def service(self) -> DatabaseService:
        return self._service

    def _run_loop(self) -> None:
        asyncio.set_event_loop(self._loop)
        self._loop.run_forever()

    def run(self, factory: Callable[[], Awaitable[T]]) -> T:
        """Run ``factory()`` on the service loop and wait for its result."""
        if self._closed:
            raise ConnectionError("Database is closed")
        if threading.current_thread() is self._thread:
            raise RuntimeError("Blocking database call from its own event loop would deadlock")

        tenant = current_tenant()

        async def runner() -> T:
            if tenant is None:
                return await factory()
            with tenant_scope(tenant):
                return await factory()

        return asyncio.run_coroutine_threadsafe(runner(), self._loop).result()

    def with_transaction(
        self, body: Callable[[BlockingTransaction], T], *, tenant: str | None = None
    ) -> T:
        """
        Run a synchronous ``body(tx)`` inside one transaction.

        The body runs on a worker thread while the loop serves its statements.
        """

        async def async_body(tx: Transaction) -> T:
            handle = BlockingTransaction(tx, self._loop)
            ctx = contextvars.copy_context()
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(None, functools.partial(ctx.run, body, handle))

        return self.run(lambda: self._service.with_transaction(async_body, tenant=tenant))

    def query_builder(self) -> BlockingQueryBuilder:
        return BlockingQueryBuilder(self)

    def close(self) -> None:
        """Shut the service down and stop the loop thread."""
        if self._closed:
            return
        try:
            self.run(self._service.shutdown)
        finally:
            self._closed = True
            self._loop.call_soon_threadsafe(self._loop.stop)
            self._thread.join()
            self._loop.close()
            logger.debug("blocking_database_closed")

    def __enter__(self) -> "BlockingDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


for _name in BLOCKING_METHODS:
    setattr(BlockingDatabase, _name, _blocking(getattr(DatabaseService, _name), _name))

for _name in TRANSACTION_METHODS:
    setattr(BlockingTransaction, _name, _blocking_tx(getattr(Transaction, _name), _name))
