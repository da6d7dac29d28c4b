"""Write batching keyed by SQL text.

Items sharing the exact same SQL template are queued together. When a group
reaches ``batch_max_size`` its pending list is swapped out and flushed in the
background; ``flush()`` (called manually or by the scheduler's timer) drains
whatever is left. A flush runs all drained items in order, on one connection,
inside one transaction.

Failures never propagate to the flush caller: each item's callback receives
a ``BatchOutcome`` and is the only signal. Flushes of the same group are
chained so items execute in the order they were appended.
"""

import asyncio
import inspect
import threading
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import duckdb
import structlog

from tenantdb import metrics, statements
from tenantdb.config import Settings, settings as default_settings
from tenantdb.errors import DatabaseError, QueryError
from tenantdb.pool import ConnectionPool

logger = structlog.get_logger()


@dataclass(frozen=True)
class BatchOutcome:
    """Result delivered to one batch item's callback."""

    success: bool
    value: int | None = None
    error: BaseException | None = None


BatchCallback = Callable[[BatchOutcome], Any]


@dataclass
class PendingWrite:
    sql: str
    params: tuple[Any, ...]
    callback: BatchCallback | None


@dataclass
class _BatchGroup:
    items: list[PendingWrite] = field(default_factory=list)
    lock: threading.Lock = field(default_factory=threading.Lock)
    # Last flush scheduled for this group; the next one waits for it
    tail: asyncio.Task | None = None


class BatchProcessor:
    """Coalesces repeated write statements and executes them in batches."""

    def __init__(self, pool: ConnectionPool, settings: Settings | None = None) -> None:
        self._pool = pool
        self._settings = settings or default_settings
        self._max_size = self._settings.batch_max_size
        self._groups: dict[str, _BatchGroup] = {}
        self._groups_lock = threading.Lock()
        self._inflight: set[asyncio.Task] = set()
        self._closed = False

    @property
    def max_size(self) -> int:
        return self._max_size

    def _group(self, sql: str) -> _BatchGroup:
        with self._groups_lock:
            group = self._groups.get(sql)
            if group is None:
                group = self._groups[sql] = _BatchGroup()
            return group

    async def add_batch(
        self, sql: str, params: Sequence[Any] = (), callback: BatchCallback | None = None
    ) -> None:
        """
        Queue one write.

        When the group reaches the size threshold, exactly the items queued
        so far are handed to a background flush and the group starts over.
        """
        if self._closed:
            raise QueryError("Batch processor is shut down")

        group = self._group(sql)
        with group.lock:
            group.items.append(PendingWrite(sql, tuple(params), callback))
            metrics.BATCH_PENDING_ITEMS.inc()
            if len(group.items) < self._max_size:
                return
            task = self._schedule_locked(sql, group, trigger="size")

        logger.debug("batch_threshold_reached", size=self._max_size, task=task.get_name())

    def _schedule_locked(self, sql: str, group: _BatchGroup, trigger: str) -> asyncio.Task:
        # Caller holds group.lock
        items, group.items = group.items, []
        metrics.BATCH_PENDING_ITEMS.dec(len(items))
        task = asyncio.create_task(
            self._execute_after(group.tail, sql, items, trigger),
            name=f"tenantdb-batch-{trigger}",
        )
        group.tail = task
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def flush(self, sql: str | None = None, *, trigger: str = "manual") -> int:
        """
        Flush one group, or every group with pending items.

        Waits for the flushed items and for background flushes already in
        flight, so every callback queued before this call has fired when it
        returns. Returns the number of items this call drained.
        """
        if sql is not None:
            with self._groups_lock:
                groups = [(sql, self._groups[sql])] if sql in self._groups else []
        else:
            with self._groups_lock:
                groups = list(self._groups.items())

        tasks = []
        drained = 0
        for key, group in groups:
            with group.lock:
                if not group.items:
                    continue
                drained += len(group.items)
                tasks.append(self._schedule_locked(key, group, trigger))

        waiting = set(tasks) | set(self._inflight)
        if waiting:
            await asyncio.wait(waiting)
        return drained

    def pending_count(self, sql: str | None = None) -> int:
        with self._groups_lock:
            if sql is not None:
                group = self._groups.get(sql)
                groups = [group] if group is not None else []
            else:
                groups = list(self._groups.values())
        total = 0
        for group in groups:
            with group.lock:
                total += len(group.items)
        return total

    async def shutdown(self) -> None:
        """Stop accepting items, flush everything and wait for in-flight flushes."""
        if self._closed:
            return
        self._closed = True
        flushed = await self.flush(trigger="shutdown")
        logger.info("batch_processor_shutdown", flushed=flushed)

    async def _execute_after(
        self,
        previous: asyncio.Task | None,
        sql: str,
        items: list[PendingWrite],
        trigger: str,
    ) -> None:
        if previous is not None and not previous.done():
            await asyncio.wait([previous])
        await self._execute(sql, items, trigger)

    async def _execute(self, sql: str, items: list[PendingWrite], trigger: str) -> None:
        def work(conn: duckdb.DuckDBPyConnection) -> list[int]:
            conn.begin()
            try:
                results = [statements.execute_update(conn, sql, item.params) for item in items]
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
            return results

        try:
            results = await self._pool.run(work)
        except Exception as e:
            error: BaseException = e
            if isinstance(e, duckdb.Error):
                error = QueryError(f"Batch execution failed ({type(e).__name__})")
                error.__cause__ = e
            elif not isinstance(e, DatabaseError):
                logger.error("batch_execution_crashed", trigger=trigger, exc_info=True)
            metrics.BATCH_FLUSHES_TOTAL.labels(trigger=trigger, status="error").inc()
            metrics.BATCH_ITEMS_TOTAL.labels(status="error").inc(len(items))
            logger.error(
                "batch_flush_failed",
                trigger=trigger,
                items=len(items),
                error_type=type(e).__name__,
            )
            for item in items:
                await self._deliver(item, BatchOutcome(success=False, error=error))
            return

        metrics.BATCH_FLUSHES_TOTAL.labels(trigger=trigger, status="success").inc()
        metrics.BATCH_ITEMS_TOTAL.labels(status="success").inc(len(items))
        logger.debug("batch_flushed", trigger=trigger, items=len(items))
        for item, value in zip(items, results):
            await self._deliver(item, BatchOutcome(success=True, value=value))

    async def _deliver(self, item: PendingWrite, outcome: BatchOutcome) -> None:
        if item.callback is None:
            return
        try:
            result = item.callback(outcome)
            if inspect.isawaitable(result):
                await result
        except Exception:
            logger.error("batch_callback_failed", success=outcome.success, exc_info=True)
