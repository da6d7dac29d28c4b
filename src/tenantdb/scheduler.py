"""Periodic background tasks: batch flush, health check, connection maintenance.

Each task is an asyncio loop that sleeps for its period, runs one tick and
keeps going whatever the tick did. A failed tick is logged and counted.
"""

import asyncio
from collections.abc import Awaitable, Callable

import structlog

from tenantdb import metrics
from tenantdb.batch import BatchProcessor
from tenantdb.config import Settings, settings as default_settings
from tenantdb.pool import ConnectionPool

logger = structlog.get_logger()

HealthCheck = Callable[[], Awaitable[bool]]


class TaskScheduler:
    """
    Owns the three periodic loops.

    ``start()`` only launches loops enabled in settings; ``shutdown()`` is
    safe whether or not any were started.
    """

    def __init__(
        self,
        batch: BatchProcessor,
        pool: ConnectionPool,
        health_check: HealthCheck,
        settings: Settings | None = None,
    ) -> None:
        self._batch = batch
        self._pool = pool
        self._health_check = health_check
        self._settings = settings or default_settings
        self._tasks: dict[str, asyncio.Task] = {}

    @property
    def running_tasks(self) -> list[str]:
        return sorted(name for name, task in self._tasks.items() if not task.done())

    def _plan(self) -> list[tuple[str, bool, float, Callable[[], Awaitable[None]]]]:
        s = self._settings
        return [
            ("batch_flush", s.tasks_batch_flush_enabled, s.tasks_batch_flush_period, self._flush_batches),
            ("health_check", s.tasks_health_check_enabled, s.tasks_health_check_period, self._check_health),
            (
                "connection_maintenance",
                s.tasks_connection_maintenance_enabled,
                s.tasks_connection_maintenance_period,
                self._maintain_connections,
            ),
        ]

    def start(self) -> None:
        """Launch every enabled loop. Calling it again while loops run does nothing."""
        started = []
        for name, enabled, period, action in self._plan():
            if not enabled:
                logger.info("scheduled_task_disabled", task=name)
                continue
            existing = self._tasks.get(name)
            if existing is not None and not existing.done():
                continue
            self._tasks[name] = asyncio.create_task(
                self._loop(name, period, action), name=f"tenantdb-{name}"
            )
            started.append(name)
            logger.info("scheduled_task_started", task=name, period_seconds=period)
        if started:
            logger.info("background_tasks_started", tasks=started)

    async def shutdown(self) -> None:
        """Cancel and await every started loop."""
        tasks, self._tasks = self._tasks, {}
        for task in tasks.values():
            task.cancel()
        for task in tasks.values():
            try:
                await task
            except asyncio.CancelledError:
                pass
        if tasks:
            logger.info("background_tasks_stopped", tasks=sorted(tasks))

    async def _loop(self, name: str, period: float, action: Callable[[], Awaitable[None]]) -> None:
        while True:
            try:
                await asyncio.sleep(period)
                await action()
                metrics.SCHEDULER_TICKS_TOTAL.labels(task=name, status="success").inc()
            except asyncio.CancelledError:
                logger.info("scheduled_task_cancelled", task=name)
                break
            except Exception as e:
                metrics.SCHEDULER_TICKS_TOTAL.labels(task=name, status="error").inc()
                logger.error("scheduled_task_failed", task=name, error=str(e))

    async def _flush_batches(self) -> None:
        flushed = await self._batch.flush(trigger="timer")
        if flushed:
            logger.debug("batch_flush_task_executed", flushed=flushed)

    async def _check_health(self) -> None:
        if await self._health_check():
            logger.debug("database_health_check_passed")
        else:
            logger.warning("database_health_check_failed")

    async def _maintain_connections(self) -> None:
        stats = self._pool.stats()
        metrics.POOL_CONNECTIONS_IN_USE.set(stats.in_use)
        metrics.POOL_CONNECTIONS_IDLE.set(stats.idle)
        logger.info("connection_pool_stats", **stats.as_dict())
