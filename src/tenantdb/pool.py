"""DuckDB connection pool with lazy init, health checks and reconnect.

One root ``duckdb.connect()`` owns the database instance; pooled connections
are ``root.cursor()`` children, one per concurrent caller, bounded by
``pool_maximum_size``. Every blocking driver call is executed on a bounded
``ThreadPoolExecutor`` via ``run()``, so the event loop only ever suspends on
connection acquisition and database round-trips.

State machine::

    UNINITIALIZED -> INITIALIZING -> HEALTHY <-> UNHEALTHY -> CLOSED

Health checks are debounced through a shared timestamp without a lock:
concurrent callers may both skip or both run a check, which is harmless
because ``SELECT 1`` is idempotent.
"""

import asyncio
import contextvars
import functools
import queue
import threading
import time
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, TypeVar

import duckdb
import structlog

from tenantdb import metrics
from tenantdb.config import Settings, settings as default_settings
from tenantdb.errors import ConnectionError, InitializationError

logger = structlog.get_logger()

T = TypeVar("T")


class PoolState(str, Enum):
    UNINITIALIZED = "uninitialized"
    INITIALIZING = "initializing"
    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    CLOSED = "closed"


@dataclass(frozen=True)
class PoolStats:
    """Point-in-time view of the pool, published by the maintenance task."""

    state: str
    maximum_size: int
    in_use: int
    idle: int
    reconnects: int
    last_health_check_at: str | None

    def as_dict(self) -> dict[str, Any]:
        return asdict(self)


class ConnectionPool:
    """
    Pooled access to one DuckDB database.

    ``ensure_connection()`` is the only way in: it performs lazy setup,
    the debounced health check and at most one reconnect per call.
    """

    def __init__(self, settings: Settings | None = None) -> None:
        self._settings = settings or default_settings
        self._state = PoolState.UNINITIALIZED
        self._root: duckdb.DuckDBPyConnection | None = None
        self._ever_initialized = False
        self._idle: queue.Queue[duckdb.DuckDBPyConnection] = queue.Queue()
        self._slots = threading.BoundedSemaphore(self._settings.pool_maximum_size)
        self._generation = 0
        self._in_use = 0
        self._reconnects = 0
        self._last_check = 0.0
        self._last_check_wall: datetime | None = None
        self._lifecycle_lock = threading.Lock()  # init, reconnect, shutdown
        self._root_lock = threading.Lock()  # root connection and counters
        self._executor: ThreadPoolExecutor | None = None
        self._executor_lock = threading.Lock()

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def state(self) -> PoolState:
        return self._state

    @property
    def is_initialized(self) -> bool:
        return self._root is not None

    @property
    def is_connected(self) -> bool:
        return self._state is PoolState.HEALTHY

    @property
    def status(self) -> str:
        """Human-readable database status for operators."""
        return "Connected" if self.is_connected else "Disconnected"

    def stats(self) -> PoolStats:
        with self._root_lock:
            in_use = self._in_use
        return PoolStats(
            state=self._state.value,
            maximum_size=self._settings.pool_maximum_size,
            in_use=in_use,
            idle=self._idle.qsize(),
            reconnects=self._reconnects,
            last_health_check_at=(
                self._last_check_wall.isoformat() if self._last_check_wall else None
            ),
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def initialize(self) -> None:
        """Eagerly open the pool. Safe to call more than once."""
        self.ensure_connection()

    def ensure_connection(self) -> None:
        """
        Make sure the pool is usable before handing out a connection.

        Raises:
            InitializationError: the first lazy setup failed.
            ConnectionError: the pool is closed, or the health check failed
                and the single reconnect attempt failed as well. Once the pool
                has been open, a missing connection is reconnected like a
                failed health check.
        """
        if self._state is PoolState.CLOSED:
            raise ConnectionError("Connection pool is closed")

        if self._root is None and not self._ever_initialized:
            with self._lifecycle_lock:
                if self._state is PoolState.CLOSED:
                    raise ConnectionError("Connection pool is closed")
                if self._root is None and not self._ever_initialized:
                    self._lazy_initialize()
                    return

        now = time.monotonic()
        if (
            self._state is PoolState.HEALTHY
            and now - self._last_check < self._settings.health_check_interval
        ):
            return

        generation = self._generation
        try:
            self._round_trip()
        except (duckdb.Error, ConnectionError) as e:
            metrics.HEALTH_CHECKS_TOTAL.labels(result="failed").inc()
            logger.warning("database_connection_lost", error=str(e))
            self._state = PoolState.UNHEALTHY
            self._reconnect(generation)
            return

        metrics.HEALTH_CHECKS_TOTAL.labels(result="passed").inc()
        self._mark_healthy(now)
        logger.debug("database_health_check_passed")

    def _lazy_initialize(self) -> None:
        logger.info(
            "database_initializing",
            path=self._settings.database_path,
            pool_size=self._settings.pool_maximum_size,
        )
        self._state = PoolState.INITIALIZING
        try:
            self._open()
            self._round_trip()
        except (duckdb.Error, OSError, ConnectionError) as e:
            self._close_connections()
            self._state = PoolState.UNINITIALIZED
            logger.error("database_initialization_failed", error=str(e))
            raise InitializationError(f"Lazy database initialization failed: {e}") from e
        self._ever_initialized = True
        self._mark_healthy(time.monotonic())
        logger.info("database_initialized", path=self._settings.database_path)

    def _reconnect(self, seen_generation: int) -> None:
        with self._lifecycle_lock:
            if self._state is PoolState.CLOSED:
                raise ConnectionError("Connection pool is closed")
            if self._generation != seen_generation and self._state is PoolState.HEALTHY:
                # Another caller already recreated the pool
                return

            logger.warning("database_reconnecting", path=self._settings.database_path)
            self._reconnects += 1
            try:
                self._close_connections()
                self._open()
                self._round_trip()
            except (duckdb.Error, OSError, ConnectionError) as e:
                self._state = PoolState.UNHEALTHY
                metrics.POOL_RECONNECTS_TOTAL.labels(status="error").inc()
                logger.error("database_reconnect_failed", error=str(e))
                raise ConnectionError(f"Database reconnection failed: {e}") from e

            metrics.POOL_RECONNECTS_TOTAL.labels(status="success").inc()
            self._mark_healthy(time.monotonic())
            logger.info("database_reconnected", reconnects=self._reconnects)

    def _open(self) -> None:
        path = self._settings.database_path
        if not self._settings.is_in_memory:
            Path(path).parent.mkdir(parents=True, exist_ok=True)
        root = duckdb.connect(
            database=path,
            config={
                "threads": self._settings.database_threads,
                "memory_limit": self._settings.database_memory_limit,
            },
        )
        with self._root_lock:
            self._root = root
            self._generation += 1

    def _close_connections(self) -> None:
        while True:
            try:
                conn = self._idle.get_nowait()
            except queue.Empty:
                break
            _close_quietly(conn)
        with self._root_lock:
            root, self._root = self._root, None
        if root is not None:
            _close_quietly(root)
        metrics.POOL_CONNECTIONS_IDLE.set(0)

    def _round_trip(self) -> None:
        with self._root_lock:
            if self._root is None:
                raise ConnectionError("Connection pool is not open")
            cursor = self._root.cursor()
        try:
            row = cursor.execute("SELECT 1").fetchone()
        finally:
            _close_quietly(cursor)
        if row is None or row[0] != 1:
            raise ConnectionError("Health check returned an unexpected result")

    def _mark_healthy(self, now: float) -> None:
        self._state = PoolState.HEALTHY
        self._last_check = now
        self._last_check_wall = datetime.now(timezone.utc)

    def test_connection(self) -> bool:
        """Run the ``SELECT 1`` round-trip against the live pool."""
        try:
            self.ensure_connection()
            self._round_trip()
        except (duckdb.Error, ConnectionError, InitializationError) as e:
            logger.warning("database_health_check_failed", error=str(e))
            return False
        return True

    def shutdown(self) -> None:
        """Close every connection and the worker pool. Further use raises ConnectionError."""
        with self._lifecycle_lock:
            if self._state is PoolState.CLOSED:
                return
            self._state = PoolState.CLOSED
            self._close_connections()
        with self._executor_lock:
            executor, self._executor = self._executor, None
        if executor is not None:
            executor.shutdown(wait=True)
        logger.info("database_pool_closed", reconnects=self._reconnects)

    # ------------------------------------------------------------------
    # Connections
    # ------------------------------------------------------------------

    @contextmanager
    def connection(self) -> Iterator[duckdb.DuckDBPyConnection]:
        """
        Borrow one pooled connection.

        Usage:
            with pool.connection() as conn:
                conn.execute("SELECT 1").fetchone()
        """
        self.ensure_connection()
        conn, generation = self._acquire()
        try:
            yield conn
        finally:
            self._release(conn, generation)

    def checkout(self) -> "ConnectionLease":
        """Borrow a connection beyond a single ``with`` block (transactions, batch flushes)."""
        self.ensure_connection()
        conn, generation = self._acquire()
        return ConnectionLease(self, conn, generation)

    def _acquire(self) -> tuple[duckdb.DuckDBPyConnection, int]:
        timeout = self._settings.pool_connection_timeout
        if not self._slots.acquire(timeout=timeout):
            raise ConnectionError(
                f"Connection pool exhausted: no connection available within {timeout}s"
            )
        try:
            with self._root_lock:
                if self._state is PoolState.CLOSED or self._root is None:
                    raise ConnectionError("Connection pool is closed")
                generation = self._generation
                try:
                    conn = self._idle.get_nowait()
                except queue.Empty:
                    try:
                        conn = self._root.cursor()
                    except duckdb.Error as e:
                        raise ConnectionError(f"Failed to open pooled connection: {e}") from e
                self._in_use += 1
                in_use = self._in_use
        except BaseException:
            self._slots.release()
            raise
        metrics.POOL_CONNECTIONS_IN_USE.set(in_use)
        metrics.POOL_CONNECTIONS_IDLE.set(self._idle.qsize())
        return conn, generation

    def _release(self, conn: duckdb.DuckDBPyConnection, generation: int) -> None:
        with self._root_lock:
            self._in_use -= 1
            in_use = self._in_use
            reusable = self._state is not PoolState.CLOSED and generation == self._generation
            if reusable:
                self._idle.put(conn)
        if not reusable:
            _close_quietly(conn)
        self._slots.release()
        metrics.POOL_CONNECTIONS_IN_USE.set(in_use)
        metrics.POOL_CONNECTIONS_IDLE.set(self._idle.qsize())

    # ------------------------------------------------------------------
    # Worker pool
    # ------------------------------------------------------------------

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._state is PoolState.CLOSED:
                raise ConnectionError("Connection pool is closed")
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self._settings.worker_threads,
                    thread_name_prefix="tenantdb-worker",
                )
            return self._executor

    async def run_blocking(self, func: Callable[..., T], *args: Any) -> T:
        """Run a blocking callable on the worker pool, keeping the caller's context."""
        loop = asyncio.get_running_loop()
        ctx = contextvars.copy_context()
        return await loop.run_in_executor(
            self._get_executor(), functools.partial(ctx.run, func, *args)
        )

    async def run(self, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        """Execute ``work(conn)`` on the worker pool with a borrowed connection."""
        return await self.run_blocking(self._run_with_connection, work)

    def _run_with_connection(self, work: Callable[[duckdb.DuckDBPyConnection], T]) -> T:
        with self.connection() as conn:
            return work(conn)

    async def is_healthy(self) -> bool:
        return await self.run_blocking(self.test_connection)


class ConnectionLease:
    """A checked-out connection that goes back to the pool exactly once."""

    def __init__(
        self, pool: ConnectionPool, conn: duckdb.DuckDBPyConnection, generation: int
    ) -> None:
        self._pool = pool
        self._generation = generation
        self._released = False
        self.connection = conn

    @property
    def released(self) -> bool:
        return self._released

    def release(self) -> None:
        if self._released:
            return
        self._released = True
        self._pool._release(self.connection, self._generation)


def _close_quietly(conn: duckdb.DuckDBPyConnection) -> None:
    try:
        conn.close()
    except duckdb.Error as e:
        logger.debug("database_connection_close_failed", error=str(e))
