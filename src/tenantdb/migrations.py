"""Versioned schema migrations.

Applied versions are tracked in the ``schema_migrations`` table. Each
migration runs in its own transaction together with its tracking row, so a
version is recorded if and only if its statements committed. A failing
migration aborts the run; later migrations are not attempted.
"""

import threading
import time
from collections.abc import Callable, Iterable, Sequence
from dataclasses import dataclass, field
from datetime import datetime

import duckdb
import structlog

from tenantdb import metrics
from tenantdb.errors import MigrationError, ValidationError
from tenantdb.pool import ConnectionPool

logger = structlog.get_logger()

MIGRATIONS_TABLE = "schema_migrations"

MIGRATIONS_SCHEMA = f"""
CREATE TABLE IF NOT EXISTS {MIGRATIONS_TABLE} (
    version INTEGER PRIMARY KEY,
    description VARCHAR(255) NOT NULL,
    applied_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
    execution_time_ms BIGINT DEFAULT 0
)
"""


@dataclass(frozen=True)
class Migration:
    """
    One ordered schema change.

    ``down`` may be empty, which makes the migration irreversible.
    ``check`` is an optional precondition evaluated before any statement runs.
    """

    version: int
    description: str
    up: Sequence[str]
    down: Sequence[str] = ()
    check: Callable[[], bool] | None = field(default=None, compare=False)

    def validate(self) -> bool:
        return True if self.check is None else bool(self.check())

    @property
    def reversible(self) -> bool:
        return len(self.down) > 0


@dataclass(frozen=True)
class MigrationRecord:
    version: int
    description: str
    applied_at: datetime | None
    execution_time_ms: int


class MigrationEngine:
    def __init__(self, pool: ConnectionPool) -> None:
        self._pool = pool
        self._migrations: dict[int, Migration] = {}
        self._lock = threading.Lock()
        self._initialized = False

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    def register(self, migration: Migration) -> None:
        """
        Register a migration.

        Raises:
            ValidationError: version is not a positive integer or is already registered.
        """
        if isinstance(migration.version, bool) or not isinstance(migration.version, int):
            raise ValidationError(f"Migration version must be an integer, got {migration.version!r}")
        if migration.version < 1:
            raise ValidationError(f"Migration version must be positive, got {migration.version}")
        with self._lock:
            if migration.version in self._migrations:
                raise ValidationError(f"Migration version {migration.version} is already registered")
            self._migrations[migration.version] = migration
        logger.debug("migration_registered", version=migration.version, description=migration.description)

    def register_all(self, migrations: Iterable[Migration]) -> None:
        for migration in migrations:
            self.register(migration)

    @property
    def registered(self) -> list[Migration]:
        """Registered migrations sorted by version."""
        with self._lock:
            return [self._migrations[v] for v in sorted(self._migrations)]

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        """Create the tracking table. Idempotent."""

        def work(conn: duckdb.DuckDBPyConnection) -> None:
            conn.execute(MIGRATIONS_SCHEMA)

        try:
            await self._pool.run(work)
        except duckdb.Error as e:
            raise MigrationError(0, f"Failed to create {MIGRATIONS_TABLE} ({type(e).__name__})") from e
        self._initialized = True
        logger.info("migration_table_initialized")

    async def _ensure_initialized(self) -> None:
        if not self._initialized:
            await self.initialize()

    async def _applied_versions(self) -> set[int]:
        await self._ensure_initialized()

        def work(conn: duckdb.DuckDBPyConnection) -> set[int]:
            rows = conn.execute(f"SELECT version FROM {MIGRATIONS_TABLE}").fetchall()
            return {row[0] for row in rows}

        return await self._pool.run(work)

    async def current_version(self) -> int:
        """Highest applied version, 0 when nothing is applied."""
        await self._ensure_initialized()

        def work(conn: duckdb.DuckDBPyConnection) -> int:
            row = conn.execute(
                f"SELECT COALESCE(MAX(version), 0) FROM {MIGRATIONS_TABLE}"
            ).fetchone()
            return int(row[0]) if row else 0

        return await self._pool.run(work)

    async def is_applied(self, version: int) -> bool:
        await self._ensure_initialized()

        def work(conn: duckdb.DuckDBPyConnection) -> bool:
            row = conn.execute(
                f"SELECT COUNT(*) FROM {MIGRATIONS_TABLE} WHERE version = ?", [version]
            ).fetchone()
            return bool(row and row[0] > 0)

        return await self._pool.run(work)

    async def applied_migrations(self) -> list[MigrationRecord]:
        await self._ensure_initialized()

        def work(conn: duckdb.DuckDBPyConnection) -> list[MigrationRecord]:
            rows = conn.execute(
                f"SELECT version, description, applied_at, execution_time_ms "
                f"FROM {MIGRATIONS_TABLE} ORDER BY version"
            ).fetchall()
            return [MigrationRecord(*row) for row in rows]

        return await self._pool.run(work)

    async def pending(self) -> list[Migration]:
        applied = await self._applied_versions()
        return [m for m in self.registered if m.version not in applied]

    # ------------------------------------------------------------------
    # Apply / rollback
    # ------------------------------------------------------------------

    async def migrate(self) -> list[int]:
        """
        Apply every pending migration in ascending version order.

        Returns:
            Versions applied by this call, empty when already up to date.

        Raises:
            MigrationError: a migration failed validation or a statement
                failed. Nothing of that migration is recorded and later
                migrations are not attempted.
        """
        pending = await self.pending()
        if not pending:
            logger.info("migrations_up_to_date")
            return []

        logger.info("migrations_pending", count=len(pending), versions=[m.version for m in pending])
        applied = []
        for migration in pending:
            await self._apply(migration)
            applied.append(migration.version)

        metrics.SCHEMA_VERSION.set(applied[-1])
        logger.info("migrations_applied", versions=applied)
        return applied

    async def _apply(self, migration: Migration) -> None:
        try:
            valid = migration.validate()
        except Exception as e:
            metrics.MIGRATIONS_TOTAL.labels(direction="up", status="error").inc()
            logger.error(
                "migration_validation_failed", version=migration.version, error_type=type(e).__name__
            )
            raise MigrationError(
                migration.version,
                f"Migration validation raised {type(e).__name__} for version {migration.version}",
            ) from e
        if not valid:
            metrics.MIGRATIONS_TOTAL.labels(direction="up", status="error").inc()
            logger.error("migration_validation_failed", version=migration.version)
            raise MigrationError(
                migration.version,
                f"Migration validation failed for version {migration.version}",
            )

        def work(conn: duckdb.DuckDBPyConnection) -> int:
            start_time = time.perf_counter()
            conn.begin()
            try:
                for sql in migration.up:
                    conn.execute(sql)
                elapsed_ms = int((time.perf_counter() - start_time) * 1000)
                conn.execute(
                    f"INSERT INTO {MIGRATIONS_TABLE} (version, description, execution_time_ms) "
                    "VALUES (?, ?, ?)",
                    [migration.version, migration.description, elapsed_ms],
                )
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise
            return elapsed_ms

        logger.info("migration_applying", version=migration.version, description=migration.description)
        try:
            elapsed_ms = await self._pool.run(work)
        except duckdb.Error as e:
            metrics.MIGRATIONS_TOTAL.labels(direction="up", status="error").inc()
            logger.error("migration_failed", version=migration.version, error_type=type(e).__name__)
            raise MigrationError(
                migration.version,
                f"Failed to apply migration {migration.version} ({type(e).__name__})",
            ) from e

        metrics.MIGRATIONS_TOTAL.labels(direction="up", status="success").inc()
        logger.info("migration_applied", version=migration.version, execution_time_ms=elapsed_ms)

    async def rollback(self) -> int | None:
        """
        Reverse the highest applied migration.

        Returns the rolled back version, or None (with a warning) when nothing
        is applied, the migration is no longer registered or it has no
        ``down`` statements.
        """
        version = await self.current_version()
        if version == 0:
            logger.info("migration_rollback_nothing_applied")
            return None

        with self._lock:
            migration = self._migrations.get(version)
        if migration is None:
            logger.warning("migration_rollback_not_registered", version=version)
            return None
        if not migration.reversible:
            logger.warning("migration_rollback_irreversible", version=version)
            return None

        def work(conn: duckdb.DuckDBPyConnection) -> None:
            conn.begin()
            try:
                for sql in migration.down:
                    conn.execute(sql)
                conn.execute(f"DELETE FROM {MIGRATIONS_TABLE} WHERE version = ?", [version])
                conn.commit()
            except duckdb.Error:
                conn.rollback()
                raise

        logger.info("migration_rolling_back", version=version, description=migration.description)
        try:
            await self._pool.run(work)
        except duckdb.Error as e:
            metrics.MIGRATIONS_TOTAL.labels(direction="down", status="error").inc()
            logger.error("migration_rollback_failed", version=version, error_type=type(e).__name__)
            raise MigrationError(
                version, f"Failed to roll back migration {version} ({type(e).__name__})"
            ) from e

        metrics.MIGRATIONS_TOTAL.labels(direction="down", status="success").inc()
        logger.info("migration_rolled_back", version=version)
        return version
