"""Tests for the connection pool: lazy init, health checks, reconnect, limits."""

import duckdb
import pytest

from tenantdb.errors import ConnectionError, InitializationError
from tenantdb.pool import ConnectionPool, PoolState

from conftest import make_settings


class TestLazyInitialization:
    """Tests for lazy setup on first use."""

    def test_not_initialized_until_first_use(self, pool):
        assert pool.state is PoolState.UNINITIALIZED
        assert not pool.is_initialized
        assert pool.status == "Disconnected"

        with pool.connection() as conn:
            assert conn.execute("SELECT 42").fetchone() == (42,)

        assert pool.is_initialized
        assert pool.state is PoolState.HEALTHY
        assert pool.status == "Connected"

    def test_creates_parent_directory(self, pool, db_path):
        """Test that the database directory is created on open."""
        from pathlib import Path

        pool.initialize()

        assert Path(db_path).exists()

    def test_initialization_failure(self, tmp_path):
        """Test that an unopenable path raises InitializationError."""
        # A directory cannot be opened as a database file
        pool = ConnectionPool(make_settings(str(tmp_path)))
        try:
            with pytest.raises(InitializationError, match="Lazy database initialization failed"):
                pool.initialize()
            assert pool.state is PoolState.UNINITIALIZED
        finally:
            pool.shutdown()

    def test_in_memory_database(self):
        pool = ConnectionPool(make_settings(":memory:"))
        try:
            with pool.connection() as conn:
                conn.execute("CREATE TABLE t (id INTEGER)")
            with pool.connection() as conn:
                conn.execute("INSERT INTO t VALUES (1)")
                assert conn.execute("SELECT COUNT(*) FROM t").fetchone() == (1,)
        finally:
            pool.shutdown()


class TestHealthChecks:
    """Tests for debounced health checks."""

    def test_health_check_debounced(self, pool, monkeypatch):
        """Test that a healthy pool skips the round-trip inside the interval."""
        pool.initialize()
        calls = []
        original = pool._round_trip

        def counting():
            calls.append(1)
            original()

        monkeypatch.setattr(pool, "_round_trip", counting)

        for _ in range(5):
            with pool.connection():
                pass

        assert calls == []

    def test_health_check_every_use_with_zero_interval(self, db_path, monkeypatch):
        pool = ConnectionPool(make_settings(db_path, health_check_interval=0))
        try:
            pool.initialize()
            calls = []
            original = pool._round_trip

            def counting():
                calls.append(1)
                original()

            monkeypatch.setattr(pool, "_round_trip", counting)

            for _ in range(3):
                with pool.connection():
                    pass

            assert len(calls) == 3
        finally:
            pool.shutdown()

    def test_test_connection(self, pool):
        assert pool.test_connection() is True
        assert pool.stats().last_health_check_at is not None


class TestReconnect:
    """Tests for recovery after the connection is lost."""

    def test_reconnects_after_connection_loss(self, db_path):
        """Test that a failed health check triggers one transparent reconnect."""
        pool = ConnectionPool(make_settings(db_path, health_check_interval=0))
        try:
            with pool.connection() as conn:
                conn.execute("CREATE TABLE kept (id INTEGER)")
                conn.execute("INSERT INTO kept VALUES (7)")

            pool._root.close()

            with pool.connection() as conn:
                assert conn.execute("SELECT id FROM kept").fetchone() == (7,)

            stats = pool.stats()
            assert stats.reconnects == 1
            assert stats.state == "healthy"
        finally:
            pool.shutdown()

    def test_failed_reconnect_raises(self, db_path, monkeypatch):
        """Test that a reconnect failure surfaces as ConnectionError and marks the pool unhealthy."""
        pool = ConnectionPool(make_settings(db_path, health_check_interval=0))
        try:
            pool.initialize()
            pool._root.close()

            def unavailable(*args, **kwargs):
                raise duckdb.IOException("database unavailable")

            monkeypatch.setattr(duckdb, "connect", unavailable)

            with pytest.raises(ConnectionError, match="Database reconnection failed"):
                with pool.connection():
                    pass

            assert pool.state is PoolState.UNHEALTHY
            assert pool.test_connection() is False

            with pytest.raises(ConnectionError, match="Database reconnection failed"):
                with pool.connection():
                    pass
        finally:
            pool.shutdown()

    def test_stale_connection_closed_on_release(self, db_path):
        """Test that connections borrowed before a reconnect do not return to the pool."""
        pool = ConnectionPool(make_settings(db_path, health_check_interval=0))
        try:
            lease = pool.checkout()
            pool._root.close()
            pool.ensure_connection()

            lease.release()

            assert pool.stats().idle == 0
            assert pool.stats().in_use == 0
        finally:
            pool.shutdown()


class TestLimits:
    """Tests for pool size and lifecycle limits."""

    def test_exhausted_pool_times_out(self, db_path):
        pool = ConnectionPool(make_settings(db_path, pool_maximum_size=1, pool_connection_timeout=0.1))
        try:
            with pool.connection():
                with pytest.raises(ConnectionError, match="Connection pool exhausted"):
                    with pool.connection():
                        pass
        finally:
            pool.shutdown()

    def test_connections_reused(self, pool):
        with pool.connection():
            pass
        with pool.connection():
            pass

        stats = pool.stats()
        assert stats.idle == 1
        assert stats.in_use == 0

    def test_lease_released_once(self, pool):
        lease = pool.checkout()
        assert pool.stats().in_use == 1

        lease.release()
        lease.release()

        assert lease.released
        assert pool.stats().in_use == 0

    def test_closed_pool_refuses_connections(self, pool):
        pool.initialize()
        pool.shutdown()

        assert pool.state is PoolState.CLOSED
        with pytest.raises(ConnectionError, match="closed"):
            with pool.connection():
                pass

    def test_shutdown_is_idempotent(self, pool):
        pool.initialize()
        pool.shutdown()
        pool.shutdown()


class TestWorkerPool:
    """Tests for running blocking work off the event loop."""

    async def test_run(self, pool):
        result = await pool.run(lambda conn: conn.execute("SELECT 1 + 1").fetchone()[0])
        assert result == 2

    async def test_is_healthy(self, pool):
        assert await pool.is_healthy() is True

    async def test_run_after_shutdown(self, pool):
        pool.shutdown()
        with pytest.raises(ConnectionError):
            await pool.run(lambda conn: None)
