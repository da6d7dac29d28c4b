"""Shared pytest fixtures for tenantdb tests."""

import pytest

from tenantdb.config import Settings
from tenantdb.pool import ConnectionPool
from tenantdb.service import DatabaseService


def make_settings(database_path: str, **overrides) -> Settings:
    """Settings for tests: small pool, no background tasks, no .env lookup."""
    values = {
        "database_path": database_path,
        "pool_maximum_size": 4,
        "pool_connection_timeout": 2.0,
        "health_check_interval": 30.0,
        "worker_threads": 4,
        "batch_max_size": 100,
        "tasks_batch_flush_enabled": False,
        "tasks_health_check_enabled": False,
        "tasks_connection_maintenance_enabled": False,
        "migrate_on_startup": True,
    }
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def db_path(tmp_path):
    """Path of a fresh DuckDB file for one test."""
    return str(tmp_path / "data" / "tenantdb.duckdb")


@pytest.fixture
def test_settings(db_path) -> Settings:
    return make_settings(db_path)


@pytest.fixture
def pool(test_settings):
    """A connection pool over the test database, closed after the test."""
    pool = ConnectionPool(test_settings)
    yield pool
    pool.shutdown()


@pytest.fixture
async def service(test_settings):
    """A started DatabaseService, shut down after the test."""
    db = DatabaseService(test_settings)
    await db.start()
    yield db
    await db.shutdown()


@pytest.fixture
async def invoices(service):
    """Service with an ``invoices`` table owned by tenant ``billing``."""
    await service.create_table(
        "invoices",
        "CREATE TABLE invoices (id INTEGER PRIMARY KEY, customer VARCHAR NOT NULL, total DOUBLE)",
        tenant="billing",
    )
    return service
