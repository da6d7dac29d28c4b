"""Prometheus metrics definitions for tenantdb.

This module defines all Prometheus metrics used for observability:
- Facade operation metrics (count, duration)
- Connection pool metrics (connections, reconnects, health checks)
- Ownership metrics (owned tables, denials)
- Write batching metrics (pending items, flushes, item outcomes)
- Migration and background task metrics
"""

import time
from collections.abc import Iterator
from contextlib import contextmanager

from prometheus_client import Counter, Gauge, Histogram, Info

# =============================================================================
# Facade Operation Metrics
# =============================================================================

OPERATION_COUNT = Counter(
    "tenantdb_operations_total",
    "Total number of facade operations",
    ["operation", "status"]  # status: success, error, denied
)

OPERATION_DURATION = Histogram(
    "tenantdb_operation_duration_seconds",
    "Facade operation duration in seconds",
    ["operation"],
    buckets=[0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0]
)

# =============================================================================
# Connection Pool Metrics
# =============================================================================

POOL_CONNECTIONS_IN_USE = Gauge(
    "tenantdb_pool_connections_in_use",
    "Pooled connections currently handed out"
)

POOL_CONNECTIONS_IDLE = Gauge(
    "tenantdb_pool_connections_idle",
    "Pooled connections waiting to be reused"
)

POOL_RECONNECTS_TOTAL = Counter(
    "tenantdb_pool_reconnects_total",
    "Pool recreations after a failed health check",
    ["status"]  # success, error
)

HEALTH_CHECKS_TOTAL = Counter(
    "tenantdb_health_checks_total",
    "Round-trip health checks executed against the database",
    ["result"]  # passed, failed
)

# =============================================================================
# Ownership Metrics
# =============================================================================

TABLES_OWNED = Gauge(
    "tenantdb_tables_owned",
    "Number of tables with a registered owner"
)

OWNERSHIP_DENIALS_TOTAL = Counter(
    "tenantdb_ownership_denials_total",
    "Write attempts refused because another tenant owns the table",
    ["operation"]
)

# =============================================================================
# Write Batching Metrics
# =============================================================================

BATCH_PENDING_ITEMS = Gauge(
    "tenantdb_batch_pending_items",
    "Items waiting in batch groups"
)

BATCH_FLUSHES_TOTAL = Counter(
    "tenantdb_batch_flushes_total",
    "Batch group flushes",
    ["trigger", "status"]  # trigger: size, manual, timer, shutdown
)

BATCH_ITEMS_TOTAL = Counter(
    "tenantdb_batch_items_total",
    "Batch items executed",
    ["status"]  # success, error
)

# =============================================================================
# Migration Metrics
# =============================================================================

MIGRATIONS_TOTAL = Counter(
    "tenantdb_migrations_total",
    "Migrations applied or rolled back",
    ["direction", "status"]  # direction: up, down
)

SCHEMA_VERSION = Gauge(
    "tenantdb_schema_version",
    "Highest applied migration version"
)

# =============================================================================
# Background Task Metrics
# =============================================================================

SCHEDULER_TICKS_TOTAL = Counter(
    "tenantdb_scheduler_ticks_total",
    "Background task iterations",
    ["task", "status"]
)

# =============================================================================
# Service Info
# =============================================================================

SERVICE_INFO = Info(
    "tenantdb_service",
    "tenantdb service information"
)


def set_service_info(version: str, duckdb_version: str) -> None:
    """Set service info labels."""
    SERVICE_INFO.info({
        "version": version,
        "duckdb_version": duckdb_version
    })


@contextmanager
def track_operation(operation: str) -> Iterator[None]:
    """Count and time one facade operation."""
    start_time = time.perf_counter()
    status = "success"
    try:
        yield
    except Exception as e:
        status = "denied" if type(e).__name__ == "OwnershipError" else "error"
        raise
    finally:
        OPERATION_DURATION.labels(operation=operation).observe(time.perf_counter() - start_time)
        OPERATION_COUNT.labels(operation=operation, status=status).inc()
