"""Tests for DatabaseService table, row and raw SQL operations."""

import pytest

from tenantdb.errors import ConnectionError, OwnershipError, QueryError, ValidationError
from tenantdb.identity import tenant_scope
from tenantdb.service import DatabaseService

from conftest import make_settings


class TestLifecycle:
    """Tests for start, shutdown and lazy use."""

    async def test_start_is_idempotent(self, service):
        await service.start()
        assert service.started
        assert service.database_status == "Connected"

    async def test_lazy_use_without_start(self, test_settings):
        """Test that operations initialize the pool on first use."""
        db = DatabaseService(test_settings)
        try:
            assert not db.started
            assert await db.execute_query("SELECT 1 AS one") == [{"one": 1}]
            assert db.pool.is_initialized
        finally:
            await db.shutdown()

    async def test_shutdown_then_start_refused(self, test_settings):
        db = DatabaseService(test_settings)
        await db.start()
        await db.shutdown()

        assert await db.is_healthy() is False
        with pytest.raises(ConnectionError):
            await db.start()

    async def test_async_context_manager(self, test_settings):
        async with DatabaseService(test_settings) as db:
            assert await db.is_healthy()
        assert db.pool.state.value == "closed"

    async def test_data_survives_restart(self, db_path):
        """Test that a file database keeps its tables across services."""
        async with DatabaseService(make_settings(db_path)) as db:
            await db.create_table("kept", "CREATE TABLE kept (id INTEGER)", tenant="a")
            await db.insert("kept", {"id": 1}, tenant="a")

        async with DatabaseService(make_settings(db_path)) as db:
            assert await db.select("kept") == [{"id": 1}]
            # Ownership lives in memory and starts empty
            assert await db.get_table_owner("kept") is None


class TestTables:
    """Tests for table DDL and introspection."""

    async def test_create_table(self, invoices):
        assert await invoices.table_exists("invoices")
        assert await invoices.table_exists("INVOICES")
        assert await invoices.get_table_owner("invoices") == "billing"
        assert await invoices.list_tables() == ["invoices", "schema_migrations"]

    async def test_create_table_schema_must_match(self, service):
        with pytest.raises(ValidationError, match="must be a CREATE TABLE statement"):
            await service.create_table("t", "SELECT 1", tenant="a")
        with pytest.raises(ValidationError, match="Schema creates table 'other'"):
            await service.create_table("t", "CREATE TABLE other (id INTEGER)", tenant="a")
        with pytest.raises(ValidationError, match="not a single statement"):
            await service.create_table("t", "CREATE TABLE t (id INTEGER); DROP TABLE schema_migrations", tenant="a")

        assert not await service.table_exists("other")

    async def test_create_existing_table_fails(self, invoices):
        """Test that a driver failure surfaces as QueryError without the driver message."""
        with pytest.raises(QueryError) as exc_info:
            await invoices.create_table("invoices", "CREATE TABLE invoices (id INTEGER)", tenant="billing")

        assert exc_info.value.message.startswith("Failed to create table invoices (")
        assert exc_info.value.__cause__ is not None

    async def test_create_table_invalid_name(self, service):
        with pytest.raises(ValidationError):
            await service.create_table("bad-name", "CREATE TABLE bad (id INTEGER)", tenant="a")

    async def test_drop_table_idempotent(self, invoices):
        assert await invoices.drop_table("invoices", tenant="billing")
        assert not await invoices.table_exists("invoices")
        assert await invoices.drop_table("invoices", tenant="billing")

    async def test_get_table_info(self, invoices):
        info = await invoices.get_table_info("invoices")

        assert info.name == "invoices"
        assert [c.name for c in info.columns] == ["id", "customer", "total"]
        columns = {c.name: c for c in info.columns}
        assert columns["id"].primary_key
        assert columns["id"].type == "INTEGER"
        assert not columns["customer"].primary_key
        assert columns["customer"].nullable is False
        assert columns["total"].nullable is True
        assert columns["total"].type == "DOUBLE"

    async def test_get_table_info_missing(self, service):
        assert await service.get_table_info("missing") is None

    async def test_table_exists_validates_name(self, service):
        with pytest.raises(ValidationError):
            await service.table_exists("x; DROP TABLE y")


class TestRows:
    """Tests for CRUD operations."""

    async def test_insert_returns_generated_key(self, service):
        await service.pool.run(lambda conn: conn.execute("CREATE SEQUENCE ticket_seq START 100"))
        await service.create_table(
            "tickets",
            "CREATE TABLE tickets (id INTEGER PRIMARY KEY DEFAULT nextval('ticket_seq'), title VARCHAR)",
            tenant="support",
        )

        first = await service.insert("tickets", {"title": "a"}, tenant="support")
        second = await service.insert("tickets", {"title": "b"}, tenant="support")

        assert (first, second) == (100, 101)

    async def test_insert_without_integer_key_returns_one(self, service):
        await service.create_table("notes", "CREATE TABLE notes (body VARCHAR)", tenant="a")

        assert await service.insert("notes", {"body": "hello"}, tenant="a") == 1

    async def test_insert_batch(self, invoices):
        rows = [{"id": i, "customer": "acme", "total": float(i)} for i in range(1, 4)]

        ids = await invoices.insert_batch("invoices", rows, tenant="billing")

        assert ids == [1, 2, 3]
        assert len(await invoices.select("invoices")) == 3

    async def test_insert_batch_atomic(self, invoices):
        """Test that one failing row leaves the table unchanged."""
        rows = [
            {"id": 1, "customer": "acme", "total": 1.0},
            {"id": 1, "customer": "duplicate", "total": 2.0},
        ]

        with pytest.raises(QueryError, match="Failed to batch insert into table invoices"):
            await invoices.insert_batch("invoices", rows, tenant="billing")

        assert await invoices.select("invoices") == []

    async def test_insert_batch_mismatched_columns(self, invoices):
        rows = [{"id": 1, "customer": "a"}, {"id": 2, "total": 2.0}]

        with pytest.raises(ValidationError, match="different columns"):
            await invoices.insert_batch("invoices", rows, tenant="billing")

        assert await invoices.select("invoices") == []

    async def test_insert_batch_empty(self, invoices):
        assert await invoices.insert_batch("invoices", [], tenant="billing") == []

    async def test_update_and_delete_counts(self, invoices):
        with tenant_scope("billing"):
            for i in range(1, 5):
                await invoices.insert("invoices", {"id": i, "customer": "acme", "total": 10.0 * i})

            assert await invoices.update("invoices", {"customer": "globex"}, "total > ?", [15]) == 3
            assert await invoices.delete("invoices", "customer = ?", ["globex"]) == 3

        assert await invoices.select("invoices", ["id"]) == [{"id": 1}]

    async def test_select_with_where(self, invoices):
        with tenant_scope("billing"):
            await invoices.insert("invoices", {"id": 1, "customer": "acme", "total": None})
            await invoices.insert("invoices", {"id": 2, "customer": "globex", "total": 5.0})

        rows = await invoices.select("invoices", ["id", "total"], "id = ?", [1])

        assert rows == [{"id": 1, "total": None}]

    async def test_select_invalid_column(self, invoices):
        """Test that a column smuggling a second statement is refused before reaching the database."""
        with pytest.raises(ValidationError):
            await invoices.select("invoices", ["id; DROP TABLE invoices"])

        assert await invoices.table_exists("invoices")

    async def test_constraint_error_hides_values(self, invoices):
        """Test that driver errors never leak row values into the message."""
        await invoices.insert("invoices", {"id": 1, "customer": "secret-customer"}, tenant="billing")

        with pytest.raises(QueryError) as exc_info:
            await invoices.insert("invoices", {"id": 1, "customer": "secret-customer"}, tenant="billing")

        assert "secret-customer" not in exc_info.value.message
        assert "ConstraintException" in exc_info.value.message


class TestRawSql:
    """Tests for execute_query and execute_update."""

    async def test_execute_query_with_params(self, invoices):
        await invoices.insert("invoices", {"id": 1, "customer": "acme", "total": 3.0}, tenant="billing")

        rows = await invoices.execute_query("SELECT customer FROM invoices WHERE total > ?", [1])

        assert rows == [{"customer": "acme"}]

    async def test_execute_query_refuses_writes(self, invoices):
        with pytest.raises(QueryError, match="read-only"):
            await invoices.execute_query("DELETE FROM invoices")

    async def test_execute_update_extracts_table(self, invoices):
        affected = await invoices.execute_update(
            "INSERT INTO invoices (id, customer) VALUES (?, ?), (?, ?)",
            [1, "a", 2, "b"],
            tenant="billing",
        )

        assert affected == 2

    async def test_execute_update_declared_table(self, invoices):
        with pytest.raises(QueryError, match="declared for table 'other'"):
            await invoices.execute_update("DELETE FROM invoices", table="other", tenant="billing")

    async def test_execute_update_unidentifiable_write_refused(self, invoices):
        with pytest.raises(QueryError, match="Cannot determine the target table"):
            await invoices.execute_update("CREATE VIEW big_invoices AS SELECT * FROM invoices", tenant="billing")

        await invoices.execute_update(
            "CREATE VIEW big_invoices AS SELECT * FROM invoices", table="invoices", tenant="billing"
        )
        assert await invoices.execute_query("SELECT COUNT(*) AS n FROM big_invoices") == [{"n": 0}]

    async def test_execute_update_schema_qualified_table(self, invoices):
        with pytest.raises(OwnershipError):
            await invoices.execute_update("INSERT INTO main.invoices VALUES (1, 'a', 1.0)", tenant="reporting")

        affected = await invoices.execute_update("INSERT INTO main.invoices VALUES (1, 'a', 1.0)", tenant="billing")
        assert affected == 1

    async def test_execute_update_create_claims_and_drop_releases(self, service):
        await service.execute_update("CREATE TABLE audit (id INTEGER)", tenant="ops")
        assert await service.get_table_owner("audit") == "ops"

        with pytest.raises(OwnershipError):
            await service.execute_update("DROP TABLE audit", tenant="intruder")

        await service.execute_update("DROP TABLE audit", tenant="ops")
        assert await service.get_table_owner("audit") is None
        assert not await service.table_exists("audit")

    async def test_execute_update_requires_identity(self, service):
        with pytest.raises(QueryError, match="No tenant identity"):
            await service.execute_update("CREATE TABLE t (id INTEGER)")


class TestHealth:
    """Tests for facade health reporting."""

    async def test_is_healthy(self, service):
        assert await service.is_healthy() is True

    async def test_health_false_when_pool_broken(self, service, monkeypatch):
        def broken():
            return False

        monkeypatch.setattr(service.pool, "test_connection", broken)

        assert await service.is_healthy() is False
