"""Tests for the blocking adapter used by synchronous callers."""

import threading

import pytest

from tenantdb.blocking import BLOCKING_METHODS, BlockingDatabase
from tenantdb.errors import ConnectionError, OwnershipError, QueryError, TransactionError
from tenantdb.identity import tenant_scope
from tenantdb.service import DatabaseService


@pytest.fixture
def blocking_db(test_settings):
    db = BlockingDatabase(DatabaseService(test_settings))
    yield db
    db.close()


class TestBlockingDatabase:
    """Tests for BlockingDatabase."""

    def test_every_method_exposed(self):
        for name in BLOCKING_METHODS:
            assert callable(getattr(BlockingDatabase, name))

    def test_crud_roundtrip(self, blocking_db):
        with tenant_scope("billing"):
            assert blocking_db.create_table("invoices", "CREATE TABLE invoices (id INTEGER, total DOUBLE)")
            blocking_db.insert("invoices", {"id": 1, "total": 9.5})
            assert blocking_db.update("invoices", {"total": 10.0}, "id = ?", [1]) == 1

        assert blocking_db.select("invoices") == [{"id": 1, "total": 10.0}]
        assert blocking_db.get_table_owner("invoices") == "billing"
        assert blocking_db.is_healthy()

    def test_tenant_carried_per_thread(self, blocking_db):
        """Test that each calling thread's tenant scope reaches the service."""
        with tenant_scope("billing"):
            blocking_db.create_table("invoices", "CREATE TABLE invoices (id INTEGER)")

        errors = []

        def intruder():
            with tenant_scope("reporting"):
                try:
                    blocking_db.insert("invoices", {"id": 1})
                except OwnershipError as e:
                    errors.append(e)

        thread = threading.Thread(target=intruder)
        thread.start()
        thread.join()

        assert len(errors) == 1
        assert errors[0].owner == "billing"

    def test_missing_identity(self, blocking_db):
        with pytest.raises(QueryError, match="No tenant identity"):
            blocking_db.create_table("t", "CREATE TABLE t (id INTEGER)")

    def test_with_transaction(self, blocking_db):
        blocking_db.create_table("items", "CREATE TABLE items (id INTEGER)", tenant="shop")

        def body(tx):
            tx.insert("items", {"id": 1})
            tx.insert("items", {"id": 2})
            return tx.execute_query("SELECT COUNT(*) AS n FROM items")

        assert blocking_db.with_transaction(body, tenant="shop") == [{"n": 2}]

    def test_with_transaction_rollback(self, blocking_db):
        blocking_db.create_table("items", "CREATE TABLE items (id INTEGER)", tenant="shop")

        def body(tx):
            tx.insert("items", {"id": 1})
            raise ValueError("abort")

        with pytest.raises(TransactionError):
            blocking_db.with_transaction(body, tenant="shop")

        assert blocking_db.select("items") == []

    def test_query_builder(self, blocking_db):
        blocking_db.create_table("items", "CREATE TABLE items (id INTEGER)", tenant="shop")
        blocking_db.insert_batch("items", [{"id": i} for i in range(5)], tenant="shop")

        rows = blocking_db.query_builder().select("id").from_("items").where_greater_than("id", 2).execute()
        count = blocking_db.query_builder().select("id").from_("items").execute_count()

        assert rows == [{"id": 3}, {"id": 4}]
        assert count == 5

    def test_add_batch_and_flush(self, blocking_db):
        blocking_db.create_table("items", "CREATE TABLE items (id INTEGER)", tenant="shop")
        outcomes = []

        for i in range(3):
            blocking_db.add_batch("INSERT INTO items VALUES (?)", [i], outcomes.append, tenant="shop")

        assert blocking_db.flush_batches() == 3
        assert len(outcomes) == 3

    def test_closed_database(self, test_settings):
        db = BlockingDatabase(DatabaseService(test_settings))
        db.close()
        db.close()

        with pytest.raises(ConnectionError):
            db.list_tables()

    def test_context_manager(self, test_settings):
        with BlockingDatabase(DatabaseService(test_settings)) as db:
            assert "schema_migrations" in db.list_tables()
