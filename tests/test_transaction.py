"""Tests for transactions through DatabaseService.with_transaction."""

import asyncio

import pytest

from tenantdb.errors import QueryError, TransactionError
from tenantdb.identity import tenant_scope


class TestCommit:
    """Tests for committed transactions."""

    async def test_commit(self, invoices):
        async def body(tx):
            await tx.insert("invoices", {"id": 1, "customer": "acme", "total": 1.0})
            await tx.insert("invoices", {"id": 2, "customer": "acme", "total": 2.0})
            await tx.update("invoices", {"total": 5.0}, "id = ?", [2])
            return await tx.select("invoices", ["id", "total"], "id = ?", [2])

        result = await invoices.with_transaction(body, tenant="billing")

        assert result == [{"id": 2, "total": 5.0}]
        assert len(await invoices.select("invoices")) == 2

    async def test_identity_from_scope(self, invoices):
        async def body(tx):
            return await tx.insert_batch("invoices", [{"id": 1, "customer": "a"}, {"id": 2, "customer": "b"}])

        with tenant_scope("billing"):
            assert await invoices.with_transaction(body) == [1, 2]

    async def test_statements_run_in_order(self, invoices):
        """Test that concurrently awaited statements on one handle do not interleave."""

        async def body(tx):
            await asyncio.gather(
                *(tx.insert("invoices", {"id": i, "customer": "c"}) for i in range(20))
            )
            return await tx.execute_query("SELECT COUNT(*) AS n FROM invoices")

        assert await invoices.with_transaction(body, tenant="billing") == [{"n": 20}]


class TestRollback:
    """Tests for rolled back transactions."""

    async def test_body_failure_rolls_back(self, invoices):
        async def body(tx):
            await tx.insert("invoices", {"id": 1, "customer": "acme"})
            raise ValueError("boom")

        with pytest.raises(TransactionError, match="rolled back: ValueError") as exc_info:
            await invoices.with_transaction(body, tenant="billing")

        assert isinstance(exc_info.value.__cause__, ValueError)
        assert await invoices.select("invoices") == []

    async def test_statement_failure_rolls_back(self, invoices):
        async def body(tx):
            await tx.insert("invoices", {"id": 1, "customer": "acme"})
            await tx.execute_update("INSERT INTO invoices (id, customer) VALUES (1, 'dup')")

        with pytest.raises(TransactionError) as exc_info:
            await invoices.with_transaction(body, tenant="billing")

        assert isinstance(exc_info.value.__cause__, QueryError)
        assert await invoices.select("invoices") == []

    async def test_handle_inactive_after_transaction(self, invoices):
        saved = []

        async def body(tx):
            saved.append(tx)

        await invoices.with_transaction(body, tenant="billing")

        assert not saved[0].active
        with pytest.raises(TransactionError, match="no longer active"):
            await saved[0].insert("invoices", {"id": 1, "customer": "late"})

    async def test_connection_returned_to_pool(self, invoices):
        async def body(tx):
            raise RuntimeError("fail")

        with pytest.raises(TransactionError):
            await invoices.with_transaction(body, tenant="billing")

        assert invoices.pool.stats().in_use == 0


class TestAuthorization:
    """Tests for identity handling of transactions."""

    async def test_identity_required(self, invoices):
        async def body(tx):
            return None

        with pytest.raises(QueryError, match="No tenant identity for transaction"):
            await invoices.with_transaction(body)

    async def test_statements_inside_are_not_ownership_checked(self, invoices):
        """Test that the opener of a transaction is trusted for every statement in it."""

        async def body(tx):
            return await tx.insert("invoices", {"id": 9, "customer": "other"})

        assert await invoices.with_transaction(body, tenant="reporting") == 9
        assert await invoices.get_table_owner("invoices") == "billing"
