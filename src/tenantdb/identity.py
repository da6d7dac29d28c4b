"""Caller identity for the current call.

The host resolves which tenant is calling once, at its integration boundary,
and binds it with ``tenant_scope``. Facade operations read it back with
``resolve_tenant``; an explicit ``tenant=`` argument always wins.
"""

from collections.abc import Iterator
from contextlib import contextmanager
from contextvars import ContextVar

import structlog

from tenantdb.errors import QueryError

_current_tenant: ContextVar[str | None] = ContextVar("tenantdb_tenant", default=None)

# Placeholder values that hosts sometimes leak when identity lookup fails
_INVALID_TENANT_IDS = frozenset({"", "null", "none", "undefined"})


def normalize_tenant(tenant: str) -> str:
    """Validate a tenant identity and strip surrounding whitespace."""
    if not isinstance(tenant, str):
        raise QueryError("Invalid tenant identity: expected a string")
    value = tenant.strip()
    if value.lower() in _INVALID_TENANT_IDS:
        raise QueryError(f"Invalid tenant identity: {tenant!r}")
    return value


def current_tenant() -> str | None:
    """Return the tenant bound to the current context, if any."""
    return _current_tenant.get()


@contextmanager
def tenant_scope(tenant: str) -> Iterator[str]:
    """
    Bind a tenant identity for the duration of the block.

    The identity is also bound into structlog's context so every log line
    emitted inside the block carries ``tenant=...``.

    Usage:
        with tenant_scope("billing"):
            await db.create_table("invoices", "CREATE TABLE invoices (...)")
    """
    value = normalize_tenant(tenant)
    token = _current_tenant.set(value)
    with structlog.contextvars.bound_contextvars(tenant=value):
        try:
            yield value
        finally:
            _current_tenant.reset(token)


def resolve_tenant(explicit: str | None = None, *, operation: str = "write") -> str:
    """
    Return the identity for a mutating call.

    Raises:
        QueryError: no identity was passed or bound.
    """
    if explicit is not None:
        return normalize_tenant(explicit)
    bound = _current_tenant.get()
    if bound is None:
        raise QueryError(
            f"No tenant identity for {operation}: pass tenant= or use tenant_scope()"
        )
    return bound
