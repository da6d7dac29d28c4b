"""Error taxonomy for the shared database layer.

Every failure surfaced to a tenant is a ``DatabaseError`` subclass:

- ConnectionError: pool unreachable, exhausted, closed, or reconnect failed
- QueryError: SQL execution failure, ownership denial, lookup failure
- TransactionError: the transaction body failed and was rolled back
- InitializationError: eager or lazy startup sequence failed
- ValidationError: identifier shape or length violation

Messages carry the operation and the table or identifier involved, never
parameter values.
"""


class DatabaseError(Exception):
    """Base class for all errors raised by tenantdb."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message


class ConnectionError(DatabaseError):  # noqa: A001 - mirrors the error taxonomy
    """The connection pool is unusable."""


class QueryError(DatabaseError):
    """A statement failed or was refused."""


class TransactionError(DatabaseError):
    """A transaction body failed; the transaction was rolled back."""


class InitializationError(DatabaseError):
    """Startup or lazy initialization failed."""


class ValidationError(DatabaseError):
    """An identifier or argument is malformed."""


class OwnershipError(QueryError):
    """A tenant attempted to write to a table owned by another tenant."""

    def __init__(self, table: str, owner: str, operation: str = "write") -> None:
        super().__init__(
            f"Access denied: table '{table}' is owned by '{owner}'. "
            f"{operation.capitalize()} operations not allowed."
        )
        self.table = table
        self.owner = owner
        self.operation = operation


class MigrationError(QueryError):
    """A migration failed to validate, apply, or roll back."""

    def __init__(self, version: int, message: str) -> None:
        super().__init__(message)
        self.version = version
