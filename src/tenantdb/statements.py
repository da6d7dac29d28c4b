"""SQL rendering and execution helpers shared by the facade and transactions.

Everything here is synchronous and runs on a worker thread with a borrowed
DuckDB connection. Identifiers are validated and quoted before they are
interpolated; values always travel as ``?`` parameters.
"""

from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from typing import Any

import duckdb
import structlog

from tenantdb.errors import QueryError, ValidationError
from tenantdb.identifiers import quote_identifier, quote_table, validate_column_name

logger = structlog.get_logger()

Row = dict[str, Any]
Params = Sequence[Any]


@contextmanager
def query_errors(message: str, **context: Any) -> Iterator[None]:
    """
    Translate driver failures into ``QueryError``.

    Driver messages can quote row values, so only the error type is logged
    and appended; the original exception stays available as ``__cause__``.
    """
    try:
        yield
    except duckdb.Error as e:
        logger.error("query_failed", reason=message, error_type=type(e).__name__, **context)
        raise QueryError(f"{message} ({type(e).__name__})") from e


def data_columns(data: Mapping[str, Any], operation: str) -> list[str]:
    if not data:
        raise ValidationError(f"{operation} requires at least one column")
    columns = list(data.keys())
    for column in columns:
        validate_column_name(column)
    return columns


def render_insert(table: str, columns: Sequence[str]) -> str:
    quoted = ", ".join(quote_identifier(c) for c in columns)
    placeholders = ", ".join("?" for _ in columns)
    return f"INSERT INTO {quote_table(table)} ({quoted}) VALUES ({placeholders}) RETURNING *"


def render_update(table: str, columns: Sequence[str], where: str) -> str:
    set_clause = ", ".join(f"{quote_identifier(c)} = ?" for c in columns)
    return f"UPDATE {quote_table(table)} SET {set_clause} WHERE {where}"


def render_delete(table: str, where: str) -> str:
    return f"DELETE FROM {quote_table(table)} WHERE {where}"


def render_select(table: str, columns: Sequence[str], where: str | None) -> str:
    if not columns or "*" in columns:
        column_list = "*"
    else:
        for column in columns:
            validate_column_name(column)
        column_list = ", ".join(quote_identifier(c) for c in columns)
    sql = f"SELECT {column_list} FROM {quote_table(table)}"
    if where:
        sql += f" WHERE {where}"
    return sql


def fetch_rows(conn: duckdb.DuckDBPyConnection, sql: str, params: Params = ()) -> list[Row]:
    """Execute a query and map every result row to ``{column: value}``."""
    cursor = conn.execute(sql, list(params))
    if cursor.description is None:
        return []
    names = [d[0] for d in cursor.description]
    return [dict(zip(names, row)) for row in cursor.fetchall()]


def execute_update(conn: duckdb.DuckDBPyConnection, sql: str, params: Params = ()) -> int:
    """Execute a write and return the affected row count (0 for DDL)."""
    cursor = conn.execute(sql, list(params))
    if cursor.description is None:
        return 0
    row = cursor.fetchone()
    if row is None or not row or not _is_count(row[0]):
        return 0
    return row[0]


def insert_row(conn: duckdb.DuckDBPyConnection, table: str, data: Mapping[str, Any]) -> int:
    """
    Insert one row.

    Returns the first returned column when it is an integer (the generated
    key for tables whose key comes first), otherwise the affected row count.
    """
    columns = data_columns(data, "insert")
    sql = render_insert(table, columns)
    cursor = conn.execute(sql, [data[c] for c in columns])
    row = cursor.fetchone()
    if row is not None and row and _is_count(row[0]):
        return row[0]
    return 1


def insert_rows(
    conn: duckdb.DuckDBPyConnection, table: str, rows: Sequence[Mapping[str, Any]]
) -> list[int]:
    """Insert rows sharing the first row's columns; caller owns the transaction."""
    if not rows:
        return []
    columns = data_columns(rows[0], "insert_batch")
    expected = set(columns)
    sql = render_insert(table, columns)
    ids = []
    for index, row in enumerate(rows):
        if set(row.keys()) != expected:
            raise ValidationError(
                f"insert_batch row {index} has different columns than row 0 for table {table}"
            )
        result = conn.execute(sql, [row[c] for c in columns]).fetchone()
        ids.append(result[0] if result is not None and _is_count(result[0]) else 1)
    return ids


def update_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    data: Mapping[str, Any],
    where: str,
    params: Params = (),
) -> int:
    columns = data_columns(data, "update")
    sql = render_update(table, columns, where)
    return execute_update(conn, sql, [data[c] for c in columns] + list(params))


def delete_rows(
    conn: duckdb.DuckDBPyConnection, table: str, where: str, params: Params = ()
) -> int:
    return execute_update(conn, render_delete(table, where), params)


def select_rows(
    conn: duckdb.DuckDBPyConnection,
    table: str,
    columns: Sequence[str],
    where: str | None = None,
    params: Params = (),
) -> list[Row]:
    return fetch_rows(conn, render_select(table, columns, where), params)


def _is_count(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)
