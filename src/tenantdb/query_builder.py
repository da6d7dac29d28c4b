"""Fluent SELECT builder with injection-safe identifier handling.

Builders are single-use, mutable and not meant to be shared between tasks.

Usage:
    sql, params = (
        QueryBuilder()
        .select("id", "name")
        .from_("users")
        .where("age > ?", 18)
        .limit(10)
        .build()
    )
    # "SELECT id, name FROM users WHERE age > ? LIMIT 10", [18]

Repeated ``where``/``having`` calls (including the ``where_*`` helpers) are
combined with AND, parameters kept in call order.
"""

from collections.abc import Sequence
from typing import Any, Protocol

from tenantdb.errors import QueryError, ValidationError
from tenantdb.identifiers import quote_identifier, validate_column_name, validate_table_name

ORDER_DIRECTIONS = ("ASC", "DESC")


class QueryExecutor(Protocol):
    async def execute_query(self, sql: str, params: Sequence[Any] = ()) -> list[dict[str, Any]]:
        ...


class QueryBuilder:
    def __init__(self, executor: QueryExecutor | None = None) -> None:
        self._executor = executor
        self._columns: list[str] = []
        self._table: str | None = None
        self._where: list[str] = []
        self._where_params: list[Any] = []
        self._group_by: list[str] = []
        self._having: list[str] = []
        self._having_params: list[Any] = []
        self._order_by: list[str] = []
        self._limit: int | None = None
        self._offset: int | None = None

    # ------------------------------------------------------------------
    # Core clauses
    # ------------------------------------------------------------------

    def select(self, *columns: str) -> "QueryBuilder":
        for column in columns:
            validate_column_name(column)
        self._columns = list(columns)
        return self

    def from_(self, table: str) -> "QueryBuilder":
        """
        Set the source table as ``"users"``, ``"users u"`` or ``"users AS u"``.

        Both the table and the alias must be simple names.
        """
        if not isinstance(table, str):
            raise ValidationError("Invalid table name: expected a string")
        parts = table.split()
        if len(parts) == 3 and parts[1].upper() == "AS":
            parts = [parts[0], parts[2]]
        if not 1 <= len(parts) <= 2 or parts[-1].upper() == "AS":
            raise ValidationError(f"Invalid table reference: {table!r}")
        for part in parts:
            validate_table_name(part)
        self._table = " ".join(parts)
        return self

    def where(self, condition: str, *params: Any) -> "QueryBuilder":
        self._where.append(condition)
        self._where_params.extend(params)
        return self

    def group_by(self, *columns: str) -> "QueryBuilder":
        for column in columns:
            validate_column_name(column)
        self._group_by = list(columns)
        return self

    def having(self, condition: str, *params: Any) -> "QueryBuilder":
        self._having.append(condition)
        self._having_params.extend(params)
        return self

    def order_by(self, column: str, direction: str = "ASC") -> "QueryBuilder":
        validate_column_name(column)
        return self._add_order(column, direction)

    def _add_order(self, rendered: str, direction: str) -> "QueryBuilder":
        normalized = direction.upper() if isinstance(direction, str) else direction
        if normalized not in ORDER_DIRECTIONS:
            raise ValidationError(f"Invalid order direction: {direction!r}. Use ASC or DESC.")
        self._order_by.append(f"{rendered} {normalized}")
        return self

    def limit(self, count: int) -> "QueryBuilder":
        if count < 0:
            raise ValidationError(f"LIMIT must not be negative, got {count}")
        self._limit = count
        return self

    def offset(self, count: int) -> "QueryBuilder":
        if count < 0:
            raise ValidationError(f"OFFSET must not be negative, got {count}")
        self._offset = count
        return self

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _where_column(self, column: str, template: str, *params: Any) -> "QueryBuilder":
        validate_column_name(column)
        return self.where(template.format(col=quote_identifier(column)), *params)

    def where_equals(self, column: str, value: Any) -> "QueryBuilder":
        return self._where_column(column, "{col} = ?", value)

    def where_not_equals(self, column: str, value: Any) -> "QueryBuilder":
        return self._where_column(column, "{col} != ?", value)

    def where_in(self, column: str, values: Sequence[Any]) -> "QueryBuilder":
        values = list(values)
        if not values:
            raise ValidationError(f"where_in on {column} requires at least one value")
        placeholders = ", ".join("?" for _ in values)
        return self._where_column(column, "{col} IN (" + placeholders + ")", *values)

    def where_like(self, column: str, pattern: str) -> "QueryBuilder":
        return self._where_column(column, "{col} LIKE ?", pattern)

    def where_greater_than(self, column: str, value: Any) -> "QueryBuilder":
        return self._where_column(column, "{col} > ?", value)

    def where_less_than(self, column: str, value: Any) -> "QueryBuilder":
        return self._where_column(column, "{col} < ?", value)

    def where_between(self, column: str, start: Any, end: Any) -> "QueryBuilder":
        return self._where_column(column, "{col} BETWEEN ? AND ?", start, end)

    def where_is_null(self, column: str) -> "QueryBuilder":
        return self._where_column(column, "{col} IS NULL")

    def where_is_not_null(self, column: str) -> "QueryBuilder":
        return self._where_column(column, "{col} IS NOT NULL")

    def order_by_asc(self, column: str) -> "QueryBuilder":
        validate_column_name(column)
        return self._add_order(quote_identifier(column), "ASC")

    def order_by_desc(self, column: str) -> "QueryBuilder":
        validate_column_name(column)
        return self._add_order(quote_identifier(column), "DESC")

    def paginate(self, page: int, page_size: int) -> "QueryBuilder":
        """1-based page of ``page_size`` rows."""
        if page < 1:
            raise ValidationError(f"page must be >= 1, got {page}")
        if page_size < 1:
            raise ValidationError(f"page_size must be >= 1, got {page_size}")
        return self.limit(page_size).offset((page - 1) * page_size)

    # ------------------------------------------------------------------
    # Rendering and execution
    # ------------------------------------------------------------------

    @staticmethod
    def _combine(conditions: list[str]) -> str:
        if len(conditions) == 1:
            return conditions[0]
        return " AND ".join(f"({c})" for c in conditions)

    def build(self) -> tuple[str, list[Any]]:
        """
        Render the query.

        Returns:
            (sql, params) with where-parameters followed by having-parameters.

        Raises:
            ValidationError: no columns selected or no table set.
        """
        if not self._columns:
            raise ValidationError("No columns selected")
        if not self._table:
            raise ValidationError("No table specified")

        parts = [f"SELECT {', '.join(self._columns)}", f"FROM {self._table}"]
        if self._where:
            parts.append(f"WHERE {self._combine(self._where)}")
        if self._group_by:
            parts.append(f"GROUP BY {', '.join(self._group_by)}")
        if self._having:
            parts.append(f"HAVING {self._combine(self._having)}")
        if self._order_by:
            parts.append(f"ORDER BY {', '.join(self._order_by)}")
        if self._limit is not None:
            parts.append(f"LIMIT {self._limit}")
        if self._offset is not None:
            parts.append(f"OFFSET {self._offset}")

        return " ".join(parts), self._where_params + self._having_params

    def build_count(self) -> tuple[str, list[Any]]:
        sql, params = self.build()
        return f"SELECT COUNT(*) FROM ({sql}) AS count_query", params

    def _require_executor(self) -> QueryExecutor:
        if self._executor is None:
            raise QueryError("Query builder is not bound to a database")
        return self._executor

    async def execute(self) -> list[dict[str, Any]]:
        sql, params = self.build()
        return await self._require_executor().execute_query(sql, params)

    async def execute_count(self) -> int:
        """Row count of the built query; 0 when the count query returns nothing."""
        sql, params = self.build_count()
        rows = await self._require_executor().execute_query(sql, params)
        if not rows:
            return 0
        value = next(iter(rows[0].values()), 0)
        return int(value) if value is not None else 0
