"""Table ownership registry and write-statement classification.

A table is owned by the tenant that created it. Any tenant may read any
table; only the owner (or anyone, while the table is unclaimed) may write.

Raw SQL is classified with DuckDB's own parser: the text must hold exactly
one statement, and only SELECT plus the six write kinds below are accepted.
"""

import re
import threading
from dataclasses import dataclass

import duckdb
import structlog

from tenantdb import metrics
from tenantdb.errors import OwnershipError, QueryError

logger = structlog.get_logger()

WRITE_KEYWORDS = ("INSERT", "UPDATE", "DELETE", "DROP", "CREATE", "ALTER")
READ_KEYWORDS = ("SELECT",)
ROW_WRITE_KEYWORDS = ("INSERT", "UPDATE", "DELETE")

_NAME = r'(?:"(?:[^"]|"")+"|[A-Za-z_][A-Za-z0-9_$]*)'
_QUALIFIED = r"(" + _NAME + r"(?:\s*\.\s*" + _NAME + r"){0,2})"

# (statement kind, object, pattern); matched against comment-free text
_TABLE_PATTERNS = (
    ("INSERT", "rows", re.compile(r"^\s*INSERT\s+(?:OR\s+(?:REPLACE|IGNORE)\s+)?INTO\s+" + _QUALIFIED, re.IGNORECASE)),
    ("UPDATE", "rows", re.compile(r"^\s*UPDATE\s+" + _QUALIFIED, re.IGNORECASE)),
    ("DELETE", "rows", re.compile(r"^\s*DELETE\s+FROM\s+" + _QUALIFIED, re.IGNORECASE)),
    ("DELETE", "rows", re.compile(r"^\s*TRUNCATE\s+(?:TABLE\s+)?" + _QUALIFIED, re.IGNORECASE)),
    ("DROP", "table", re.compile(r"^\s*DROP\s+TABLE\s+(?:IF\s+EXISTS\s+)?" + _QUALIFIED, re.IGNORECASE)),
    (
        "CREATE",
        "table",
        re.compile(
            r"^\s*CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?TABLE\s+(?:IF\s+NOT\s+EXISTS\s+)?"
            + _QUALIFIED,
            re.IGNORECASE,
        ),
    ),
    ("ALTER", "table", re.compile(r"^\s*ALTER\s+TABLE\s+(?:IF\s+EXISTS\s+)?" + _QUALIFIED, re.IGNORECASE)),
    (
        "CREATE",
        "index",
        re.compile(
            r"^\s*CREATE\s+(?:UNIQUE\s+)?INDEX\s+(?:IF\s+NOT\s+EXISTS\s+)?(?:" + _NAME + r"\s+)?ON\s+"
            + _QUALIFIED,
            re.IGNORECASE,
        ),
    ),
)

# Statements that name a table and must have it recognised
_TABLE_DDL_PREFIX = re.compile(
    r"^\s*(?:(?:DROP|ALTER)\s+TABLE|CREATE\s+(?:OR\s+REPLACE\s+)?(?:TEMP(?:ORARY)?\s+)?TABLE"
    r"|CREATE\s+(?:UNIQUE\s+)?INDEX|TRUNCATE)\b",
    re.IGNORECASE,
)

_parser_lock = threading.Lock()
_parser: duckdb.DuckDBPyConnection | None = None


@dataclass(frozen=True)
class ParsedStatement:
    """One classified SQL statement."""

    sql: str
    kind: str
    table: str | None = None
    object_type: str | None = None
    requires_table: bool = False

    @property
    def is_write(self) -> bool:
        return self.kind in WRITE_KEYWORDS

    @property
    def creates_table(self) -> bool:
        return self.kind == "CREATE" and self.object_type == "table"

    @property
    def drops_table(self) -> bool:
        return self.kind == "DROP" and self.object_type == "table"


def strip_comments(sql: str) -> str:
    """
    Replace ``--`` and ``/* */`` comments with a space.

    Quoted strings and identifiers are kept verbatim; block comments nest
    the way DuckDB's scanner nests them.
    """
    out = []
    i, n = 0, len(sql)
    while i < n:
        ch = sql[i]
        if ch in "'\"":
            end = i + 1
            while end < n:
                if sql[end] == ch:
                    if end + 1 < n and sql[end + 1] == ch:
                        end += 2
                        continue
                    break
                end += 1
            out.append(sql[i:end + 1])
            i = end + 1
        elif sql.startswith("--", i):
            newline = sql.find("\n", i)
            i = n if newline == -1 else newline
            out.append(" ")
        elif sql.startswith("/*", i):
            depth = 1
            i += 2
            while i < n and depth:
                if sql.startswith("/*", i):
                    depth += 1
                    i += 2
                elif sql.startswith("*/", i):
                    depth -= 1
                    i += 2
                else:
                    i += 1
            out.append(" ")
        else:
            out.append(ch)
            i += 1
    return "".join(out)


def _unqualified(name: str) -> str:
    last = re.findall(_NAME, name)[-1]
    if last.startswith('"'):
        return last[1:-1].replace('""', '"')
    return last


def _match_table(sql: str) -> tuple[str, str, str] | None:
    text = strip_comments(sql)
    for kind, object_type, pattern in _TABLE_PATTERNS:
        match = pattern.match(text)
        if match is not None:
            return kind, object_type, _unqualified(match.group(1))
    return None


def extract_table_name(sql: str) -> str | None:
    """
    Best-effort target table of a write statement.

    Recognises ``INSERT INTO t``, ``UPDATE t``, ``DELETE FROM t``,
    ``TRUNCATE t``, ``DROP TABLE [IF EXISTS] t``,
    ``CREATE TABLE [IF NOT EXISTS] t``, ``ALTER TABLE t`` and
    ``CREATE INDEX ... ON t``. Comments are ignored, names may be double
    quoted and a schema-qualified name yields its last part.
    """
    matched = _match_table(sql)
    return matched[2] if matched is not None else None


def parse_statement(sql: str) -> duckdb.Statement:
    """
    Parse ``sql`` without running it.

    Raises:
        QueryError: the text does not parse or holds more than one statement.
    """
    global _parser
    if not isinstance(sql, str) or not sql.strip():
        raise QueryError("Empty SQL statement")
    with _parser_lock:
        if _parser is None:
            _parser = duckdb.connect(":memory:")
        try:
            parsed = _parser.extract_statements(sql)
        except duckdb.Error as e:
            raise QueryError(f"Invalid SQL statement ({type(e).__name__})") from e
    if len(parsed) != 1:
        logger.warning("multiple_statements_refused", count=len(parsed))
        raise QueryError(f"Expected exactly one SQL statement, got {len(parsed)}")
    return parsed[0]


def describe_statement(sql: str) -> ParsedStatement:
    """
    Classify a single statement and find the table it writes.

    Raises:
        QueryError: not exactly one statement, or a statement type other
            than SELECT and the write kinds.
    """
    kind = parse_statement(sql).type.name
    if kind in READ_KEYWORDS:
        return ParsedStatement(sql, kind)
    if kind not in WRITE_KEYWORDS:
        logger.warning("statement_type_refused", kind=kind)
        raise QueryError(f"{kind} statements are not permitted")

    text = strip_comments(sql)
    requires_table = kind in ROW_WRITE_KEYWORDS or _TABLE_DDL_PREFIX.match(text) is not None
    matched = _match_table(sql)
    if matched is None or matched[0] != kind:
        return ParsedStatement(sql, kind, requires_table=requires_table)
    return ParsedStatement(sql, kind, table=matched[2], object_type=matched[1], requires_table=True)


def classify_statement(sql: str) -> str | None:
    """Return the write kind of ``sql``, or None for a SELECT."""
    statement = describe_statement(sql)
    return statement.kind if statement.is_write else None


def is_write_statement(sql: str) -> bool:
    return classify_statement(sql) is not None


def normalize_table(table: str) -> str:
    return table.lower()


class OwnershipRegistry:
    """
    Maps lowercase table name to owning tenant.

    A single lock guards the map; it is never held across database I/O.
    """

    def __init__(self) -> None:
        self._owners: dict[str, str] = {}
        self._lock = threading.Lock()

    def get_owner(self, table: str) -> str | None:
        with self._lock:
            return self._owners.get(normalize_table(table))

    def claim(self, table: str, tenant: str) -> bool:
        """
        Record ``tenant`` as owner of an unclaimed table.

        Returns True when this call claimed the table; an existing owner is
        never replaced.
        """
        key = normalize_table(table)
        with self._lock:
            if key in self._owners:
                return False
            self._owners[key] = tenant
            count = len(self._owners)
        metrics.TABLES_OWNED.set(count)
        logger.info("table_ownership_claimed", table=key, owner=tenant)
        return True

    def release(self, table: str) -> str | None:
        """Forget the owner of a dropped table and return who it was."""
        key = normalize_table(table)
        with self._lock:
            owner = self._owners.pop(key, None)
            count = len(self._owners)
        metrics.TABLES_OWNED.set(count)
        if owner is not None:
            logger.info("table_ownership_released", table=key, owner=owner)
        return owner

    def check(self, table: str, tenant: str) -> bool:
        """True when ``tenant`` may write to ``table``."""
        owner = self.get_owner(table)
        return owner is None or owner == tenant

    def require_write(self, table: str, tenant: str, operation: str = "write") -> None:
        """
        Raise unless ``tenant`` may write to ``table``.

        Raises:
            OwnershipError: another tenant owns the table.
        """
        owner = self.get_owner(table)
        if owner is None or owner == tenant:
            return
        metrics.OWNERSHIP_DENIALS_TOTAL.labels(operation=operation).inc()
        logger.warning(
            "table_write_denied",
            table=normalize_table(table),
            owner=owner,
            caller=tenant,
            operation=operation,
        )
        raise OwnershipError(normalize_table(table), owner, operation)

    def owned_by(self, tenant: str) -> list[str]:
        with self._lock:
            return sorted(t for t, owner in self._owners.items() if owner == tenant)

    def snapshot(self) -> dict[str, str]:
        with self._lock:
            return dict(self._owners)

    @property
    def count(self) -> int:
        with self._lock:
            return len(self._owners)
