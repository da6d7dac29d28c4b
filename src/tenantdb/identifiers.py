"""SQL identifier validation and quoting.

Simple names must match ``^[A-Za-z_][A-Za-z0-9_]*$`` and fit the 63 character
identifier limit. Column values that are the wildcard or look like an
expression (qualified reference, alias, function call) pass through
unvalidated and unquoted, so callers can write ``COUNT(*)`` or ``u.name``
while simple names stay injection-safe. Expressions may not carry a
statement separator or a comment marker.
"""

import re
from typing import Literal

from tenantdb.errors import ValidationError

IDENTIFIER_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
MAX_IDENTIFIER_LENGTH = 63

IdentifierKind = Literal["table", "column"]

_FORBIDDEN_IN_EXPRESSION = (";", "--", "/*", "*/")


def is_complex_expression(value: str) -> bool:
    """Return True for the wildcard and for expressions exempt from validation."""
    return value == "*" or "." in value or " " in value or "(" in value


def validate_identifier(identifier: str, kind: IdentifierKind = "column") -> None:
    """
    Validate a table or column identifier.

    Raises:
        ValidationError: the identifier is not a simple name or is too long.
    """
    if not isinstance(identifier, str):
        raise ValidationError(f"Invalid {kind} name: expected a string")
    if kind == "column" and is_complex_expression(identifier):
        if any(token in identifier for token in _FORBIDDEN_IN_EXPRESSION):
            raise ValidationError(f"Invalid {kind} expression: {identifier!r}")
        return
    if not IDENTIFIER_PATTERN.match(identifier):
        raise ValidationError(
            f"Invalid {kind} name: {identifier!r}. Only alphanumeric characters and "
            "underscores are allowed, must start with letter or underscore."
        )
    if len(identifier) > MAX_IDENTIFIER_LENGTH:
        raise ValidationError(
            f"{kind.capitalize()} name too long: {identifier!r}. "
            f"Maximum length is {MAX_IDENTIFIER_LENGTH} characters."
        )


def validate_table_name(name: str) -> None:
    validate_identifier(name, "table")


def validate_column_name(name: str) -> None:
    validate_identifier(name, "column")


def quote_identifier(identifier: str) -> str:
    """Double-quote a simple identifier; expressions are returned unchanged."""
    if is_complex_expression(identifier):
        return identifier
    return f'"{identifier}"'


def quote_table(name: str) -> str:
    """Validate and quote a table name in one step."""
    validate_table_name(name)
    return f'"{name}"'
