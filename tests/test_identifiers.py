"""Tests for identifier validation and quoting."""

import pytest

from tenantdb.errors import ValidationError
from tenantdb.identifiers import (
    MAX_IDENTIFIER_LENGTH,
    is_complex_expression,
    quote_identifier,
    quote_table,
    validate_column_name,
    validate_table_name,
)


class TestValidateTableName:
    """Tests for table name validation."""

    @pytest.mark.parametrize("name", ["users", "_private", "Orders2024", "a", "x" * MAX_IDENTIFIER_LENGTH])
    def test_valid_names(self, name):
        """Test that simple names pass."""
        validate_table_name(name)

    @pytest.mark.parametrize(
        "name",
        ["", "1users", "users;DROP TABLE x", "user-name", "users name", "main.users", 'a"b', "ünïcode"],
    )
    def test_invalid_names(self, name):
        """Test that anything but a simple name is rejected for tables."""
        with pytest.raises(ValidationError, match="Invalid table name"):
            validate_table_name(name)

    def test_too_long(self):
        """Test that names over 63 characters are rejected."""
        with pytest.raises(ValidationError, match="too long"):
            validate_table_name("x" * (MAX_IDENTIFIER_LENGTH + 1))

    def test_non_string(self):
        """Test that non-string identifiers are a validation error, not a crash."""
        with pytest.raises(ValidationError):
            validate_table_name(None)


class TestValidateColumnName:
    """Tests for column name validation."""

    @pytest.mark.parametrize("column", ["*", "u.name", "COUNT(*)", "name AS n", "SUM(total)"])
    def test_expressions_pass_through(self, column):
        """Test that wildcard and expressions are not validated."""
        assert is_complex_expression(column)
        validate_column_name(column)

    @pytest.mark.parametrize(
        "column",
        ["id; DROP TABLE invoices", "id FROM t; SELECT 1 AS id", "COUNT(*) -- x", "u.name /* x */", "a */ b"],
    )
    def test_expression_with_separator_or_comment_rejected(self, column):
        with pytest.raises(ValidationError, match="Invalid column expression"):
            validate_column_name(column)

    def test_simple_column_validated(self):
        """Test that a simple column with bad characters is rejected."""
        with pytest.raises(ValidationError, match="Invalid column name"):
            validate_column_name("name;--")

    def test_long_column_rejected(self):
        with pytest.raises(ValidationError, match="Column name too long"):
            validate_column_name("c" * 64)


class TestQuoting:
    """Tests for identifier quoting."""

    def test_quote_simple_identifier(self):
        assert quote_identifier("name") == '"name"'

    def test_quote_leaves_expressions(self):
        assert quote_identifier("COUNT(*)") == "COUNT(*)"
        assert quote_identifier("*") == "*"

    def test_quote_table_validates(self):
        """Test that quote_table validates before quoting."""
        assert quote_table("invoices") == '"invoices"'
        with pytest.raises(ValidationError):
            quote_table("invoices; DROP TABLE x")
