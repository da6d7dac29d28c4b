"""Read-only query command for tenantdb CLI."""

import json
from typing import Any, Optional

import typer

from ..database import open_database
from ..state import state
from ..output import print_json, print_table


def parse_param(value: str) -> Any:
    """Interpret a CLI parameter as JSON (numbers, booleans, null), else keep the string."""
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return value


def query(
    sql: str = typer.Argument(..., help="SELECT statement with ? placeholders"),
    params: Optional[list[str]] = typer.Argument(None, help="Positional parameters"),
) -> None:
    """Run a read-only query.

    Examples:
        tenantdb query "SELECT * FROM invoices WHERE total > ?" 100
    """
    with open_database() as db:
        rows = db.execute_query(sql, [parse_param(p) for p in params or []])

    if state.json_output:
        print_json(rows)
        return

    print_table(rows)
    typer.echo(f"\n{len(rows)} row(s)")
