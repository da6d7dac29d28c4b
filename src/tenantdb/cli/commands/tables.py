"""Tables commands for tenantdb CLI."""

import typer

from ..database import open_database
from ..state import state
from ..output import print_error, print_json, print_table

app = typer.Typer(help="Inspect tables")


@app.command("list")
def list_tables() -> None:
    """List tables with their owning tenant."""
    with open_database() as db:
        names = db.list_tables()
        owners = db.service.ownership.snapshot()

    rows = [{"name": name, "owner": owners.get(name.lower())} for name in names]
    if state.json_output:
        print_json(rows)
        return

    print_table(rows, columns=["name", "owner"], title="Tables")
    typer.echo(f"\nTotal: {len(rows)} table(s)")


@app.command("info")
def table_info(
    name: str = typer.Argument(..., help="Table name"),
) -> None:
    """Show columns of a table."""
    with open_database() as db:
        info = db.get_table_info(name)

    if info is None:
        print_error(f"Table {name} not found")
        raise typer.Exit(1)

    if state.json_output:
        print_json(info.model_dump())
        return

    print_table(
        [column.model_dump() for column in info.columns],
        columns=["name", "type", "nullable", "primary_key"],
        title=f"Table: {info.name}",
    )
