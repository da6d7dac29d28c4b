"""Main CLI entry point for tenantdb."""

from typing import Optional

import typer

from tenantdb import __version__

from .state import state

# Create main app
app = typer.Typer(
    name="tenantdb",
    help="Operator CLI for the shared tenant database",
    no_args_is_help=True,
)


def version_callback(value: bool) -> None:
    """Show version and exit."""
    if value:
        print(f"tenantdb version {__version__}")
        raise typer.Exit()


@app.callback()
def main(
    json_output: bool = typer.Option(
        False, "--json", "-j",
        help="Output as JSON instead of tables"
    ),
    verbose: bool = typer.Option(
        False, "--verbose", "-v",
        help="Show debug logs"
    ),
    database: Optional[str] = typer.Option(
        None, "--database", "-d",
        help="DuckDB file to open (defaults to TENANTDB_DATABASE_PATH)"
    ),
    version: Optional[bool] = typer.Option(
        None, "--version", "-V",
        callback=version_callback,
        is_eager=True,
        help="Show version and exit"
    ),
) -> None:
    """tenantdb - inspect and serve the shared tenant database."""
    state.json_output = json_output
    state.verbose = verbose
    state.database = database


# Import and register commands
from .commands import health, migrations, query, serve, tables

app.command("health")(health.health)
app.command("query")(query.query)
app.command("serve")(serve.serve)
app.add_typer(tables.app, name="tables")
app.add_typer(migrations.app, name="migrations")


if __name__ == "__main__":
    app()
