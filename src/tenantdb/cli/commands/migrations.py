"""Migrations commands for tenantdb CLI."""

import asyncio
from dataclasses import asdict

import typer

from ..database import open_database
from ..state import state
from ..output import print_json, print_table

app = typer.Typer(help="Inspect schema migrations")


@app.command("status")
def status() -> None:
    """Show the current schema version and applied migrations."""
    with open_database() as db:
        engine = db.service.migrations

        async def collect():
            return await engine.current_version(), await engine.applied_migrations()

        current, applied = db.run(collect)

    records = [asdict(record) for record in applied]
    if state.json_output:
        print_json({"current_version": current, "applied": records})
        return

    typer.echo(f"Current version: {current}")
    print_table(
        records,
        columns=["version", "description", "applied_at", "execution_time_ms"],
        title="Applied migrations",
    )
