"""Health command for tenantdb CLI."""

import typer

from ..database import open_database
from ..state import state
from ..output import print_dict, print_error, print_json


def health() -> None:
    """Run the database round-trip check and show pool statistics."""
    with open_database() as db:
        healthy = db.is_healthy()
        report = {
            "healthy": healthy,
            "database": db.service.database_status,
            "path": db.service.settings.database_path,
            **db.service.pool.stats().as_dict(),
        }

    if state.json_output:
        print_json(report)
    else:
        print_dict(report, title="Database health")

    if not healthy:
        print_error("Database health check failed")
        raise typer.Exit(1)
