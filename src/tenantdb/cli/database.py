"""Database access for one-shot CLI commands."""

import logging
from collections.abc import Iterator
from contextlib import contextmanager

import typer

from tenantdb.blocking import BlockingDatabase
from tenantdb.config import settings
from tenantdb.errors import DatabaseError
from tenantdb.main import setup_logging
from tenantdb.service import DatabaseService

from .state import state
from .output import print_error


@contextmanager
def open_database() -> Iterator[BlockingDatabase]:
    """
    Open the database for a single command.

    Background tasks are disabled; any ``DatabaseError`` is printed to
    stderr and turned into exit code 1.
    """
    setup_logging(debug=state.verbose, level=logging.DEBUG if state.verbose else logging.WARNING)
    overrides = {
        "tasks_batch_flush_enabled": False,
        "tasks_health_check_enabled": False,
        "tasks_connection_maintenance_enabled": False,
        "migrate_on_startup": False,
    }
    if state.database:
        overrides["database_path"] = state.database
    cli_settings = settings.model_copy(update=overrides)

    try:
        db = BlockingDatabase(DatabaseService(cli_settings))
    except DatabaseError as e:
        print_error(e.message)
        raise typer.Exit(1)

    try:
        yield db
    except DatabaseError as e:
        print_error(e.message)
        raise typer.Exit(1)
    finally:
        db.close()
