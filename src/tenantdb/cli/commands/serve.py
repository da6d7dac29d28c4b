"""Serve command for tenantdb CLI."""

from typing import Optional

import typer
import uvicorn

from tenantdb.config import settings
from tenantdb.main import create_app, setup_logging

from ..state import state


def serve(
    host: Optional[str] = typer.Option(None, "--host", help="Bind address"),
    port: Optional[int] = typer.Option(None, "--port", "-p", help="Bind port"),
) -> None:
    """Run the ops API (health, metrics, tables, migrations) under uvicorn."""
    overrides: dict = {"debug": state.verbose or settings.debug}
    if state.database:
        overrides["database_path"] = state.database
    serve_settings = settings.model_copy(update=overrides)

    setup_logging(debug=serve_settings.debug)
    uvicorn.run(
        create_app(settings=serve_settings),
        host=host or serve_settings.host,
        port=port or serve_settings.port,
        log_level="debug" if serve_settings.debug else "info",
    )
