"""tenantdb ops API - FastAPI application.

Exposes health, metrics, table inspection and migration status for a
running DatabaseService. Tenants do not use this surface; they call the
service directly in-process.
"""

import logging
import time
import uuid
from contextlib import asynccontextmanager

import duckdb
import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from tenantdb import __version__
from tenantdb.config import Settings, settings as default_settings
from tenantdb.errors import DatabaseError, OwnershipError, ValidationError
from tenantdb.metrics import set_service_info
from tenantdb.routers import health, metrics, migrations, tables
from tenantdb.service import DatabaseService


def setup_logging(debug: bool | None = None, level: int | None = None) -> None:
    """Configure structured logging."""
    if debug is None:
        debug = default_settings.debug
    if level is None:
        level = logging.DEBUG if debug else logging.INFO
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.JSONRenderer() if not debug else structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(),
        cache_logger_on_first_use=True,
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the database service with the app and shut it down after."""
    logger = structlog.get_logger()
    db: DatabaseService = app.state.db
    logger.info(
        "application_startup",
        version=__version__,
        debug=db.settings.debug,
        database_path=db.settings.database_path,
    )

    try:
        await db.start()
    except DatabaseError as e:
        logger.error("database_start_failed", error=e.message, exc_info=True)
        raise

    set_service_info(__version__, duckdb.__version__)

    yield

    await db.shutdown()
    logger.info("application_shutdown")


def create_app(service: DatabaseService | None = None, settings: Settings | None = None) -> FastAPI:
    """Build the ops API around ``service`` (a new one from ``settings`` by default)."""
    settings = settings or (service.settings if service is not None else default_settings)
    db = service or DatabaseService(settings)
    logger = structlog.get_logger()

    app = FastAPI(
        title=settings.api_title,
        version=settings.api_version,
        description="Operations API for the shared tenant database layer.",
        lifespan=lifespan,
        docs_url="/docs" if settings.debug else None,
        redoc_url="/redoc" if settings.debug else None,
    )
    app.state.db = db

    @app.middleware("http")
    async def request_logging_middleware(request: Request, call_next):
        """Log all requests with timing and request ID."""
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
        structlog.contextvars.clear_contextvars()
        structlog.contextvars.bind_contextvars(request_id=request_id)

        start_time = time.perf_counter()
        logger.info("request_started", method=request.method, path=request.url.path)

        response = await call_next(request)

        duration_ms = (time.perf_counter() - start_time) * 1000
        logger.info(
            "request_completed",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
        )

        response.headers["X-Request-ID"] = request_id
        return response

    @app.exception_handler(DatabaseError)
    async def database_error_handler(request: Request, exc: DatabaseError):
        """Map the error taxonomy onto HTTP status codes."""
        if isinstance(exc, ValidationError):
            status_code = 400
        elif isinstance(exc, OwnershipError):
            status_code = 403
        else:
            status_code = 500
        logger.error(
            "database_error",
            method=request.method,
            path=request.url.path,
            error_type=type(exc).__name__,
            error=exc.message,
        )
        return JSONResponse(
            status_code=status_code,
            content={"error": type(exc).__name__, "message": exc.message},
        )

    app.include_router(health.router)
    app.include_router(metrics.router)
    app.include_router(tables.router)
    app.include_router(migrations.router)

    @app.get("/", include_in_schema=False)
    async def root():
        """Root endpoint - points at the health check."""
        return {
            "service": settings.api_title,
            "version": settings.api_version,
            "health": "/health",
            "docs": "/docs" if settings.debug else None,
        }

    return app


# Setup logging before creating app
setup_logging()

app = create_app()
