"""FastAPI application entry-point for the Tabula API."""

from __future__ import annotations

import logging
from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from sqlalchemy.exc import SQLAlchemyError

from tabula_api import __version__
from tabula_api.config import load_api_settings
from tabula_api.dependencies import dispose_services, init_services
from tabula_api.middleware import RequestLoggingMiddleware, configure_logging
from tabula_api.routers import data_sources, health, lineage, pipelines, snapshots, tasks
from tabula_engine.errors import (
    AmbiguousKeyError,
    ConcurrencyConflictError,
    CycleError,
    ExecutionCancelledError,
    NotFoundError,
    SchemaInferenceError,
    ScriptSandboxError,
    StepExecutionError,
    StorageError,
    TabulaError,
    ValidationError,
)
from tabula_engine.state.sqlite_adapter import create_local_tables

logger = logging.getLogger(__name__)

# Most specific class first; the first match wins.
_STATUS_BY_ERROR: tuple[tuple[type[TabulaError], int], ...] = (
    (ValidationError, 400),
    (SchemaInferenceError, 400),
    (NotFoundError, 404),
    (AmbiguousKeyError, 409),
    (ConcurrencyConflictError, 409),
    (CycleError, 409),
    (ExecutionCancelledError, 409),
    (StepExecutionError, 422),
    (ScriptSandboxError, 422),
    (StorageError, 500),
)


def status_for_error(exc: TabulaError) -> int:
    for error_type, status in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return status
    return 500


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup / shutdown lifecycle.

    On startup the engine services are built around one database engine and,
    for local SQLite, the tables are created.  On shutdown background tasks
    are cancelled and the engine pool is disposed.
    """
    settings = load_api_settings()
    configure_logging(settings.structured_logging, logging.DEBUG if settings.debug else logging.INFO)

    services = init_services(settings)
    is_local = settings.database_url.startswith("sqlite")
    logger.info("Database engine initialised (%s)", "local" if is_local else "postgres")
    if is_local and settings.auto_create_tables:
        await create_local_tables(services.engine)

    yield

    await dispose_services()
    logger.info("Application shutdown complete")


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------


def create_app() -> FastAPI:
    """Construct and configure the FastAPI application."""
    settings = load_api_settings()

    app = FastAPI(
        title="Tabula API",
        description="Versioned dataset snapshots, diffs, transform pipelines and lineage.",
        version=__version__,
        lifespan=lifespan,
    )

    # -- Middleware (outermost first) ----------------------------------------

    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=settings.cors_allow_credentials,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "X-Correlation-ID", "Accept"],
    )
    app.add_middleware(RequestLoggingMiddleware)

    # -- Routers -------------------------------------------------------------

    app.include_router(health.router, prefix="/api/v1")
    app.include_router(snapshots.router, prefix="/api/v1")
    app.include_router(data_sources.router, prefix="/api/v1")
    app.include_router(lineage.router, prefix="/api/v1")
    app.include_router(pipelines.router, prefix="/api/v1")
    app.include_router(tasks.router, prefix="/api/v1")

    # -- Exception handlers --------------------------------------------------

    @app.exception_handler(TabulaError)
    async def tabula_error_handler(request: Request, exc: TabulaError) -> JSONResponse:
        status = status_for_error(exc)
        if status >= 500:
            logger.error("%s on %s: %s", exc.kind, request.url.path, exc.message)
        else:
            logger.info("%s on %s: %s", exc.kind, request.url.path, exc.message)
        return JSONResponse(status_code=status, content=jsonable_encoder(exc.to_dict()))

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        logger.info("Invalid request on %s: %d error(s)", request.url.path, len(exc.errors()))
        body = ValidationError("Invalid request", errors=exc.errors()).to_dict()
        return JSONResponse(status_code=400, content=jsonable_encoder(body))

    @app.exception_handler(SQLAlchemyError)
    async def sqlalchemy_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
        logger.error("Database error: %s", exc, exc_info=True)
        body = StorageError("Internal database error").to_dict()
        return JSONResponse(status_code=500, content=body)

    return app


# Module-level application instance used by ``uvicorn tabula_api.main:app``.
app = create_app()
