"""App factory for the experiments HTTP API.

Creates FastAPI application instances wired to one ``ExperimentService``.
Routes are mounted under ``/api``. Every request runs under a correlation ID
taken from the ``X-Request-ID`` header, or generated, and echoed back.
"""

from collections.abc import AsyncGenerator, Awaitable, Callable
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, Response

from cee import __version__
from cee.api.routes import router as api_router
from cee.core.exceptions import (
    ExperimentNotFoundError,
    StorageError,
    VariantNotFoundError,
)
from cee.core.logging import correlation_context, get_logger
from cee.core.settings import CEESettings, get_cached_settings
from cee.experiments.database import ExperimentDatabase
from cee.experiments.service import ExperimentService

logger = get_logger(__name__)

REQUEST_ID_HEADER = "X-Request-ID"


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan handler.

    Creates tables on startup and closes the database on shutdown.

    Args:
        app: FastAPI application instance.

    Yields:
        None during application lifetime.
    """
    database: ExperimentDatabase = app.state.database
    await database.create_tables()
    logger.info("api_started", version=__version__)

    yield

    await database.close()


async def _not_found_handler(request: Request, exc: Exception) -> JSONResponse:
    return JSONResponse(
        status_code=status.HTTP_404_NOT_FOUND,
        content={"success": False, "errors": [str(exc)]},
    )


async def _storage_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.error("api_storage_error", path=request.url.path, error=str(exc))
    return JSONResponse(
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
        content={"success": False, "errors": ["Experiment store unavailable"]},
    )


async def _request_id_middleware(
    request: Request, call_next: Callable[[Request], Awaitable[Response]]
) -> Response:
    """Run the request under the caller's request ID, or a fresh one."""
    async with correlation_context(
        request.headers.get(REQUEST_ID_HEADER)
    ) as request_id:
        response = await call_next(request)
    response.headers[REQUEST_ID_HEADER] = request_id
    return response


def create_app(
    settings: CEESettings | None = None,
    database: ExperimentDatabase | None = None,
    **kwargs: Any,
) -> FastAPI:
    """Create and configure a FastAPI application instance.

    Args:
        settings: Optional CEESettings. Loaded from the environment and
            config file when omitted.
        database: Optional database. Built from ``settings.database`` when
            omitted.
        **kwargs: Additional keyword arguments passed to FastAPI constructor.

    Returns:
        Configured FastAPI application instance.

    Example:
        app = create_app()

        # Tests: explicit database
        app = create_app(database=ExperimentDatabase("sqlite+aiosqlite:///t.db"))
    """
    if settings is None:
        settings = get_cached_settings()
    if database is None:
        database = ExperimentDatabase.from_settings(settings.database)

    app_settings: dict[str, Any] = {
        "title": "Content Experimentation Engine",
        "description": "A/B testing of marketing content",
        "version": __version__,
        "lifespan": lifespan,
        "debug": settings.api.debug,
    }
    app_settings.update(kwargs)

    app = FastAPI(**app_settings)

    # Shared state for the lifespan handler and dependencies
    app.state.settings = settings
    app.state.database = database
    app.state.service = ExperimentService(database, settings.experiments)

    app.add_exception_handler(ExperimentNotFoundError, _not_found_handler)
    app.add_exception_handler(VariantNotFoundError, _not_found_handler)
    app.add_exception_handler(StorageError, _storage_error_handler)
    app.middleware("http")(_request_id_middleware)

    app.include_router(api_router, prefix="/api")

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok", "version": __version__}

    return app
