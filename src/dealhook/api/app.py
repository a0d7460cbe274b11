"""FastAPI application for Dealhook."""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from dealhook import __version__
from dealhook.config import Settings
from dealhook.exceptions import DealhookError, NotFoundError, ValidationError
from dealhook.logging import configure_logging, get_logger
from dealhook.service import WebhookService

from .router import router, set_service

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage application lifespan.

    Initializes the WebhookService and the retry sweeper on startup,
    and cleans up on shutdown.
    """
    settings: Settings = getattr(app.state, "settings", None) or Settings()

    # Configure structured logging
    configure_logging(level=settings.log_level, format=settings.log_format)
    logger.info(
        "Starting Dealhook API",
        env=settings.env,
        endpoint_validation=settings.is_endpoint_validation_enabled,
    )

    service = WebhookService.create(settings)

    # Initialize storage and set service
    await service.initialize()
    set_service(service)

    if settings.retry_sweep_enabled:
        service.start_retry_sweeper()
        logger.info(
            "Retry sweeper running", interval_seconds=settings.retry_sweep_interval_seconds
        )

    yield

    # Cleanup
    await service.close()
    set_service(None)
    logger.info("Dealhook API stopped")


def register_exception_handlers(app: FastAPI) -> None:
    """Map Dealhook errors to HTTP responses."""

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        """Handle validation errors with 400 status."""
        logger.warning(
            "Validation error", field=exc.field, error=exc.message, path=str(request.url)
        )
        return JSONResponse(status_code=400, content=exc.to_dict())

    @app.exception_handler(NotFoundError)
    async def not_found_error_handler(request: Request, exc: NotFoundError) -> JSONResponse:
        """Handle not found errors with 404 status."""
        logger.info(
            "Resource not found",
            resource_type=exc.resource_type,
            resource_id=exc.resource_id,
            path=str(request.url),
        )
        return JSONResponse(status_code=404, content=exc.to_dict())

    @app.exception_handler(DealhookError)
    async def dealhook_error_handler(request: Request, exc: DealhookError) -> JSONResponse:
        """Handle all other Dealhook errors with 500 status."""
        logger.error("Dealhook error", error=exc.message, code=exc.code, path=str(request.url))
        return JSONResponse(status_code=500, content=exc.to_dict())


def create_app(settings: Settings | None = None) -> FastAPI:
    """Create a FastAPI application.

    Args:
        settings: Optional settings. Uses environment if None.

    Returns:
        Configured FastAPI application.

    Example:
        ```python
        from dealhook.api import create_app

        app = create_app()
        # Run with: uvicorn dealhook.api:app --reload
        ```
    """
    if settings is None:
        settings = Settings()

    app = FastAPI(
        title="Dealhook",
        description="Signed, retried webhook delivery for CRM events.",
        version=__version__,
        lifespan=lifespan,
        docs_url="/docs",
        redoc_url="/redoc",
    )
    app.state.settings = settings

    # Add CORS middleware if enabled
    if settings.cors_enabled:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=settings.cors_allow_origins,
            allow_credentials=settings.cors_allow_credentials,
            allow_methods=settings.cors_allow_methods,
            allow_headers=settings.cors_allow_headers,
        )

    register_exception_handlers(app)
    app.include_router(router, prefix="/api/v1")

    return app


# Default app instance for uvicorn
app = create_app()
