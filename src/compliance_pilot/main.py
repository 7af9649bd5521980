"""CompliancePilot controls engine service entry point.

Initializes the FastAPI application with:
- Structured logging (structlog)
- Primary database for controls, datasets, runs and dataset tables
- Blob store for evidence files and dataset uploads
- Exception handlers translating the error taxonomy to HTTP responses
"""

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse

from compliance_pilot import __version__
from compliance_pilot.adapters.blob_store import InMemoryBlobStore, S3BlobStore
from compliance_pilot.adapters.database import close_database, init_database
from compliance_pilot.api.router import router
from compliance_pilot.errors import (
    CompliancePilotError,
    ControlAlreadyExists,
    ControlInactive,
    InvalidDefinition,
    InvalidRunTransition,
    NotFoundError,
)
from compliance_pilot.observability import configure_logging, get_logger
from compliance_pilot.settings import get_settings

logger = get_logger(__name__)

settings = get_settings()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle.

    Args:
        app: The FastAPI application instance.

    Yields:
        None
    """
    configure_logging(debug=settings.debug, log_level=settings.log_level)

    # Startup: primary database
    logger.info("Initializing primary database", service=settings.service_name)
    await init_database(
        settings.database_url,
        pool_size=settings.db_pool_size,
        max_overflow=settings.db_max_overflow,
        pool_timeout=settings.db_pool_timeout,
    )

    # Startup: blob store
    if settings.use_in_memory_blob_store:
        logger.warning("Using in-memory blob store; evidence will not survive a restart")
        blob_store = InMemoryBlobStore()
    else:
        blob_store = S3BlobStore(
            bucket=settings.blob_bucket,
            endpoint_url=settings.blob_endpoint_url,
            access_key=settings.blob_access_key,
            secret_key=settings.blob_secret_key,
            region=settings.blob_region,
        )
        await blob_store.ensure_bucket()

    # Store shared clients on app state for dependency injection
    app.state.blob_store = blob_store
    app.state.settings = settings

    logger.info("Controls engine startup complete", bucket=settings.blob_bucket)

    yield

    # Shutdown
    logger.info("Shutting down controls engine")
    await close_database()
    logger.info("Controls engine shutdown complete")


def _error_body(exc: CompliancePilotError) -> dict[str, str | None]:
    return {
        "error_kind": exc.error_kind,
        "detail": exc.message,
        "field": getattr(exc, "field", None),
    }


async def _handle_engine_error(request: Request, exc: CompliancePilotError) -> JSONResponse:
    if isinstance(exc, NotFoundError):
        status_code = status.HTTP_404_NOT_FOUND
    elif isinstance(exc, InvalidDefinition):
        status_code = 422
    elif isinstance(exc, (ControlInactive, ControlAlreadyExists, InvalidRunTransition)):
        status_code = status.HTTP_409_CONFLICT
    else:
        status_code = status.HTTP_400_BAD_REQUEST

    logger.info(
        "Request rejected",
        path=request.url.path,
        error_kind=exc.error_kind,
        status_code=status_code,
    )
    return JSONResponse(status_code=status_code, content=_error_body(exc))


def create_app() -> FastAPI:
    """Build the FastAPI application with routes and exception handlers."""
    application = FastAPI(
        title=settings.service_name,
        version=__version__,
        lifespan=lifespan,
    )
    application.add_exception_handler(CompliancePilotError, _handle_engine_error)
    application.include_router(router, prefix="/api/v1")

    @application.get("/health", include_in_schema=False)
    async def health() -> dict[str, str]:
        return {"status": "ok", "service": settings.service_name}

    return application


app: FastAPI = create_app()
