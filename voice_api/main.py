from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware

from voice_api.config.logging import get_logger, setup_logging
from voice_api.config.settings import settings
from voice_api.infra.database import Database, set_database
from voice_api.infra.versioning import VersionConflictError
from voice_api.v1.conversions.routes import router as conversions_router
from voice_api.v1.core.exceptions import (
    RequestContextMiddleware,
    VoiceAPIException,
    general_exception_handler,
    http_exception_handler,
    request_validation_handler,
    version_conflict_handler,
    voice_api_exception_handler,
)
from voice_api.v1.healthz import router as health_router
from voice_api.v1.infra.background import BackgroundProcessors, set_background
from voice_api.v1.webhooks.routes import router as webhooks_router

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Start the background processors with the process and drain them on shutdown."""
    database = Database(settings)
    set_database(database)

    background = None
    if settings.processors_enabled:
        background = BackgroundProcessors.from_settings(settings, database)
        set_background(background)
        background.start()
    else:
        logger.info("Background processors disabled for this process")

    try:
        yield
    finally:
        if background is not None:
            await background.stop()
            set_background(None)
        await database.close()
        set_database(None)


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""

    # Initialize structured logging
    setup_logging()

    app = FastAPI(
        title=settings.app_name,
        description="Voice conversion jobs and webhook delivery",
        version=settings.version,
        debug=settings.debug,
        lifespan=lifespan,
        # All endpoints will be under /v1/ prefix
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
    )

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(VoiceAPIException, voice_api_exception_handler)
    app.add_exception_handler(VersionConflictError, version_conflict_handler)
    app.add_exception_handler(RequestValidationError, request_validation_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(conversions_router, prefix="/v1")
    app.include_router(webhooks_router, prefix="/v1")

    return app


# Create the app instance
app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(
        "voice_api.main:app",
        host=settings.host,
        port=settings.port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.workers,
    )
