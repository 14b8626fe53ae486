"""
FastAPI application for the rental listing ingestion service.

Production deployment configuration via environment variables.
"""

import logging
import os
from typing import Optional

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from ingestion.context import get_ingestion_context
from ingestion.errors import (
    ConfigurationError,
    FetchError,
    QueueFullError,
    SourceBusyError,
    SourceNotFoundError,
)
from ingestion.periodic import PeriodicCrawlTrigger
from utils.config import Config
from utils.log import configure_logging
from web.ingestion_routes import router as ingestion_router


logger = logging.getLogger(__name__)

# =============================================================================
# Environment Configuration
# =============================================================================

IS_PRODUCTION = os.getenv("PRODUCTION", "").lower() == "true"

# CORS configuration - locked down for production
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "").split(",") if os.getenv("ALLOWED_ORIGINS") else []
if not ALLOWED_ORIGINS and not IS_PRODUCTION:
    ALLOWED_ORIGINS = ["http://localhost:8000", "http://127.0.0.1:8000"]


def _error(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"error": message})


def create_app(config: Optional[Config] = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    config = config or Config.load()

    app = FastAPI(
        title="Rental Ingest",
        description="Rental listing ingestion and crawl orchestration",
        version="0.1.0",
        docs_url=None if IS_PRODUCTION else "/docs",
        redoc_url=None if IS_PRODUCTION else "/redoc",
        openapi_url=None if IS_PRODUCTION else "/openapi.json",
        debug=config.debug and not IS_PRODUCTION,
    )

    # ==========================================================================
    # Healthcheck endpoints: synchronous, no IO
    # ==========================================================================
    @app.get("/", include_in_schema=False)
    def root():
        return {"status": "ok"}

    @app.get("/health", include_in_schema=False)
    def health():
        return {"status": "healthy"}

    if ALLOWED_ORIGINS:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=ALLOWED_ORIGINS,
            allow_credentials=True,
            allow_methods=["GET", "POST", "PUT"],
            allow_headers=["*"],
        )

    # ==========================================================================
    # Error mapping: every error body is {"error": message}
    # ==========================================================================
    @app.exception_handler(StarletteHTTPException)
    async def http_error(request: Request, exc: StarletteHTTPException):
        return _error(exc.status_code, str(exc.detail))

    @app.exception_handler(SourceNotFoundError)
    async def source_not_found(request: Request, exc: SourceNotFoundError):
        return _error(404, str(exc))

    @app.exception_handler(ConfigurationError)
    async def configuration_error(request: Request, exc: ConfigurationError):
        # Covers AuthenticationError: missing credentials are a source setup problem
        return _error(422, str(exc))

    @app.exception_handler(SourceBusyError)
    async def source_busy(request: Request, exc: SourceBusyError):
        return JSONResponse(status_code=409, content={"error": str(exc), "jobId": exc.job_id})

    @app.exception_handler(QueueFullError)
    async def queue_full(request: Request, exc: QueueFullError):
        return _error(503, str(exc))

    @app.exception_handler(FetchError)
    async def upstream_error(request: Request, exc: FetchError):
        return _error(502, str(exc))

    # ==========================================================================
    # Lifecycle: workers and the periodic trigger
    # ==========================================================================
    app.state.periodic = None

    @app.on_event("startup")
    def on_startup():
        configure_logging(config.log_level)
        context = get_ingestion_context()
        context.scheduler.start()
        if config.enable_periodic_crawls:
            trigger = PeriodicCrawlTrigger(context.scheduler, tick_minutes=config.periodic_tick_minutes)
            trigger.start()
            app.state.periodic = trigger
        logger.info("Rental ingest started (%d sources)", len(context.registry.list_sources()))

    @app.on_event("shutdown")
    def on_shutdown():
        if app.state.periodic is not None:
            app.state.periodic.shutdown()
            app.state.periodic = None
        get_ingestion_context().scheduler.shutdown(wait=True, timeout=30)

    app.include_router(ingestion_router)

    return app


# Create app instance for uvicorn
app = create_app()
