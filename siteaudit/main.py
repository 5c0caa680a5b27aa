"""
Site Audit - Main Application Entry Point
FastAPI application with lifespan-managed database handles.
"""

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.middleware.gzip import GZipMiddleware
from fastapi.responses import JSONResponse

from siteaudit.api.v1.routes import audits, crawls, health
from siteaudit.core.config import Settings, get_settings
from siteaudit.core.exceptions import AuditNotFoundError, ConfigurationError, SeedUnreachableError, StorageError
from siteaudit.core.logging import configure_logging
from siteaudit.core.rule_engine import get_rule_registry
from siteaudit.storage.handles import DatabaseHandles

logger = structlog.get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator:
    """Open the databases on startup, close them on shutdown."""
    settings: Settings = app.state.settings
    configure_logging(settings)
    logger.info("Starting Site Audit", version=settings.APP_VERSION, env=settings.ENV)

    handles = DatabaseHandles.open(settings)
    handles.audits.ping()
    logger.info("Database connection verified", data_dir=str(settings.DATA_DIR))

    # Duplicate rule ids fail here, at boot
    get_rule_registry()

    app.state.handles = handles
    yield

    handles.close()
    logger.info("Application shutdown complete")


def create_application(settings: Settings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Site Audit API",
        description="Crawl websites, run SEO audit rules and track scores over time.",
        version=settings.APP_VERSION,
        docs_url="/docs" if settings.ENV != "production" else None,
        redoc_url="/redoc" if settings.ENV != "production" else None,
        lifespan=lifespan,
    )
    app.state.settings = settings

    # Middleware
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_middleware(GZipMiddleware, minimum_size=1000)

    # Routers
    app.include_router(health.router, prefix="/health", tags=["Health"])
    app.include_router(audits.router, prefix="/api/v1/audits", tags=["Audits"])
    app.include_router(crawls.router, prefix="/api/v1/crawls", tags=["Crawls"])

    @app.exception_handler(AuditNotFoundError)
    async def not_found_handler(request: Request, exc: AuditNotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConfigurationError)
    async def configuration_error_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(SeedUnreachableError)
    async def seed_unreachable_handler(request: Request, exc: SeedUnreachableError) -> JSONResponse:
        return JSONResponse(status_code=502, content={"detail": str(exc)})

    @app.exception_handler(StorageError)
    async def storage_error_handler(request: Request, exc: StorageError) -> JSONResponse:
        logger.error("Storage error", path=request.url.path, error=str(exc))
        return JSONResponse(status_code=503, content={"detail": "Storage unavailable"})

    @app.exception_handler(Exception)
    async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error("Unhandled exception", path=request.url.path, error=str(exc), exc_info=True)
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error", "request_id": request.headers.get("x-request-id")},
        )

    return app


app = create_application()
