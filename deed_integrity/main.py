"""
Deed Integrity - FastAPI Application

Document integrity verification pipeline: hash commit with compensation,
transient-failure retries, and hash-based verification verdicts.

Run with: uvicorn deed_integrity.main:app --reload
"""

from contextlib import asynccontextmanager

from fastapi import FastAPI

from deed_integrity.core.config import Settings, get_settings
from deed_integrity.core.database import close_db, init_db
from deed_integrity.core.errors import setup_exception_handlers
from deed_integrity.core.logging_config import get_logger, setup_logging
from deed_integrity.core.logging_middleware import RequestLoggingMiddleware
from deed_integrity.routers import health, integrity

logger = get_logger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Create tables on startup, release connections on shutdown."""
    settings: Settings = app.state.settings
    logger.info("Starting %s v%s", settings.app_name, settings.app_version)
    await init_db()
    logger.info(
        "Database ready",
        extra={"storage_backend": settings.storage_backend, "hash_algorithm": settings.hash_algorithm},
    )
    yield
    await close_db()
    logger.info("Shutdown complete")


def create_app(settings: Settings | None = None) -> FastAPI:
    """Application factory."""
    settings = settings or get_settings()
    setup_logging(level=settings.log_level, json_format=settings.log_json, log_file=settings.log_file)

    app = FastAPI(
        title=settings.app_name,
        version=settings.app_version,
        description="Document integrity verification pipeline",
        lifespan=lifespan,
    )
    app.state.settings = settings

    setup_exception_handlers(app)
    app.add_middleware(RequestLoggingMiddleware)

    app.include_router(health.router)
    app.include_router(integrity.router)

    return app


app = create_app()
