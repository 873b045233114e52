"""FastAPI application entry point."""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import AsyncGenerator

import structlog
from fastapi import FastAPI

from jobsync.api.email_sync import router as email_sync_router
from jobsync.api.imports import router as imports_router
from jobsync.config import AppConfig, get_config
from jobsync.database import init_db
from jobsync.logging_config import setup_logging

logger = structlog.get_logger(__name__)

# Module-level config cache
_config: AppConfig | None = None


def _get_config() -> AppConfig:
    global _config
    if _config is None:
        _config = get_config()
    return _config


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application startup and shutdown lifecycle."""
    config = _get_config()
    setup_logging(level=config.log_level, log_file=config.log_file)
    init_db(config)
    logger.info(
        "server_starting",
        host=config.host,
        port=config.port,
        mail_store=config.mail_store,
        llm_provider=config.llm_provider if config.llm_enabled else "disabled",
    )
    yield
    logger.info("server_shutting_down")


def create_app() -> FastAPI:
    """Application factory: create and configure the FastAPI app."""
    app = FastAPI(
        title="JobSync",
        description="Classify job-search email and stage it for review",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.include_router(email_sync_router)
    app.include_router(imports_router)

    @app.get("/api/health", tags=["health"])
    def health_check() -> dict[str, str]:
        return {"status": "ok"}

    return app


app = create_app()
