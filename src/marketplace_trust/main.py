"""FastAPI application entry point for the marketplace trust layer.

Lifecycle:
    1. Startup: Initialize logging and the database (tables in dev mode).
    2. Running: Serve the dispute and escrow APIs at /api/v1/*.
    3. Shutdown: Dispose of the database engine gracefully.

Run with:
    uv run uvicorn marketplace_trust.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from fastapi import FastAPI

from marketplace_trust.config import get_settings
from marketplace_trust.logging_config import get_logger, setup_logging

if TYPE_CHECKING:
    from collections.abc import AsyncGenerator


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Manage application startup and shutdown lifecycle."""
    settings = get_settings()

    # 1. Setup structured logging
    setup_logging(
        log_level=settings.app_log_level,
        json_logs=not settings.is_development,
    )
    logger = get_logger(__name__)
    logger.info(
        "app.starting",
        env=settings.app_env,
        debug=settings.app_debug,
    )

    # 2. Initialize database
    from marketplace_trust.infrastructure.database.engine import close_db, init_db

    await init_db()

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await close_db()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Marketplace Trust Layer",
        description=(
            "Escrow ledger and dispute resolution for marketplace engagements. "
            "Money never moves without an authorized, recorded transition."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from marketplace_trust.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from marketplace_trust.api.routes.disputes import router as disputes_router
    from marketplace_trust.api.routes.escrow import router as escrow_router
    from marketplace_trust.api.routes.health import router as health_router

    app.include_router(health_router)
    app.include_router(disputes_router)
    app.include_router(escrow_router)

    return app


# The app instance used by Uvicorn
app = create_app()
