"""FastAPI application entry point for the Session Clearinghouse.

Lifecycle:
    1. Startup: Initialize logging, connect the ledger store, build the
       payment rail and quality oracle, wire the workflow orchestrator.
    2. Running: Serve the REST API at /api/v1/* on a single Uvicorn process.
    3. Shutdown: Close the ledger store connection gracefully.

Run with:
    uv run uvicorn session_clearinghouse.main:app --reload --host 0.0.0.0 --port 8000
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from session_clearinghouse.config import get_settings
from session_clearinghouse.logging_config import get_logger, setup_logging


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
        ledger=settings.ledger_backend,
        payment_rail=settings.payment_rail,
        quality_oracle=settings.quality_oracle,
    )

    # 2. Connect the ledger store
    from session_clearinghouse.infrastructure.ledger import create_ledger_store

    store = await create_ledger_store(settings)

    # 3. Payment rail, quality oracle, orchestrator
    from session_clearinghouse.infrastructure.payment import create_payment_rail
    from session_clearinghouse.infrastructure.quality import (
        LedgerTranscriptSource,
        QualityOracleFactory,
    )
    from session_clearinghouse.orchestration import build_orchestrator

    rail = create_payment_rail(settings, store)
    oracle = QualityOracleFactory.create(settings.quality_oracle, store)
    app.state.orchestrator = build_orchestrator(
        store, rail, oracle, settings, transcripts=LedgerTranscriptSource(store)
    )

    logger.info("app.started", host=settings.app_host, port=settings.app_port)

    yield

    # Shutdown
    logger.info("app.shutting_down")
    await store.close()
    logger.info("app.stopped")


def create_app() -> FastAPI:
    """Application factory — creates and configures the FastAPI app."""
    settings = get_settings()

    app = FastAPI(
        title="Session Clearinghouse",
        description=(
            "Escrow-gated marketplace for time-boxed sessions. "
            "Funds move only when the quality gate or a dispute says so."
        ),
        version="0.1.0",
        lifespan=lifespan,
        debug=settings.app_debug,
        docs_url="/docs" if settings.is_development else None,
        redoc_url="/redoc" if settings.is_development else None,
    )

    # --- Middleware ---
    from session_clearinghouse.api.middleware import setup_middleware

    setup_middleware(app)

    # --- REST API Routes ---
    from session_clearinghouse.api.routes.bookings import router as bookings_router
    from session_clearinghouse.api.routes.disputes import router as disputes_router
    from session_clearinghouse.api.routes.escrows import router as escrows_router
    from session_clearinghouse.api.routes.health import router as health_router
    from session_clearinghouse.api.routes.services import router as services_router

    app.include_router(health_router)
    app.include_router(services_router)
    app.include_router(bookings_router)
    app.include_router(escrows_router)
    app.include_router(disputes_router)

    return app


# The app instance used by Uvicorn
app = create_app()
