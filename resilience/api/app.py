"""FastAPI application factory.

Startup order:
1. Load settings (from environment)
2. Configure structured logging
3. Initialize the orchestrator (opens the store)

Shutdown closes the store. Run with:
    uvicorn --factory resilience.api.app:create_app
"""

from __future__ import annotations

from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

import structlog
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from resilience import __version__
from resilience.api.routes import router
from resilience.config import Settings, get_settings
from resilience.orchestrator import Orchestrator
from resilience.telemetry.logging import configure_logging

log = structlog.get_logger(__name__)


def create_app(
    settings: Settings | None = None,
    orchestrator: Orchestrator | None = None,
) -> FastAPI:
    """Application factory.

    Args:
        settings: Application settings (get_settings() if None)
        orchestrator: Pre-built orchestrator, e.g. with fake providers in tests
    """
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        # Configure structured logging first (before any log calls)
        configure_logging(
            json_logs=settings.use_json_logs,
            log_level="DEBUG" if settings.debug else settings.log_level,
        )
        log.info("app.starting", environment=settings.environment)

        if getattr(app.state, "orchestrator", None) is None:
            app.state.orchestrator = Orchestrator.from_settings(settings)
        await app.state.orchestrator.initialize()

        log.info("app.ready")
        yield

        await app.state.orchestrator.shutdown()
        log.info("app.shutdown")

    app = FastAPI(
        title="LLM Resilience Layer",
        description=(
            "Provider failover, token budgets, safety screening, caching and "
            "checkpoint recovery in front of third-party LLM providers."
        ),
        version=__version__,
        docs_url="/docs" if settings.is_dev else None,
        redoc_url=None,
        openapi_url="/openapi.json" if settings.is_dev else None,
        lifespan=lifespan,
    )
    if orchestrator is not None:
        app.state.orchestrator = orchestrator

    app.include_router(router)

    @app.exception_handler(Exception)
    async def unhandled_exception_handler(request: Request, exc: Exception) -> JSONResponse:
        log.error(
            "app.unhandled_exception",
            path=request.url.path,
            method=request.method,
            error=str(exc),
            exc_info=True,
        )
        return JSONResponse(
            status_code=500,
            content={"detail": "Internal server error"},
        )

    return app
