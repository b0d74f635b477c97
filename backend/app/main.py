"""FastAPI application."""

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from backend.app.api.routes.chat import router as chat_router
from backend.app.api.routes.documents import router as documents_router
from backend.app.api.routes.health import router as health_router
from backend.app.api.routes.metrics import router as metrics_router
from backend.app.config import get_settings
from backend.app.services import PipelineServices
from backend.app.utils.logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(services: PipelineServices | None = None) -> FastAPI:
    """Build the application.

    Args:
        services: Pre-built services (tests); built from settings on first use otherwise
    """
    configure_logging(get_settings().log_level)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        yield
        running: PipelineServices | None = getattr(app.state, "services", None)
        if running is not None:
            await running.shutdown()

    app = FastAPI(title="Document Chat API", version="0.1.0", lifespan=lifespan)
    app.state.services = services

    # Register routes
    app.include_router(health_router, tags=["health"])
    app.include_router(metrics_router, tags=["metrics"])
    app.include_router(documents_router, tags=["documents"])
    app.include_router(chat_router, tags=["chat"])

    @app.get("/")
    async def root() -> dict[str, str]:
        """Root endpoint."""
        return {"message": "Document Chat API", "version": "0.1.0"}

    return app


app = create_app()
