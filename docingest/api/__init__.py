"""FastAPI application setup."""

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from docingest.api.controller import attachment_router
from docingest.ingestion import IngestionCoordinator, create_ingestion_coordinator


def create_app(coordinator: Optional[IngestionCoordinator] = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        coordinator: Pre-built coordinator. If omitted, one is created from the
            configuration on startup and closed on shutdown.
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if coordinator is not None:
            app.state.coordinator = coordinator
            yield
            return

        app.state.coordinator = await create_ingestion_coordinator()
        try:
            yield
        finally:
            await app.state.coordinator.close()

    app = FastAPI(
        title="Document Ingestion API",
        description="Upload, deduplicate and track parsing of report attachments",
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],  # In production: specify the frontend origin
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.include_router(attachment_router)

    @app.get("/health")
    async def health_check() -> dict:
        """Health check endpoint."""
        return {"status": "healthy"}

    return app


# ASGI entry point for uvicorn (uvicorn docingest.api:app); the coordinator is built at startup
app = create_app()
