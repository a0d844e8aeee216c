"""FastAPI application for the registry."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from h5pregistry import __version__
from h5pregistry.api.hub_routes import router as hub_router
from h5pregistry.api.middleware import register_error_handlers, setup_logging
from h5pregistry.api.routes import router
from h5pregistry.config import Settings
from h5pregistry.registry.mirror import MirrorScheduler
from h5pregistry.services import RegistryServices

logger = logging.getLogger(__name__)

DEFAULT_HOST = "127.0.0.1"
DEFAULT_PORT = 47300


def create_app(
    settings: Settings | None = None,
    services: RegistryServices | None = None,
) -> FastAPI:
    """Create the registry FastAPI application.

    Args:
        settings: Application settings (default: Settings.load())
        services: Prebuilt components, mainly for tests

    Returns:
        Configured FastAPI application
    """
    settings = settings or (services.settings if services else Settings.load())
    services = services or RegistryServices.from_settings(settings)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Application lifespan manager."""
        setup_logging(settings.log_level)

        scheduler = MirrorScheduler(services.mirror, settings.sync_interval_seconds)
        scheduler.start()
        app.state.scheduler = scheduler

        logger.info(
            f"Registry started (db={settings.db_path}, hub={settings.hub_url}, "
            f"sync_interval={settings.sync_interval_seconds}s)"
        )

        yield

        await scheduler.stop()
        services.close()
        logger.info("Registry stopped")

    app = FastAPI(
        title="H5P Package Registry",
        description="Content-type registry, dependency resolver and installer",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.services = services

    register_error_handlers(app)
    app.include_router(router)
    app.include_router(hub_router)

    @app.get("/")
    async def root():
        """Root endpoint."""
        return {
            "name": "h5pregistry",
            "version": __version__,
            "docs": "/docs",
        }

    return app


def run_server(
    settings: Settings,
    host: str = DEFAULT_HOST,
    port: int = DEFAULT_PORT,
) -> None:
    """Run the registry with uvicorn."""
    import uvicorn

    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level.lower())
