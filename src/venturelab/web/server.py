"""
FastAPI app factory for venturelab.

Creates the application with the runs and cron routers and wires the run
service into the app lifecycle.
"""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from .. import __version__
from ..config import AppConfig
from .api import cron, runs
from .services.run_service import RunService

logger = logging.getLogger(__name__)


def create_app(config: AppConfig, service: RunService | None = None) -> FastAPI:
    """
    Create and configure FastAPI application.

    Args:
        config: Loaded application config
        service: Pre-built run service (built from config when omitted)

    Returns:
        Configured FastAPI application
    """

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting venturelab API...")
        await runs.init_run_service(config, service)
        logger.info("API ready")

        yield

        logger.info("Shutting down venturelab API...")
        await runs.shutdown_run_service()
        logger.info("API stopped")

    app = FastAPI(
        title="venturelab",
        description="Step-wise hypothesis research and evaluation pipeline",
        version=__version__,
        docs_url="/api/docs",
        redoc_url="/api/redoc",
        lifespan=lifespan,
    )

    app.include_router(runs.router, prefix="/api/runs", tags=["runs"])
    app.include_router(cron.router, prefix="/api/cron", tags=["cron"])

    @app.get("/")
    async def root():
        return {
            "message": "venturelab API",
            "version": __version__,
            "docs": "/api/docs",
        }

    return app
