"""FastAPI application factory and main app.

This module creates the FastAPI application with all routers and
dependency injection configured. Web routes are thin proxies to core APIs.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from skyimager import __version__
from skyimager.db import open_history
from web.routers import config, health, params, releases, runs


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan context manager.

    Initializes database tables on startup.
    """
    app.state.session_factory = open_history()
    yield


def include_routers(application: FastAPI) -> FastAPI:
    """Attach all API routers to an application."""
    application.include_router(health.router, tags=["health"])
    application.include_router(config.router, prefix="/config", tags=["config"])
    application.include_router(releases.router, prefix="/releases", tags=["releases"])
    application.include_router(params.router, prefix="/params", tags=["params"])
    application.include_router(runs.router, prefix="/runs", tags=["runs"])
    return application


def create_app() -> FastAPI:
    """Create and configure the FastAPI application.

    Returns:
        Configured FastAPI application.
    """
    application = FastAPI(
        title="Skyimager API",
        description="HTTP API for building ready-to-flash Skybian images",
        version=__version__,
        lifespan=lifespan,
    )
    return include_routers(application)


# Create the default application instance
app = create_app()
