"""Router modules for FastAPI web API."""

from web.routers import config, health, params, releases, runs

__all__ = ["config", "health", "params", "releases", "runs"]
