"""Dependencies for FastAPI route handlers.

Transaction boundaries are managed here:
- Session is created at request start
- On success (no exception): session is committed automatically
- On exception: session is rolled back automatically
- Session is closed after request completes
"""

from __future__ import annotations

from collections.abc import Generator
from typing import Any

from fastapi import Depends, HTTPException, Request
from sqlalchemy.orm import Session, sessionmaker

from skyimager.builds.orchestrator import BuildOrchestrator
from skyimager.config import Settings, get_settings
from skyimager.errors import SkyimagerError


def get_session_factory(request: Request) -> sessionmaker[Session]:
    """Get session factory from app state."""
    factory: Any = request.app.state.session_factory
    return factory  # type: ignore[no-any-return]


def get_db(
    session_factory: sessionmaker[Session] = Depends(get_session_factory),
) -> Generator[Session, None, None]:
    """Provide a database session for a request.

    Yields:
        Database session.
    """
    session = session_factory()
    try:
        yield session
        # Commit on success - only reached if no exception was raised
        session.commit()
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


def get_app_settings() -> Settings:
    return get_settings()


def get_orchestrator(
    request: Request,
    settings: Settings = Depends(get_app_settings),
) -> BuildOrchestrator:
    """Get the orchestrator from app state, or create a default one."""
    orchestrator: Any = getattr(request.app.state, "orchestrator", None)
    if orchestrator is None:
        orchestrator = BuildOrchestrator(settings=settings)
    return orchestrator  # type: ignore[no-any-return]


def error_detail(error: SkyimagerError) -> dict[str, str]:
    return {"code": error.code, "message": str(error)}


def http_error(status_code: int, error: SkyimagerError) -> HTTPException:
    """Convert a skyimager error into an HTTPException with a coded detail."""
    return HTTPException(status_code=status_code, detail=error_detail(error))
