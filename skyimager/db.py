"""Run history database.

Finished runs are kept in a SQLite database by default (Settings.db_url).
open_history() is the single entry point used by the CLI and the web API:
it makes sure the database file's directory and the schema exist, and
returns a session factory.
"""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path

from sqlalchemy import Engine, create_engine
from sqlalchemy.engine import make_url
from sqlalchemy.orm import DeclarativeBase, Session, sessionmaker

from skyimager.config import get_settings

logger = logging.getLogger(__name__)


class Base(DeclarativeBase):
    """Declarative base of the run history models."""


def get_engine(db_url: str | None = None) -> Engine:
    """Create an engine for the history database.

    For a file-backed SQLite URL the parent directory is created, since the
    default location under ~/.local/share usually does not exist yet.
    """
    url = make_url(db_url or get_settings().db_url)
    connect_args: dict[str, object] = {}
    if url.get_backend_name() == "sqlite":
        # The web API records runs from worker threads
        connect_args["check_same_thread"] = False
        if url.database and url.database != ":memory:":
            Path(url.database).expanduser().parent.mkdir(parents=True, exist_ok=True)
    return create_engine(url, connect_args=connect_args)


def create_all_tables(engine: Engine) -> None:
    """Create the run history tables that do not exist yet."""
    from skyimager.builds import models  # noqa: F401  (registers the tables)

    Base.metadata.create_all(bind=engine)


def open_history(db_url: str | None = None) -> sessionmaker[Session]:
    """Open the history database, creating its schema on first use.

    Args:
        db_url: Database URL; defaults to Settings.db_url.

    Returns:
        Session factory bound to the database.
    """
    engine = get_engine(db_url)
    create_all_tables(engine)
    logger.debug("Opened run history at %s", engine.url)
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@contextmanager
def history_session(factory: sessionmaker[Session]) -> Iterator[Session]:
    """Session that commits on success and rolls back on error."""
    with factory() as session:
        try:
            yield session
            session.commit()
        except Exception:
            session.rollback()
            raise


__all__ = [
    "Base",
    "create_all_tables",
    "get_engine",
    "history_session",
    "open_history",
]
