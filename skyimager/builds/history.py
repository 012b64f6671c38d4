"""Run history service.

This module records finished runs in the database and reads them back.
The orchestrator itself never touches the database; the CLI and the web
API call record_run() after a run finishes.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone

from sqlalchemy import select
from sqlalchemy.orm import Session

from skyimager.buildconfig import BuildConfig
from skyimager.builds.models import BuildRun, ImageRecord
from skyimager.errors import RunNotFoundError
from skyimager.types import RunResult, RunState

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime | None) -> datetime | None:
    if value is None or value.tzinfo is None:
        return value
    return value.astimezone(timezone.utc).replace(tzinfo=None)


def record_run(session: Session, config: BuildConfig, result: RunResult) -> BuildRun:
    """Store a finished run and its images.

    Args:
        session: Database session.
        config: Configuration the run was started with.
        result: Result returned by the orchestrator.

    Returns:
        The flushed BuildRun (its id is assigned).
    """
    run = BuildRun(
        work_dir=str(config.work_dir),
        base_image=config.base_image,
        base_image_path=str(result.base_image_path)
        if result.base_image_path
        else None,
        gateway_ip=str(config.gateway_ip) if config.gateway_ip else None,
        visors=config.visors,
        hypervisor=config.hypervisor,
        state=result.state.value,
        summary=result.summary,
        started_at=_naive_utc(result.started_at),
        finished_at=_naive_utc(result.finished_at),
    )
    if result.error is not None:
        run.error_code = getattr(result.error, "code", type(result.error).__name__)
        run.error_message = str(result.error)

    by_label = {p.label: p for p in result.params}
    for artifact in result.artifacts:
        board = by_label.get(str(artifact.index))
        run.images.append(
            ImageRecord(
                label=str(artifact.index),
                hostname=board.hostname if board else None,
                local_ip=str(board.local_ip) if board else None,
                local_pk=board.local_pk if board else None,
                path=str(artifact.path),
                status=artifact.status.value,
                error=artifact.error,
                sha256=artifact.sha256,
                size_bytes=artifact.size_bytes,
            )
        )

    session.add(run)
    session.flush()
    logger.info("Recorded run %d (%s)", run.id, run.state)
    return run


def get_run(session: Session, run_id: int) -> BuildRun:
    """Get a recorded run by ID.

    Raises:
        RunNotFoundError: If the run is not found.
    """
    run = session.get(BuildRun, run_id)
    if run is None:
        raise RunNotFoundError(run_id)
    return run


def list_runs(
    session: Session,
    state: RunState | None = None,
    limit: int = 100,
) -> list[BuildRun]:
    """List recorded runs, newest first.

    Args:
        session: Database session.
        state: Filter by final state.
        limit: Maximum results to return.

    Returns:
        List of BuildRun instances.
    """
    stmt = select(BuildRun)
    if state is not None:
        stmt = stmt.where(BuildRun.state == state.value)
    stmt = stmt.order_by(BuildRun.id.desc()).limit(limit)
    return list(session.execute(stmt).scalars().all())


__all__ = ["get_run", "list_runs", "record_run"]
