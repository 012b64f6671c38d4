"""Build run endpoints.

- POST /runs - Run a build synchronously and record it
- GET /runs - List recorded runs
- GET /runs/{id} - Get a recorded run by ID
"""

import secrets
from pathlib import Path
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi import status as http_status
from pydantic import BaseModel
from sqlalchemy.orm import Session

from skyimager.buildconfig import parse_build_config
from skyimager.builds.history import get_run, list_runs, record_run
from skyimager.builds.orchestrator import BuildOrchestrator
from skyimager.config import Settings
from skyimager.errors import BuildInProgressError, InvalidConfigError, RunNotFoundError
from skyimager.types import RunState
from web.deps import get_app_settings, get_db, get_orchestrator, http_error

router = APIRouter()


class RunRequest(BaseModel):
    """Request body for a build run.

    Omitted fields fall back to the server settings.
    """

    work_dir: Path | None = None
    base_image: str = "latest"
    base_image_sha256: str | None = None
    gateway_ip: str | None = None
    passcode: str = ""
    visors: int | None = None
    hypervisor: bool = True
    seed: str | None = None


@router.post("")
def start_run(
    request: RunRequest,
    db: Session = Depends(get_db),
    settings: Settings = Depends(get_app_settings),
    orchestrator: BuildOrchestrator = Depends(get_orchestrator),
) -> dict[str, Any]:
    """Run a build to completion and record it.

    A run that fails after it started is still recorded and returned with
    state "failed"; only invalid requests and busy work directories are
    rejected with an HTTP error.

    Returns:
        Run result with the recorded run ID.
    """
    data = request.model_dump()
    data["work_dir"] = request.work_dir or settings.work_dir
    data["gateway_ip"] = request.gateway_ip or settings.default_gateway_ip
    if request.visors is None:
        data["visors"] = settings.default_visors
    data["seed"] = request.seed or secrets.token_hex(16)

    try:
        config = parse_build_config(data)
    except InvalidConfigError as e:
        raise http_error(http_status.HTTP_400_BAD_REQUEST, e) from e

    result = orchestrator.run(config)
    if isinstance(result.error, BuildInProgressError):
        raise http_error(http_status.HTTP_409_CONFLICT, result.error)

    run = record_run(db, config, result)
    output = result.to_dict()
    output["run_id"] = run.id
    output["seed"] = config.seed
    return output


@router.get("")
def list_runs_endpoint(
    state: str | None = Query(None, description="Filter by final state"),
    limit: int = Query(100, ge=1, le=1000, description="Maximum results"),
    db: Session = Depends(get_db),
) -> list[dict[str, Any]]:
    """List recorded runs, newest first."""
    state_filter: RunState | None = None
    if state:
        try:
            state_filter = RunState(state)
        except ValueError:
            raise HTTPException(
                status_code=http_status.HTTP_400_BAD_REQUEST,
                detail={
                    "code": "invalid_state",
                    "message": f"Invalid state: {state}. "
                    "Valid values: completed, failed",
                },
            ) from None

    return [r.to_dict() for r in list_runs(db, state=state_filter, limit=limit)]


@router.get("/{run_id}")
def get_run_endpoint(
    run_id: int,
    db: Session = Depends(get_db),
) -> dict[str, Any]:
    """Get a recorded run and its images."""
    try:
        run = get_run(db, run_id)
    except RunNotFoundError as e:
        raise http_error(http_status.HTTP_404_NOT_FOUND, e) from e
    return run.to_dict()
