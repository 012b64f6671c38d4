"""Shared type definitions for skyimager.

This module contains enums and dataclasses shared across subpackages to
avoid circular imports.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from skyimager.bootparams.models import BootParams


class BuildStatus(str, Enum):
    """Status of a single final image build."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"


class RunState(str, Enum):
    """States of a build run."""

    IDLE = "idle"
    VALIDATING_CONFIG = "validating_config"
    FETCHING_BASE = "fetching_base"
    GENERATING_PARAMS = "generating_params"
    BUILDING = "building"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Whether a run in this state has finished."""
        return self in (RunState.COMPLETED, RunState.FAILED)


class ParamsMode(str, Enum):
    """Role of the board a set of boot parameters is destined for."""

    VISOR = "visor"
    HYPERVISOR = "hypervisor"


@dataclass
class BuildArtifact:
    """A final image produced (or attempted) by a run.

    Attributes:
        path: Output image path.
        index: Boot parameter index, or "hypervisor".
        status: Build status.
        error: Error detail if the build failed.
        sha256: SHA-256 of the final image (success only).
        size_bytes: Size of the final image (success only).
    """

    path: Path
    index: int | str
    status: BuildStatus = BuildStatus.PENDING
    error: str | None = None
    sha256: str | None = None
    size_bytes: int | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == BuildStatus.SUCCESS

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": str(self.path),
            "index": self.index,
            "status": self.status.value,
            "error": self.error,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
        }


@dataclass
class RunResult:
    """Outcome of a build run.

    Attributes:
        state: Final run state (completed or failed).
        summary: Human-readable summary.
        artifacts: Final images, in boot parameter order.
        error: Fatal error that ended the run, if any.
        base_image_path: Local base image used for the run.
        params: Boot parameters the images were built with.
        started_at: Run start time.
        finished_at: Run finish time.
    """

    state: RunState
    summary: str
    artifacts: list[BuildArtifact] = field(default_factory=list)
    error: Exception | None = None
    base_image_path: Path | None = None
    params: list[BootParams] = field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None

    @property
    def succeeded(self) -> int:
        return sum(1 for a in self.artifacts if a.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for a in self.artifacts if a.status == BuildStatus.FAILED)

    def to_dict(self) -> dict[str, Any]:
        error_code = getattr(self.error, "code", None) if self.error else None
        return {
            "state": self.state.value,
            "summary": self.summary,
            "succeeded": self.succeeded,
            "failed": self.failed,
            "base_image_path": str(self.base_image_path)
            if self.base_image_path
            else None,
            "error": {"code": error_code, "message": str(self.error)}
            if self.error
            else None,
            "artifacts": [a.to_dict() for a in self.artifacts],
        }


__all__ = [
    "BuildArtifact",
    "BuildStatus",
    "ParamsMode",
    "RunResult",
    "RunState",
]
