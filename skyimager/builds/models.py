"""Run history ORM models.

This module defines the BuildRun and ImageRecord models for storing
finished build runs and the final images they produced.
"""

from datetime import datetime

from sqlalchemy import (
    BigInteger,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from skyimager.db import Base
from skyimager.types import BuildStatus, RunState


class BuildRun(Base):
    """ORM model for a finished build run.

    Attributes:
        id: Primary key.
        work_dir: Work directory the run used.
        base_image: Base image source as configured.
        base_image_path: Local base image the run built from.
        gateway_ip: Gateway shared by the boards.
        visors: Number of visor images requested.
        hypervisor: Whether a hypervisor image was requested.
        state: Final run state (completed or failed).
        summary: Human-readable summary.
        error_code: Error code if the run failed.
        error_message: Error message if the run failed.
        recorded_at: Timestamp the run was recorded.
        started_at: Run start time.
        finished_at: Run finish time.
    """

    __tablename__ = "build_runs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    work_dir: Mapped[str] = mapped_column(String(500), nullable=False, index=True)
    base_image: Mapped[str] = mapped_column(String(500), nullable=False)
    base_image_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    gateway_ip: Mapped[str | None] = mapped_column(String(15), nullable=True)
    visors: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    hypervisor: Mapped[bool] = mapped_column(nullable=False, default=True)

    state: Mapped[str] = mapped_column(
        String(20), nullable=False, default=RunState.IDLE.value, index=True
    )
    summary: Mapped[str] = mapped_column(Text, nullable=False, default="")
    error_code: Mapped[str | None] = mapped_column(String(100), nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)

    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    finished_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)

    images: Mapped[list["ImageRecord"]] = relationship(
        "ImageRecord",
        back_populates="run",
        cascade="all, delete-orphan",
        order_by="ImageRecord.id",
    )

    def __repr__(self) -> str:
        """Return string representation of BuildRun."""
        return (
            f"<BuildRun(id={self.id}, state='{self.state}', "
            f"work_dir='{self.work_dir}')>"
        )

    def is_completed(self) -> bool:
        """Check if this run completed."""
        return self.state == RunState.COMPLETED.value

    def to_dict(self) -> dict[str, object]:
        return {
            "id": self.id,
            "work_dir": self.work_dir,
            "base_image": self.base_image,
            "base_image_path": self.base_image_path,
            "gateway_ip": self.gateway_ip,
            "visors": self.visors,
            "hypervisor": self.hypervisor,
            "state": self.state,
            "summary": self.summary,
            "error_code": self.error_code,
            "error_message": self.error_message,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "images": [image.to_dict() for image in self.images],
        }


class ImageRecord(Base):
    """ORM model for one final image of a run.

    Only public boot parameters are stored; secret keys and the passcode
    never reach the database.

    Attributes:
        id: Primary key.
        run_id: Foreign key to BuildRun.
        label: Boot parameter index, or "hypervisor".
        hostname: Board hostname.
        local_ip: Address assigned to the board.
        local_pk: Public key of the board.
        path: Final image path.
        status: Build status of the image.
        error: Error detail if the build failed.
        sha256: SHA-256 of the final image.
        size_bytes: Size of the final image.
    """

    __tablename__ = "image_records"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)

    run_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("build_runs.id"), nullable=False, index=True
    )

    label: Mapped[str] = mapped_column(String(20), nullable=False)
    hostname: Mapped[str | None] = mapped_column(String(64), nullable=True)
    local_ip: Mapped[str | None] = mapped_column(String(15), nullable=True)
    local_pk: Mapped[str | None] = mapped_column(String(66), nullable=True)

    path: Mapped[str] = mapped_column(String(500), nullable=False)
    status: Mapped[str] = mapped_column(
        String(20), nullable=False, default=BuildStatus.PENDING.value
    )
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    sha256: Mapped[str | None] = mapped_column(String(64), nullable=True)
    size_bytes: Mapped[int | None] = mapped_column(BigInteger, nullable=True)

    run: Mapped["BuildRun"] = relationship("BuildRun", back_populates="images")

    def __repr__(self) -> str:
        """Return string representation of ImageRecord."""
        return (
            f"<ImageRecord(id={self.id}, run_id={self.run_id}, "
            f"label='{self.label}', status='{self.status}')>"
        )

    def to_dict(self) -> dict[str, object]:
        return {
            "label": self.label,
            "hostname": self.hostname,
            "local_ip": self.local_ip,
            "local_pk": self.local_pk,
            "path": self.path,
            "status": self.status,
            "error": self.error,
            "sha256": self.sha256,
            "size_bytes": self.size_bytes,
        }


__all__ = ["BuildRun", "ImageRecord"]
