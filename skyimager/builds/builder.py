"""Final image builder.

This module handles:
- Copying the base image for one board
- Injecting that board's boot parameters
- Atomically publishing the final image into the work directory

The base image is only ever read, so any number of builds may share it.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from pathlib import Path

from skyimager.baseimage.fetch import compute_file_sha256
from skyimager.bootparams.codec import SECTOR_SIZE, write_params
from skyimager.bootparams.models import BootParams
from skyimager.errors import BuildError, CodecError
from skyimager.types import BuildArtifact, BuildStatus

logger = logging.getLogger(__name__)

IMAGES_DIRNAME = "images"
IMAGE_SUFFIX = ".img"


def image_path_for(work_dir: Path, params: BootParams) -> Path:
    """Return the output path of the final image for a parameter set."""
    return work_dir / IMAGES_DIRNAME / f"{params.label}{IMAGE_SUFFIX}"


def _discard(tmp_path: Path | None) -> None:
    if tmp_path is not None:
        tmp_path.unlink(missing_ok=True)


def build_image(
    base_image: Path,
    params: BootParams,
    dest_path: Path,
) -> BuildArtifact:
    """Build one final image.

    The image is assembled in a temporary file next to ``dest_path`` and
    renamed into place once complete, so a failed build never leaves a
    partial image at ``dest_path``.

    Args:
        base_image: Base disk image (read-only).
        params: Boot parameters to inject.
        dest_path: Output path of the final image.

    Returns:
        BuildArtifact with status SUCCESS, checksum and size.

    Raises:
        BuildError: If the image cannot be copied or written.
    """
    logger.info("Building %s image %s", params.mode.value, dest_path.name)

    try:
        if base_image.stat().st_size < SECTOR_SIZE:
            raise BuildError(
                f"Base image {base_image} is smaller than one sector",
                code="invalid_base_image",
            )
        dest_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise BuildError(f"Cannot prepare build of {dest_path}: {e}") from e

    tmp_path: Path | None = None
    try:
        fd, tmp_name = tempfile.mkstemp(
            dir=dest_path.parent, prefix=f".{dest_path.stem}-", suffix=".tmp"
        )
        tmp_path = Path(tmp_name)
        with os.fdopen(fd, "wb") as out, base_image.open("rb") as src:
            shutil.copyfileobj(src, out, length=1024 * 1024)

        write_params(tmp_path, params)

        with tmp_path.open("rb+") as f:
            os.fsync(f.fileno())
        os.replace(tmp_path, dest_path)

    except CodecError as e:
        _discard(tmp_path)
        raise BuildError(
            f"Cannot write boot parameters into {dest_path.name}: {e}",
            code="codec_error",
        ) from e
    except OSError as e:
        _discard(tmp_path)
        raise BuildError(f"Failed to build {dest_path}: {e}") from e

    try:
        sha256 = compute_file_sha256(dest_path)
        size_bytes = dest_path.stat().st_size
    except OSError as e:
        raise BuildError(f"Cannot read back {dest_path}: {e}") from e

    logger.info("Built %s (%d bytes)", dest_path.name, size_bytes)

    return BuildArtifact(
        path=dest_path,
        index=params.index,
        status=BuildStatus.SUCCESS,
        sha256=sha256,
        size_bytes=size_bytes,
    )


__all__ = ["IMAGES_DIRNAME", "build_image", "image_path_for"]
