"""Run manifest generation.

The manifest sits next to the final images and records which board each
image is for. Secret keys and the passcode are never written to it.
"""

from __future__ import annotations

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from skyimager.bootparams.models import BootParams
from skyimager.types import BuildArtifact, BuildStatus

logger = logging.getLogger(__name__)

MANIFEST_FILENAME = "manifest.json"


def generate_manifest(
    artifacts: list[BuildArtifact],
    params: list[BootParams],
    base_image: Path | None = None,
) -> dict[str, Any]:
    """Generate a run manifest.

    Args:
        artifacts: Final images, in parameter order.
        params: Boot parameters the images were built from.
        base_image: Base image used for the run.

    Returns:
        Manifest dictionary suitable for JSON serialization.
    """
    by_label = {p.label: p for p in params}

    images: list[dict[str, Any]] = []
    for artifact in artifacts:
        entry: dict[str, Any] = {
            "file": artifact.path.name,
            "status": artifact.status.value,
        }
        board = by_label.get(str(artifact.index))
        if board is not None:
            entry.update(board.to_dict(include_secrets=False))
        if artifact.status == BuildStatus.SUCCESS:
            entry["sha256"] = artifact.sha256
            entry["size_bytes"] = artifact.size_bytes
        else:
            entry["error"] = artifact.error
        images.append(entry)

    manifest: dict[str, Any] = {
        "version": "1.0",
        "generated_at": datetime.now(timezone.utc).isoformat(),
        "images": images,
        "summary": {
            "total": len(artifacts),
            "succeeded": sum(1 for a in artifacts if a.succeeded),
            "failed": sum(1 for a in artifacts if a.status == BuildStatus.FAILED),
        },
    }
    if base_image is not None:
        manifest["base_image"] = str(base_image)

    return manifest


def write_manifest(
    manifest: dict[str, Any],
    output_path: Path,
) -> Path:
    """Write manifest to a JSON file.

    Args:
        manifest: Manifest dictionary.
        output_path: Output file path.

    Returns:
        Path to written manifest file.
    """
    output_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", encoding="utf-8") as f:
        json.dump(manifest, f, indent=2, sort_keys=True)

    logger.info("Wrote manifest to %s", output_path)
    return output_path


__all__ = ["MANIFEST_FILENAME", "generate_manifest", "write_manifest"]
