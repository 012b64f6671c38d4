"""Final image builds and run orchestration.

This module handles:
- Building final images from the base image and boot parameters
- Orchestrating full build runs with bounded parallelism
- Run manifests and run history records
"""

from skyimager.builds.models import BuildRun, ImageRecord

__all__ = ["BuildRun", "ImageRecord"]

# Submodules are imported on demand to avoid circular imports
# Access via skyimager.builds.orchestrator, skyimager.builds.history, etc.
