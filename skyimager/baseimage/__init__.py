"""Base image management module.

This module handles:
- Downloading base images with resume, retry and checksum verification
- Extracting disk images from release archives
- Clearing work directories on explicit request
"""

from skyimager.baseimage.fetch import (
    DownloadResult,
    clear_work_dir,
    compute_file_sha256,
    download_file,
    extract_image,
    fetch_base_image,
    work_dir_has_content,
)

__all__ = [
    "DownloadResult",
    "clear_work_dir",
    "compute_file_sha256",
    "download_file",
    "extract_image",
    "fetch_base_image",
    "work_dir_has_content",
]
