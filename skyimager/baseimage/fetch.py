"""Base image fetch module.

This module handles:
- Download of base image archives with resume and retry
- Checksum discovery and verification
- Extraction of the disk image from release archives
- Clearing work directories on explicit request

Nothing in here deletes a work directory on its own; callers confirm and
then call clear_work_dir().
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import shutil
import tarfile
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote, urlparse

import httpx

from skyimager.errors import (
    ChecksumMismatchError,
    DiskError,
    DownloadError,
)
from skyimager.releases.models import Release

logger = logging.getLogger(__name__)

# Timeout for checksum requests (seconds)
HEAD_TIMEOUT = 30

# Timeout for downloads (seconds)
DOWNLOAD_TIMEOUT = 3600

# Chunk size for downloads (bytes)
DOWNLOAD_CHUNK_SIZE = 64 * 1024  # 64 KB

# Base delay between download retries (seconds), grows linearly
RETRY_BACKOFF = 1.0

ARCHIVE_SUFFIXES = (".tar.xz", ".tar.gz", ".tgz", ".tar")

# Error codes worth another attempt
RETRYABLE_CODES = frozenset({"timeout", "network_error", "server_error"})

ProgressCallback = Callable[[int, int | None], None]


@dataclass
class DownloadResult:
    """Result of a base image download."""

    path: Path
    checksum: str
    size_bytes: int
    attempts: int = 1


def is_archive(filename: str) -> bool:
    """Whether a filename names a supported archive."""
    return filename.lower().endswith(ARCHIVE_SUFFIXES)


def filename_from_url(url: str) -> str:
    """Return the last path segment of a URL."""
    name = unquote(urlparse(url).path.rsplit("/", 1)[-1])
    if not name:
        raise DownloadError(f"Cannot derive a file name from {url}", code="bad_url")
    return name


def parse_sha256sums(content: str, filename: str) -> str | None:
    """Parse a SHA256SUMS-style file to find the checksum for a file.

    A file holding a single bare digest is accepted as the checksum of
    ``filename``.

    Args:
        content: Content of the checksum file.
        filename: Filename to look up.

    Returns:
        SHA256 checksum string, or None if not found.
    """
    lines = [
        line.strip()
        for line in content.splitlines()
        if line.strip() and not line.strip().startswith("#")
    ]

    for line in lines:
        parts = line.split(maxsplit=1)
        if len(parts) != 2:
            continue

        checksum, name = parts
        # Remove leading '*' if present (binary mode indicator)
        name = name.lstrip("*").strip()

        if name == filename:
            return checksum.lower()

    if len(lines) == 1 and len(lines[0]) == 64 and " " not in lines[0]:
        return lines[0].lower()

    return None


def compute_file_sha256(file_path: Path, chunk_size: int = DOWNLOAD_CHUNK_SIZE) -> str:
    """Compute SHA256 checksum of a file.

    Args:
        file_path: Path to the file.
        chunk_size: Size of chunks to read.

    Returns:
        SHA256 hex digest.
    """
    sha256 = hashlib.sha256()
    with file_path.open("rb") as f:
        while chunk := f.read(chunk_size):
            sha256.update(chunk)
    return sha256.hexdigest()


def fetch_checksums(
    client: httpx.Client,
    url: str,
    timeout: float = HEAD_TIMEOUT,
) -> str:
    """Fetch checksum file content.

    Raises:
        DownloadError: If fetch fails.
    """
    logger.debug("Fetching checksums from %s", url)

    try:
        response = client.get(url, timeout=timeout)
        response.raise_for_status()
        return response.text

    except httpx.HTTPStatusError as e:
        raise DownloadError(
            f"HTTP error fetching checksums: {e.response.status_code}",
            code="http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout fetching checksums from {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error fetching checksums: {e}",
            code="network_error",
        ) from e


def _stream_to_part(
    client: httpx.Client,
    url: str,
    part_path: Path,
    timeout: float,
    chunk_size: int,
    cancel: threading.Event | None,
    progress: ProgressCallback | None,
) -> None:
    """Stream ``url`` into ``part_path``, resuming from any partial content."""
    offset = part_path.stat().st_size if part_path.exists() else 0
    headers = {"Range": f"bytes={offset}-"} if offset else {}

    try:
        with client.stream("GET", url, headers=headers, timeout=timeout) as response:
            if offset and response.status_code == 416:
                # Nothing left to fetch; the partial file is complete
                logger.debug("Partial download of %s is already complete", url)
                return
            response.raise_for_status()

            if response.status_code == 206:
                logger.info("Resuming download of %s at byte %d", url, offset)
                mode = "ab"
            else:
                offset = 0
                mode = "wb"

            total: int | None = None
            length = response.headers.get("Content-Length")
            if length and length.isdigit():
                total = offset + int(length)

            with part_path.open(mode) as f:
                for chunk in response.iter_bytes(chunk_size):
                    if cancel is not None and cancel.is_set():
                        raise DownloadError(
                            f"Download of {url} was cancelled", code="cancelled"
                        )
                    f.write(chunk)
                    offset += len(chunk)
                    if progress is not None:
                        progress(offset, total)

    except httpx.HTTPStatusError as e:
        status = e.response.status_code
        raise DownloadError(
            f"HTTP error downloading {url}: {status} {e.response.reason_phrase}",
            code="server_error" if status >= 500 else "http_error",
        ) from e
    except httpx.TimeoutException as e:
        raise DownloadError(
            f"Timeout downloading {url}",
            code="timeout",
        ) from e
    except httpx.RequestError as e:
        raise DownloadError(
            f"Network error downloading {url}: {e}",
            code="network_error",
        ) from e
    except OSError as e:
        raise DiskError(f"Failed writing {part_path}: {e}") from e


def download_file(
    client: httpx.Client,
    url: str,
    dest_path: Path,
    expected_checksum: str | None = None,
    timeout: float = DOWNLOAD_TIMEOUT,
    chunk_size: int = DOWNLOAD_CHUNK_SIZE,
    retries: int = 0,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> DownloadResult:
    """Download a file with resume, retry and optional checksum verification.

    Content is streamed into ``<dest_path>.part`` and renamed into place
    once complete and verified. Interrupted transfers are resumed with an
    HTTP Range request on the next attempt.

    Args:
        client: HTTPX client instance.
        url: URL to download from.
        dest_path: Destination path for the downloaded file.
        expected_checksum: Expected SHA256 checksum (optional).
        timeout: Download timeout in seconds.
        chunk_size: Size of chunks to download.
        retries: Extra attempts after a timeout, network or server error.
        cancel: Event that aborts the download when set.
        progress: Called with (bytes received, total bytes or None).

    Returns:
        DownloadResult with path, checksum, and size.

    Raises:
        DownloadError: If download fails.
        ChecksumMismatchError: If checksum verification fails.
        DiskError: If the file cannot be written.
    """
    logger.info("Downloading %s to %s", url, dest_path)

    part_path = dest_path.with_name(dest_path.name + ".part")
    try:
        dest_path.parent.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DiskError(f"Cannot create {dest_path.parent}: {e}") from e

    attempt = 1
    while True:
        try:
            _stream_to_part(
                client, url, part_path, timeout, chunk_size, cancel, progress
            )
            break
        except DownloadError as e:
            if e.code not in RETRYABLE_CODES or attempt > retries:
                raise
            logger.warning(
                "Download of %s failed (%s), retrying (%d/%d)",
                url,
                e.code,
                attempt,
                retries,
            )
            time.sleep(RETRY_BACKOFF * attempt)
            attempt += 1

    try:
        computed_checksum = compute_file_sha256(part_path)
        size_bytes = part_path.stat().st_size

        if expected_checksum and computed_checksum != expected_checksum.lower():
            # Remove the corrupted file
            part_path.unlink(missing_ok=True)
            raise ChecksumMismatchError(url, expected_checksum, computed_checksum)

        os.replace(part_path, dest_path)
    except OSError as e:
        raise DiskError(f"Failed to finalize {dest_path}: {e}") from e

    logger.info(
        "Downloaded %s (%d bytes, checksum: %s)",
        dest_path.name,
        size_bytes,
        computed_checksum[:16] + "...",
    )

    return DownloadResult(
        path=dest_path,
        checksum=computed_checksum,
        size_bytes=size_bytes,
        attempts=attempt,
    )


def extract_image(archive_path: Path, dest_dir: Path) -> Path:
    """Extract a base image archive and return the disk image inside it.

    Args:
        archive_path: Path to the archive file.
        dest_dir: Destination directory for extraction.

    Returns:
        Path to the extracted ``.img`` file.

    Raises:
        DownloadError: If the archive is corrupt or holds no disk image.
        DiskError: If extraction fails on the local filesystem.
    """
    logger.info("Extracting %s to %s", archive_path.name, dest_dir)

    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
        with tarfile.open(archive_path, "r:*") as tar:
            members = tar.getmembers()
            if not members:
                raise DownloadError(
                    f"Archive {archive_path} is empty", code="bad_archive"
                )

            for member in members:
                # Security: prevent path traversal
                member_path = Path(member.name)
                if member_path.is_absolute() or ".." in member_path.parts:
                    raise DownloadError(
                        f"Refusing to extract {member.name}: path traversal detected",
                        code="path_traversal",
                    )

            images = sorted(
                m.name
                for m in members
                if m.isfile() and m.name.lower().endswith(".img")
            )
            if not images:
                raise DownloadError(
                    f"No disk image found in {archive_path.name}",
                    code="bad_archive",
                )
            if len(images) > 1:
                logger.warning(
                    "Multiple images in %s, using %s", archive_path.name, images[0]
                )

            tar.extractall(dest_dir, filter="data")

    except tarfile.TarError as e:
        raise DownloadError(
            f"Failed to extract {archive_path}: {e}",
            code="bad_archive",
        ) from e
    except OSError as e:
        raise DiskError(f"OS error extracting {archive_path}: {e}") from e

    image_path = dest_dir / images[0]
    logger.info("Extracted base image to %s", image_path)
    return image_path


def _sidecar_path(archive_path: Path, dest_dir: Path) -> Path:
    return dest_dir / f"{archive_path.name}.json"


def _write_sidecar(
    archive_path: Path, dest_dir: Path, checksum: str, image_path: Path
) -> None:
    record = {
        "sha256": checksum,
        "image": str(image_path.relative_to(dest_dir))
        if image_path.is_relative_to(dest_dir)
        else str(image_path),
    }
    try:
        _sidecar_path(archive_path, dest_dir).write_text(
            json.dumps(record, indent=2) + "\n", encoding="utf-8"
        )
    except OSError as e:
        raise DiskError(f"Failed to record {archive_path.name}: {e}") from e


def _cached_image(
    archive_path: Path, dest_dir: Path, expected_checksum: str | None
) -> Path | None:
    """Return the image from an earlier complete fetch, if still valid."""
    sidecar = _sidecar_path(archive_path, dest_dir)
    if not archive_path.exists() or not sidecar.exists():
        return None

    try:
        record = json.loads(sidecar.read_text(encoding="utf-8"))
        image_path = dest_dir / record["image"]
        recorded = record["sha256"]
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.warning("Ignoring unreadable fetch record %s: %s", sidecar, e)
        return None

    if not image_path.exists():
        return None
    if expected_checksum and recorded != expected_checksum.lower():
        return None
    try:
        actual = compute_file_sha256(archive_path)
    except OSError as e:
        raise DiskError(f"Cannot read {archive_path}: {e}") from e
    if actual != recorded:
        logger.warning("%s changed since it was fetched, re-fetching", archive_path)
        return None
    return image_path


def _prepare_image(path: Path, dest_dir: Path, checksum: str) -> Path:
    image_path = extract_image(path, dest_dir) if is_archive(path.name) else path
    _write_sidecar(path, dest_dir, checksum, image_path)
    return image_path


def _fetch_remote(
    client: httpx.Client,
    name: str,
    url: str,
    dest_dir: Path,
    expected_checksum: str | None,
    checksum_url: str | None,
    verify_checksum: bool,
    retries: int,
    timeout: float,
    cancel: threading.Event | None,
    progress: ProgressCallback | None,
) -> Path:
    archive_path = dest_dir / name

    cached = _cached_image(archive_path, dest_dir, expected_checksum)
    if cached is not None:
        logger.info("Base image %s already present, skipping download", cached.name)
        return cached

    if verify_checksum and expected_checksum is None:
        if checksum_url:
            content = fetch_checksums(client, checksum_url)
            expected_checksum = parse_sha256sums(content, name)
        if not expected_checksum:
            logger.warning("Could not find a published checksum for %s", name)

    result = download_file(
        client,
        url,
        archive_path,
        expected_checksum=expected_checksum if verify_checksum else None,
        timeout=timeout,
        retries=retries,
        cancel=cancel,
        progress=progress,
    )
    return _prepare_image(result.path, dest_dir, result.checksum)


def _fetch_local(
    source: Path, dest_dir: Path, expected_checksum: str | None
) -> Path:
    if not source.is_file():
        raise DiskError(f"Base image not found: {source}", code="source_not_found")

    if is_archive(source.name):
        cached = _cached_image(source, dest_dir, expected_checksum)
        if cached is not None:
            logger.info("Base image %s already extracted", cached.name)
            return cached

    try:
        checksum = compute_file_sha256(source)
    except OSError as e:
        raise DiskError(f"Cannot read {source}: {e}") from e
    if expected_checksum and checksum != expected_checksum.lower():
        raise ChecksumMismatchError(str(source), expected_checksum, checksum)

    if is_archive(source.name):
        return _prepare_image(source, dest_dir, checksum)
    return source


def fetch_base_image(
    source: Release | str | Path,
    dest_dir: Path,
    client: httpx.Client | None = None,
    expected_checksum: str | None = None,
    verify_checksum: bool = True,
    retries: int = 3,
    timeout: float = DOWNLOAD_TIMEOUT,
    cancel: threading.Event | None = None,
    progress: ProgressCallback | None = None,
) -> Path:
    """Make a base image available locally.

    Re-fetching an already complete, checksum-valid artifact is a no-op.

    Args:
        source: Release, http(s) URL, or local path (image or archive).
        dest_dir: Directory receiving the download; created when absent.
        client: HTTPX client instance. A short-lived one is created if omitted.
        expected_checksum: Expected SHA256 of the downloaded/local file.
        verify_checksum: Look up and verify published checksums.
        retries: Extra attempts for interrupted downloads.
        timeout: Download timeout in seconds.
        cancel: Event that aborts the download when set.
        progress: Called with (bytes received, total bytes or None).

    Returns:
        Path to the local base disk image.

    Raises:
        DownloadError: On network failures or unusable archives.
        ChecksumMismatchError: If the artifact fails verification.
        DiskError: On local I/O failures.
    """
    try:
        dest_dir.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        raise DiskError(f"Cannot create work directory {dest_dir}: {e}") from e

    if isinstance(source, Path) or not (
        isinstance(source, Release) or source.startswith(("http://", "https://"))
    ):
        return _fetch_local(Path(source).expanduser(), dest_dir, expected_checksum)

    if isinstance(source, Release):
        asset = source.image_asset()
        if asset is None:
            raise DownloadError(
                f"Release {source.tag} has no base image asset",
                code="no_image_asset",
            )
        name, url = asset.name, asset.url
        expected_checksum = expected_checksum or asset.sha256
        checksum_asset = source.checksum_asset_for(asset)
        checksum_url = checksum_asset.url if checksum_asset else None
    else:
        name, url = filename_from_url(source), source
        checksum_url = None

    def _run(c: httpx.Client) -> Path:
        return _fetch_remote(
            c,
            name,
            url,
            dest_dir,
            expected_checksum,
            checksum_url,
            verify_checksum,
            retries,
            timeout,
            cancel,
            progress,
        )

    if client is not None:
        return _run(client)
    with httpx.Client(follow_redirects=True) as own_client:
        return _run(own_client)


def work_dir_has_content(work_dir: Path) -> bool:
    """Whether a work directory exists and is not empty."""
    if not work_dir.exists():
        return False
    if not work_dir.is_dir():
        return True
    return any(work_dir.iterdir())


def clear_work_dir(work_dir: Path) -> bool:
    """Remove a work directory and everything in it.

    Only ever called on explicit caller request.

    Args:
        work_dir: Directory to remove.

    Returns:
        True if removed, False if the directory didn't exist.

    Raises:
        DiskError: If removal fails.
    """
    if not work_dir.exists():
        return False

    logger.info("Clearing work directory %s", work_dir)

    try:
        if work_dir.is_dir():
            shutil.rmtree(work_dir)
        else:
            work_dir.unlink()
        return True
    except OSError as e:
        logger.error("Failed to clear %s: %s", work_dir, e)
        raise DiskError(f"Failed to clear work directory {work_dir}: {e}") from e


__all__ = [
    "DownloadResult",
    "clear_work_dir",
    "compute_file_sha256",
    "download_file",
    "extract_image",
    "fetch_base_image",
    "fetch_checksums",
    "filename_from_url",
    "is_archive",
    "parse_sha256sums",
    "work_dir_has_content",
]
