"""Release catalog.

This module handles:
- Listing base image releases from a GitHub-style releases endpoint
- Ordering releases and resolving "latest"
- Looking up a selected release tag

Listing never retries: the caller decides whether to try again.
"""

from __future__ import annotations

import logging
import threading
import time
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import httpx

from skyimager.config import SKYBIAN_RELEASES_URL
from skyimager.errors import (
    EmptyCatalogError,
    InternalError,
    NetworkError,
    ReleaseNotFoundError,
)
from skyimager.releases.models import Release, ReleaseAsset

logger = logging.getLogger(__name__)

# Overall deadline for listing releases (seconds)
DEFAULT_TIMEOUT = 10.0

# Upper bound on followed pagination links
MAX_PAGES = 20

LATEST = "latest"


def _parse_timestamp(value: str) -> datetime:
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    # Timestamps without an offset are taken as UTC so all releases compare
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _parse_digest(value: Any) -> str | None:
    if not isinstance(value, str) or not value.startswith("sha256:"):
        return None
    return value.split(":", 1)[1].lower()


def parse_release(data: Any) -> Release | None:
    """Parse one entry of a releases listing.

    Args:
        data: Release object as returned by the releases API.

    Returns:
        Release, or None for drafts, unpublished and malformed entries.
    """
    if not isinstance(data, dict) or data.get("draft"):
        return None
    published = data.get("published_at")
    tag = data.get("tag_name")
    if not isinstance(published, str) or not isinstance(tag, str):
        return None
    if not published or not tag:
        return None

    assets = tuple(
        ReleaseAsset(
            name=a["name"],
            url=a["browser_download_url"],
            size=a.get("size"),
            sha256=_parse_digest(a.get("digest")),
        )
        for a in data.get("assets") or []
        if isinstance(a, dict)
        and isinstance(a.get("name"), str)
        and isinstance(a.get("browser_download_url"), str)
    )
    return Release(
        tag=tag,
        published_at=_parse_timestamp(published),
        assets=assets,
        name=data.get("name") or tag,
        prerelease=bool(data.get("prerelease")),
    )


def sort_releases(releases: list[Release]) -> list[Release]:
    """Order releases by publication time, newest first."""
    return sorted(releases, key=lambda r: r.published_at, reverse=True)


def _check_cancelled(cancel: threading.Event | None, deadline: float) -> float:
    if cancel is not None and cancel.is_set():
        raise NetworkError("Listing releases was cancelled", code="cancelled")
    remaining = deadline - time.monotonic()
    if remaining <= 0:
        raise NetworkError("Timeout listing releases", code="timeout")
    return remaining


def _fetch_pages(
    client: httpx.Client,
    url: str,
    timeout: float,
    cancel: threading.Event | None,
) -> list[dict[str, Any]]:
    deadline = time.monotonic() + timeout
    entries: list[dict[str, Any]] = []
    next_url: str | None = url
    pages = 0

    while next_url and pages < MAX_PAGES:
        remaining = _check_cancelled(cancel, deadline)
        logger.debug("Fetching releases page %s", next_url)
        try:
            response = client.get(next_url, timeout=remaining)
            response.raise_for_status()
            page = response.json()
        except httpx.HTTPStatusError as e:
            raise NetworkError(
                f"HTTP error listing releases: {e.response.status_code} "
                f"{e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise NetworkError(
                f"Timeout listing releases from {next_url}", code="timeout"
            ) from e
        except httpx.RequestError as e:
            raise NetworkError(f"Network error listing releases: {e}") from e
        except ValueError as e:
            raise NetworkError(
                f"Malformed release listing from {next_url}: {e}",
                code="bad_response",
            ) from e

        if not isinstance(page, list):
            raise NetworkError(
                f"Expected a list of releases from {next_url}",
                code="bad_response",
            )
        entries.extend(page)
        pages += 1
        next_url = response.links.get("next", {}).get("url")

    return entries


def list_releases(
    client: httpx.Client | None = None,
    url: str = SKYBIAN_RELEASES_URL,
    timeout: float = DEFAULT_TIMEOUT,
    cancel: threading.Event | None = None,
    include_prereleases: bool = False,
    token: str | None = None,
) -> tuple[list[Release], Release]:
    """List available base image releases.

    Args:
        client: HTTPX client instance. A short-lived one is created if omitted.
        url: Releases endpoint.
        timeout: Overall deadline in seconds, pagination included.
        cancel: Event that aborts the listing when set.
        include_prereleases: Keep releases marked as pre-releases.
        token: Optional bearer token.

    Returns:
        Tuple of (releases newest first, latest release).

    Raises:
        NetworkError: If the source is unreachable, times out or is cancelled.
        EmptyCatalogError: If no usable release is found.
    """
    logger.info("Listing releases from %s", url)

    if client is None:
        headers = {"Accept": "application/vnd.github+json"}
        if token:
            headers["Authorization"] = f"Bearer {token}"
        with httpx.Client(headers=headers, follow_redirects=True) as own_client:
            entries = _fetch_pages(own_client, url, timeout, cancel)
    else:
        entries = _fetch_pages(client, url, timeout, cancel)

    releases: list[Release] = []
    for entry in entries:
        try:
            release = parse_release(entry)
        except (AttributeError, KeyError, TypeError, ValueError) as e:
            logger.warning("Skipping malformed release entry: %s", e)
            continue
        if release is None:
            continue
        if release.prerelease and not include_prereleases:
            continue
        if release.image_asset() is None:
            logger.debug("Skipping release %s without an image asset", release.tag)
            continue
        releases.append(release)

    if not releases:
        raise EmptyCatalogError(f"No base image releases found at {url}")

    releases = sort_releases(releases)
    logger.info("Found %d release(s), latest is %s", len(releases), releases[0])
    return releases, releases[0]


def find_release(releases: list[Release], tag: str) -> Release:
    """Find a release by tag.

    Args:
        releases: Releases ordered newest first.
        tag: Release tag, or "latest".

    Returns:
        Matching Release.

    Raises:
        EmptyCatalogError: If ``releases`` is empty.
        ReleaseNotFoundError: If no release has the tag.
    """
    if not releases:
        raise EmptyCatalogError("No releases to choose from")
    if tag.lower() == LATEST:
        return releases[0]
    for release in releases:
        if release.tag == tag:
            return release
    raise ReleaseNotFoundError(tag)


def latest_base_image_url(
    client: httpx.Client | None = None,
    url: str = SKYBIAN_RELEASES_URL,
    timeout: float = DEFAULT_TIMEOUT,
    cancel: threading.Event | None = None,
) -> str:
    """Return the base image URL of the latest release.

    Raises:
        NetworkError: If the source is unreachable.
        EmptyCatalogError: If no usable release is found.
    """
    _, latest = list_releases(client, url=url, timeout=timeout, cancel=cancel)
    asset = latest.image_asset()
    if asset is None:
        raise InternalError(f"Release {latest.tag} has no image asset")
    return asset.url


def is_release_reference(base_image: str) -> bool:
    """Whether a base image identifier names a release rather than a location.

    URLs and paths that exist locally (or look like paths) are locations;
    anything else is taken to be "latest" or a release tag.
    """
    if base_image.lower() == LATEST:
        return True
    if base_image.startswith(("http://", "https://", "file://")):
        return False
    if "/" in base_image or "\\" in base_image or base_image.startswith("~"):
        return False
    return not Path(base_image).exists()


__all__ = [
    "DEFAULT_TIMEOUT",
    "LATEST",
    "find_release",
    "is_release_reference",
    "latest_base_image_url",
    "list_releases",
    "parse_release",
    "sort_releases",
]
