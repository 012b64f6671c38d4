"""Base image release discovery.

This module handles:
- Listing releases from a GitHub-style releases endpoint
- Resolving "latest" and validating selected tags
"""

from skyimager.releases.catalog import (
    find_release,
    is_release_reference,
    latest_base_image_url,
    list_releases,
)
from skyimager.releases.models import Release, ReleaseAsset

__all__ = [
    "Release",
    "ReleaseAsset",
    "find_release",
    "is_release_reference",
    "latest_base_image_url",
    "list_releases",
]
