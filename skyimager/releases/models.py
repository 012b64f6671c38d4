"""Release data model.

A Release mirrors one entry of a GitHub-style release listing: a tag,
a publication time and the downloadable assets attached to it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

# Suffixes of assets that carry a base image, in order of preference
IMAGE_ASSET_SUFFIXES = (".tar.xz", ".tar.gz", ".tar", ".img")

# Names of assets that list checksums for the other assets
CHECKSUM_ASSET_NAMES = ("sha256sums", "sha256sums.txt", "checksums.txt")


@dataclass(frozen=True)
class ReleaseAsset:
    """A downloadable file attached to a release."""

    name: str
    url: str
    size: int | None = None
    sha256: str | None = None


@dataclass(frozen=True)
class Release:
    """A base image release.

    Attributes:
        tag: Version tag (e.g. 'v1.0.0').
        published_at: Publication timestamp (timezone aware).
        assets: Downloadable assets.
        name: Human-readable release name.
        prerelease: Whether the release is marked as a pre-release.
    """

    tag: str
    published_at: datetime
    assets: tuple[ReleaseAsset, ...] = field(default_factory=tuple)
    name: str = ""
    prerelease: bool = False

    def __str__(self) -> str:
        if self.prerelease:
            return f"{self.tag} (pre-release)"
        return self.tag

    def image_asset(self) -> ReleaseAsset | None:
        """Return the asset carrying the base image, if any."""
        for suffix in IMAGE_ASSET_SUFFIXES:
            for asset in self.assets:
                if asset.name.lower().endswith(suffix):
                    return asset
        return None

    def checksum_asset_for(self, asset: ReleaseAsset) -> ReleaseAsset | None:
        """Return the asset publishing a checksum for ``asset``, if any."""
        by_name = {a.name.lower(): a for a in self.assets}
        sidecar = by_name.get(f"{asset.name.lower()}.sha256")
        if sidecar is not None:
            return sidecar
        for name in CHECKSUM_ASSET_NAMES:
            if name in by_name:
                return by_name[name]
        return None

    def to_dict(self) -> dict[str, Any]:
        image = self.image_asset()
        return {
            "tag": self.tag,
            "name": self.name,
            "published_at": self.published_at.isoformat(),
            "prerelease": self.prerelease,
            "image_url": image.url if image else None,
            "assets": [a.name for a in self.assets],
        }


__all__ = [
    "CHECKSUM_ASSET_NAMES",
    "IMAGE_ASSET_SUFFIXES",
    "Release",
    "ReleaseAsset",
]
