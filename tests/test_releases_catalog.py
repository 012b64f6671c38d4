"""Tests for the release catalog.

These tests use mocked HTTP responses for the releases endpoint.
"""

import threading
from datetime import datetime, timezone
from pathlib import Path

import httpx
import pytest
import respx

from skyimager.errors import (
    EmptyCatalogError,
    InternalError,
    NetworkError,
    ReleaseNotFoundError,
)
from skyimager.releases import catalog
from skyimager.releases.catalog import (
    find_release,
    is_release_reference,
    latest_base_image_url,
    list_releases,
    parse_release,
)
from skyimager.releases.models import Release, ReleaseAsset

RELEASES_URL = "https://api.example.com/repos/skycoin/skybian/releases"


def release_entry(
    tag: str,
    published_at: str,
    assets: list[str] | None = None,
    prerelease: bool = False,
    draft: bool = False,
) -> dict:
    names = assets if assets is not None else [f"Skybian-{tag}.tar.xz"]
    return {
        "tag_name": tag,
        "name": f"Skybian {tag}",
        "published_at": published_at,
        "prerelease": prerelease,
        "draft": draft,
        "assets": [
            {
                "name": name,
                "browser_download_url": f"https://dl.example.com/{tag}/{name}",
                "size": 1024,
            }
            for name in names
        ],
    }


class TestParseRelease:
    """Tests for parse_release."""

    def test_parses_assets_and_digest(self) -> None:
        entry = release_entry("v1.0.0", "2024-01-02T03:04:05Z")
        entry["assets"][0]["digest"] = "sha256:" + "AB" * 32

        release = parse_release(entry)

        assert release is not None
        assert release.tag == "v1.0.0"
        assert release.published_at == datetime(2024, 1, 2, 3, 4, 5, tzinfo=timezone.utc)
        assert release.assets[0].sha256 == "ab" * 32

    def test_drafts_are_skipped(self) -> None:
        entry = release_entry("v1.0.0", "2024-01-02T03:04:05Z", draft=True)
        assert parse_release(entry) is None

    def test_unpublished_is_skipped(self) -> None:
        entry = release_entry("v1.0.0", "2024-01-02T03:04:05Z")
        entry["published_at"] = None
        assert parse_release(entry) is None


class TestListReleases:
    """Tests for list_releases."""

    @respx.mock
    def test_sorted_newest_first(self) -> None:
        """Releases should be ordered by publication time, latest first."""
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    release_entry("v0.9.0", "2023-05-01T00:00:00Z"),
                    release_entry("v1.1.0", "2024-06-01T00:00:00Z"),
                    release_entry("v1.0.0", "2024-01-01T00:00:00Z"),
                ],
            )
        )

        releases, latest = list_releases(url=RELEASES_URL)

        assert [r.tag for r in releases] == ["v1.1.0", "v1.0.0", "v0.9.0"]
        assert latest.tag == "v1.1.0"

    @respx.mock
    def test_malformed_entries_skipped(self) -> None:
        """Entries that are not release objects are ignored."""
        good = release_entry("v1.0.0", "2024-01-01T00:00:00Z")
        bad_time = release_entry("v2.0.0", "2025-01-01T00:00:00Z")
        bad_time["published_at"] = 1700000000
        bad_assets = release_entry("v3.0.0", "2025-02-01T00:00:00Z")
        bad_assets["assets"] = ["Skybian-v3.0.0.tar.xz", None]
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200, json=[good, "junk", None, 42, bad_time, bad_assets]
            )
        )

        releases, latest = list_releases(url=RELEASES_URL)

        assert [r.tag for r in releases] == ["v1.0.0"]
        assert latest.tag == "v1.0.0"

    @respx.mock
    def test_naive_timestamps_taken_as_utc(self) -> None:
        """Listings mixing naive and offset timestamps still sort."""
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    release_entry("v1.0.0", "2024-01-01T00:00:00Z"),
                    release_entry("v0.9.0", "2023-01-01T00:00:00"),
                    release_entry("v1.1.0", "2024-06-01T00:00:00"),
                ],
            )
        )

        releases, latest = list_releases(url=RELEASES_URL)

        assert [r.tag for r in releases] == ["v1.1.0", "v1.0.0", "v0.9.0"]
        assert releases[2].published_at == datetime(2023, 1, 1, tzinfo=timezone.utc)

    @respx.mock
    def test_follows_pagination(self) -> None:
        """Link rel=next headers should be followed."""
        page2 = RELEASES_URL + "?page=2"
        respx.get(RELEASES_URL, params={"page": "2"}).mock(
            return_value=httpx.Response(
                200, json=[release_entry("v0.1.0", "2020-01-01T00:00:00Z")]
            )
        )
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[release_entry("v1.0.0", "2024-01-01T00:00:00Z")],
                headers={"Link": f'<{page2}>; rel="next"'},
            )
        )

        releases, _ = list_releases(url=RELEASES_URL)

        assert [r.tag for r in releases] == ["v1.0.0", "v0.1.0"]

    @respx.mock
    def test_prereleases_filtered_by_default(self) -> None:
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    release_entry("v2.0.0-rc1", "2024-06-01T00:00:00Z", prerelease=True),
                    release_entry("v1.0.0", "2024-01-01T00:00:00Z"),
                ],
            )
        )

        _, latest = list_releases(url=RELEASES_URL)
        assert latest.tag == "v1.0.0"

        releases, latest = list_releases(url=RELEASES_URL, include_prereleases=True)
        assert latest.tag == "v2.0.0-rc1"
        assert len(releases) == 2

    @respx.mock
    def test_releases_without_image_dropped(self) -> None:
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200,
                json=[
                    release_entry("v1.1.0", "2024-06-01T00:00:00Z", assets=["notes.md"]),
                    release_entry("v1.0.0", "2024-01-01T00:00:00Z"),
                ],
            )
        )

        releases, _ = list_releases(url=RELEASES_URL)
        assert [r.tag for r in releases] == ["v1.0.0"]

    @respx.mock
    def test_empty_catalog(self) -> None:
        respx.get(RELEASES_URL).mock(return_value=httpx.Response(200, json=[]))

        with pytest.raises(EmptyCatalogError) as exc_info:
            list_releases(url=RELEASES_URL)
        assert exc_info.value.code == "empty_catalog"

    @respx.mock
    def test_http_error(self) -> None:
        respx.get(RELEASES_URL).mock(return_value=httpx.Response(503))

        with pytest.raises(NetworkError) as exc_info:
            list_releases(url=RELEASES_URL)
        assert exc_info.value.code == "http_error"

    @respx.mock
    def test_timeout(self) -> None:
        respx.get(RELEASES_URL).mock(side_effect=httpx.ReadTimeout("slow"))

        with pytest.raises(NetworkError) as exc_info:
            list_releases(url=RELEASES_URL)
        assert exc_info.value.code == "timeout"

    @respx.mock
    def test_connection_error(self) -> None:
        respx.get(RELEASES_URL).mock(side_effect=httpx.ConnectError("refused"))

        with pytest.raises(NetworkError) as exc_info:
            list_releases(url=RELEASES_URL)
        assert exc_info.value.code == "network_error"

    @respx.mock
    def test_malformed_json(self) -> None:
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(200, content=b"<html>")
        )

        with pytest.raises(NetworkError) as exc_info:
            list_releases(url=RELEASES_URL)
        assert exc_info.value.code == "bad_response"

    @respx.mock
    def test_cancelled_before_request(self) -> None:
        route = respx.get(RELEASES_URL).mock(return_value=httpx.Response(200, json=[]))
        cancel = threading.Event()
        cancel.set()

        with pytest.raises(NetworkError) as exc_info:
            list_releases(url=RELEASES_URL, cancel=cancel)
        assert exc_info.value.code == "cancelled"
        assert not route.called

    @respx.mock
    def test_token_sent_as_bearer(self) -> None:
        route = respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200, json=[release_entry("v1.0.0", "2024-01-01T00:00:00Z")]
            )
        )

        list_releases(url=RELEASES_URL, token="t0ken")

        assert route.calls.last.request.headers["Authorization"] == "Bearer t0ken"

    @respx.mock
    def test_latest_base_image_url(self) -> None:
        respx.get(RELEASES_URL).mock(
            return_value=httpx.Response(
                200, json=[release_entry("v1.0.0", "2024-01-01T00:00:00Z")]
            )
        )

        url = latest_base_image_url(url=RELEASES_URL)
        assert url == "https://dl.example.com/v1.0.0/Skybian-v1.0.0.tar.xz"

    def test_latest_without_image_raises_internal_error(
        self, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        bare = Release(tag="v1.0.0", published_at=datetime(2024, 1, 1, tzinfo=timezone.utc))
        monkeypatch.setattr(catalog, "list_releases", lambda *a, **kw: ([bare], bare))

        with pytest.raises(InternalError, match="v1.0.0 has no image asset"):
            latest_base_image_url(url=RELEASES_URL)


class TestFindRelease:
    """Tests for find_release."""

    releases = [
        Release(tag="v1.1.0", published_at=datetime(2024, 6, 1, tzinfo=timezone.utc)),
        Release(tag="v1.0.0", published_at=datetime(2024, 1, 1, tzinfo=timezone.utc)),
    ]

    def test_latest(self) -> None:
        assert find_release(self.releases, "latest").tag == "v1.1.0"

    def test_by_tag(self) -> None:
        assert find_release(self.releases, "v1.0.0").tag == "v1.0.0"

    def test_unknown_tag(self) -> None:
        with pytest.raises(ReleaseNotFoundError) as exc_info:
            find_release(self.releases, "v9.9.9")
        assert exc_info.value.tag == "v9.9.9"

    def test_empty(self) -> None:
        with pytest.raises(EmptyCatalogError):
            find_release([], "latest")


class TestReleaseModel:
    """Tests for Release helpers."""

    def test_prerelease_display(self) -> None:
        release = Release(
            tag="v2.0.0-rc1",
            published_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            prerelease=True,
        )
        assert str(release) == "v2.0.0-rc1 (pre-release)"

    def test_image_asset_preference(self) -> None:
        release = Release(
            tag="v1",
            published_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            assets=(
                ReleaseAsset("Skybian.img", "https://x/Skybian.img"),
                ReleaseAsset("Skybian.tar.xz", "https://x/Skybian.tar.xz"),
            ),
        )
        image = release.image_asset()
        assert image is not None
        assert image.name == "Skybian.tar.xz"

    def test_checksum_asset(self) -> None:
        image = ReleaseAsset("Skybian.tar.xz", "https://x/Skybian.tar.xz")
        sums = ReleaseAsset("Skybian.tar.xz.sha256", "https://x/Skybian.tar.xz.sha256")
        release = Release(
            tag="v1",
            published_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
            assets=(image, sums),
        )
        assert release.checksum_asset_for(image) == sums


class TestIsReleaseReference:
    """Tests for is_release_reference."""

    def test_latest_and_tags(self) -> None:
        assert is_release_reference("latest")
        assert is_release_reference("v1.2.0")

    def test_urls_and_paths(self, tmp_path: Path) -> None:
        local = tmp_path / "base.img"
        local.write_bytes(b"")

        assert not is_release_reference("https://dl.example.com/base.img")
        assert not is_release_reference("./base.img")
        assert not is_release_reference("~/base.img")
        assert not is_release_reference(str(local))
