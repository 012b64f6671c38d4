"""Tests for configuration module."""

import json
import os
from pathlib import Path
from unittest.mock import patch

from skyimager.config import (
    SKYBIAN_RELEASES_URL,
    Settings,
    get_settings,
    print_settings_json,
)


class TestSettings:
    """Test Settings class."""

    def test_default_settings(self) -> None:
        """Settings should have sensible defaults."""
        with patch.dict(os.environ, {}, clear=True):
            settings = Settings(_env_file=None)

        assert settings.work_dir == Path.home() / "skyimager"
        assert "sqlite" in settings.db_url
        assert settings.releases_url == SKYBIAN_RELEASES_URL
        assert settings.include_prereleases is False
        assert settings.default_gateway_ip == "192.168.0.1"
        assert settings.default_visors == 12
        assert settings.log_level == "INFO"
        assert settings.request_timeout == 10.0
        assert settings.max_concurrent_builds >= 1
        assert settings.verify_checksum is True

    def test_settings_from_env(self) -> None:
        """Settings should be loadable from environment variables."""
        with patch.dict(
            os.environ,
            {
                "SKYIMAGER_LOG_LEVEL": "DEBUG",
                "SKYIMAGER_MAX_CONCURRENT_BUILDS": "4",
                "SKYIMAGER_INCLUDE_PRERELEASES": "true",
                "SKYIMAGER_DEFAULT_VISORS": "3",
            },
        ):
            settings = Settings()
            assert settings.log_level == "DEBUG"
            assert settings.max_concurrent_builds == 4
            assert settings.include_prereleases is True
            assert settings.default_visors == 3

    def test_work_dir_from_env(self) -> None:
        """Work dir should be configurable via env."""
        with patch.dict(os.environ, {"SKYIMAGER_WORK_DIR": "/tmp/sky"}):
            settings = Settings()
            assert settings.work_dir == Path("/tmp/sky")


class TestGetSettings:
    """Test get_settings function."""

    def test_get_settings_returns_settings(self) -> None:
        """get_settings should return a Settings instance."""
        assert isinstance(get_settings(), Settings)


class TestPrintSettingsJson:
    """Test print_settings_json function."""

    def test_print_settings_json(self) -> None:
        """print_settings_json should return valid JSON."""
        parsed = json.loads(print_settings_json(Settings()))

        assert "work_dir" in parsed
        assert "db_url" in parsed
        assert "releases_url" in parsed
        assert "max_concurrent_builds" in parsed

    def test_token_is_never_rendered(self) -> None:
        """The GitHub token must not appear in the output."""
        settings = Settings(github_token="ghp_secret")
        output = print_settings_json(settings)

        assert "ghp_secret" not in output
        assert "github_token" not in json.loads(output)
