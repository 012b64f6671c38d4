"""Configuration settings for skyimager.

Uses pydantic-settings for config parsing from environment variables
and defaults. Configuration precedence: CLI flags > env vars > defaults.
"""

import os
from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

SKYBIAN_RELEASES_URL = "https://api.github.com/repos/skycoin/skybian/releases"


def _default_work_dir() -> Path:
    """Return the default work directory."""
    return Path.home() / "skyimager"


def _default_db_url() -> str:
    """Return the default database URL (SQLite)."""
    db_path = Path.home() / ".local" / "share" / "skyimager" / "db.sqlite"
    return f"sqlite:///{db_path}"


def _default_max_builds() -> int:
    return os.cpu_count() or 2


class Settings(BaseSettings):
    """Application settings.

    Settings are loaded from environment variables with the SKYIMAGER_ prefix.
    CLI flags can override these at runtime.
    """

    model_config = SettingsConfigDict(
        env_prefix="SKYIMAGER_",
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    # Paths
    work_dir: Path = Field(
        default_factory=_default_work_dir,
        description="Default work directory for base and final images",
    )
    db_url: str = Field(
        default_factory=_default_db_url,
        description="Database connection URL for run history",
    )

    # Release source
    releases_url: str = Field(
        default=SKYBIAN_RELEASES_URL,
        description="Release-listing endpoint (GitHub releases API shape)",
    )
    github_token: str | None = Field(
        default=None,
        description="Optional bearer token for the release endpoint",
    )
    include_prereleases: bool = Field(
        default=False,
        description="Offer pre-releases as base images",
    )

    # Boot parameter defaults
    default_gateway_ip: str = Field(
        default="192.168.0.1",
        description="Gateway IP suggested to callers",
    )
    default_visors: int = Field(
        default=12,
        ge=0,
        description="Number of visor images suggested to callers",
    )

    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"] = Field(
        default="INFO",
        description="Logging level",
    )

    # Concurrency
    max_concurrent_builds: int = Field(
        default_factory=_default_max_builds,
        ge=1,
        le=64,
        description="Maximum concurrent image builds",
    )

    # Network
    request_timeout: float = Field(
        default=10.0,
        gt=0,
        description="Timeout for listing releases (seconds)",
    )
    download_timeout: int = Field(
        default=3600,
        ge=60,
        description="Timeout for base image downloads (seconds)",
    )
    download_retries: int = Field(
        default=3,
        ge=0,
        le=10,
        description="Retries for interrupted base image downloads",
    )
    verify_checksum: bool = Field(
        default=True,
        description="Verify base image checksums when one is published",
    )


def get_settings() -> Settings:
    """Get the application settings singleton.

    Returns:
        Settings instance loaded from environment.
    """
    return Settings()


def print_settings_json(settings: Settings | None = None) -> str:
    """Render effective settings as JSON.

    The GitHub token is never rendered.

    Args:
        settings: Optional settings instance; uses default if not provided.

    Returns:
        JSON string of effective settings.
    """
    if settings is None:
        settings = get_settings()
    return settings.model_dump_json(indent=2, exclude={"github_token"})


__all__ = ["SKYBIAN_RELEASES_URL", "Settings", "get_settings", "print_settings_json"]
