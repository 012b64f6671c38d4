"""Build configuration model and file I/O.

A BuildConfig is created once by the caller (CLI, web API, tests) and is
immutable afterwards. The orchestrator re-validates it on entry with
validate_config() before doing any work.
"""

from __future__ import annotations

import json
import re
from ipaddress import IPv4Address
from pathlib import Path
from typing import Any

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from skyimager.errors import InvalidConfigError

SHA256_PATTERN = re.compile(r"^[0-9a-f]{64}$")

MAX_VISORS = 250
# Encoded length, not characters: the passcode shares a 216-byte MBR blob
MAX_PASSCODE_BYTES = 64
MAX_HOST_OCTET = 254


class BuildConfig(BaseModel):
    """Validated, immutable configuration for one build run.

    Attributes:
        work_dir: Directory receiving the base image and final images.
        base_image: "latest", a release tag, an http(s) URL or a local path.
        base_image_sha256: Optional expected checksum for a URL or local file.
        gateway_ip: Gateway shared by all boards.
        passcode: Skysocks passcode shared by all boards.
        visors: Number of visor images to build.
        hypervisor: Whether to build an additional hypervisor image.
        seed: Seed for deterministic key derivation.
    """

    model_config = ConfigDict(frozen=True, extra="forbid")

    work_dir: Path = Field(description="Work directory (resolved to absolute)")
    base_image: str = Field(default="latest", description="Base image source")
    base_image_sha256: str | None = Field(
        default=None, description="Expected SHA-256 of a direct base image"
    )
    gateway_ip: IPv4Address | None = Field(default=None, description="Gateway IP")
    passcode: str = Field(default="", description="Skysocks passcode")
    visors: int = Field(default=0, ge=0, le=MAX_VISORS, description="Visor count")
    hypervisor: bool = Field(default=True, description="Build a hypervisor image")
    seed: str = Field(default="", description="Key derivation seed")

    @field_validator("work_dir", mode="before")
    @classmethod
    def validate_work_dir(cls, v: Any) -> Any:
        """Reject blank work directories before path coercion."""
        if isinstance(v, str) and not v.strip():
            raise ValueError("work_dir cannot be empty")
        return v

    @field_validator("work_dir")
    @classmethod
    def resolve_work_dir(cls, v: Path) -> Path:
        """Resolve the work directory to an absolute path."""
        try:
            return v.expanduser().resolve()
        except (OSError, RuntimeError) as e:
            raise ValueError(f"cannot resolve work_dir {v}: {e}") from e

    @field_validator("passcode")
    @classmethod
    def validate_passcode(cls, v: str) -> str:
        """Limit the passcode to what fits in the boot parameter blob."""
        size = len(v.encode("utf-8"))
        if size > MAX_PASSCODE_BYTES:
            raise ValueError(
                f"passcode must be at most {MAX_PASSCODE_BYTES} bytes "
                f"in UTF-8, got {size}"
            )
        return v

    @field_validator("base_image")
    @classmethod
    def validate_base_image(cls, v: str) -> str:
        """Validate base image is not blank."""
        v = v.strip()
        if not v:
            raise ValueError("base_image cannot be empty")
        return v

    @field_validator("base_image_sha256")
    @classmethod
    def validate_sha256(cls, v: str | None) -> str | None:
        """Validate checksum is a SHA-256 hex digest."""
        if v is None:
            return v
        v = v.strip().lower()
        if not SHA256_PATTERN.match(v):
            raise ValueError("base_image_sha256 must be 64 hex characters")
        return v

    @model_validator(mode="after")
    def validate_gateway(self) -> BuildConfig:
        """Require a gateway whenever at least one image is built."""
        if self.image_count > 0 and self.gateway_ip is None:
            raise ValueError("gateway_ip is required when building images")
        # Boards take the addresses after the gateway within its /24
        if self.gateway_ip is not None:
            last = (int(self.gateway_ip) & 0xFF) + self.image_count
            if last > MAX_HOST_OCTET:
                raise ValueError(
                    f"{self.image_count} image(s) do not fit after gateway "
                    f"{self.gateway_ip} in its /24"
                )
        return self

    @property
    def image_count(self) -> int:
        """Number of final images this configuration produces."""
        return self.visors + (1 if self.hypervisor else 0)

    @property
    def images_dir(self) -> Path:
        return self.work_dir / "images"


def validate_config(config: BuildConfig) -> BuildConfig:
    """Re-validate a configuration value.

    Catches values built with model_construct() or otherwise bypassing
    validation.

    Args:
        config: Configuration to check.

    Returns:
        A validated BuildConfig.

    Raises:
        InvalidConfigError: If any invariant is violated.
    """
    try:
        data = {name: getattr(config, name, None) for name in BuildConfig.model_fields}
        return BuildConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise InvalidConfigError(f"Invalid build configuration: {problems}") from e


def parse_build_config(data: dict[str, Any]) -> BuildConfig:
    """Parse a mapping into a BuildConfig.

    Raises:
        InvalidConfigError: If data does not describe a valid configuration.
    """
    try:
        return BuildConfig.model_validate(data)
    except ValidationError as e:
        raise InvalidConfigError(f"Invalid build configuration: {e}") from e


def read_config_data(path: Path) -> dict[str, Any]:
    """Read raw build configuration data from a YAML or JSON file.

    File format is determined by extension (.yaml, .yml for YAML,
    .json for JSON). The data is not validated, so callers may merge it
    with other sources first.

    Raises:
        InvalidConfigError: If the file is unreadable or not a mapping.
    """
    suffix = path.suffix.lower()
    try:
        with open(path, encoding="utf-8") as f:
            if suffix in (".yaml", ".yml"):
                data = yaml.safe_load(f)
            elif suffix == ".json":
                data = json.load(f)
            else:
                raise InvalidConfigError(
                    f"Unsupported config file extension: {path.suffix}",
                    code="unsupported_format",
                )
    except (OSError, yaml.YAMLError, json.JSONDecodeError) as e:
        raise InvalidConfigError(f"Cannot read config file {path}: {e}") from e

    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise InvalidConfigError(
            f"Expected a mapping in {path}, got {type(data).__name__}"
        )
    return data


def load_build_config(path: Path) -> BuildConfig:
    """Load a BuildConfig from a YAML or JSON file.

    Raises:
        InvalidConfigError: If the file is unreadable, malformed or invalid.
    """
    return parse_build_config(read_config_data(path))


def dump_build_config(config: BuildConfig, path: Path) -> None:
    """Write a BuildConfig to a YAML or JSON file.

    Args:
        config: Configuration to write.
        path: Output path; format chosen by extension.

    Raises:
        ValueError: If the file extension is not supported.
    """
    data = config.model_dump(mode="json")
    suffix = path.suffix.lower()
    path.parent.mkdir(parents=True, exist_ok=True)
    if suffix in (".yaml", ".yml"):
        path.write_text(
            yaml.safe_dump(data, default_flow_style=False, sort_keys=False),
            encoding="utf-8",
        )
    elif suffix == ".json":
        path.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    else:
        raise ValueError(f"Unsupported config file extension: {path.suffix}")


__all__ = [
    "BuildConfig",
    "dump_build_config",
    "load_build_config",
    "parse_build_config",
    "read_config_data",
    "validate_config",
]
