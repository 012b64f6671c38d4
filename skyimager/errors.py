"""Error taxonomy for skyimager.

Every error carries a machine-readable ``code`` in addition to its message,
so the CLI and web frontends can report failures in a structured way.
Errors live here rather than in the raising modules because the
orchestrator, the frontends and several subpackages all need them.
"""


class SkyimagerError(Exception):
    """Base class for all skyimager errors."""

    default_code = "skyimager_error"

    def __init__(self, message: str, code: str | None = None) -> None:
        """Initialize SkyimagerError.

        Args:
            message: Error description.
            code: Error code for structured error handling.
        """
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code


class InvalidConfigError(SkyimagerError):
    """Raised when a build configuration violates its invariants."""

    default_code = "invalid_config"


class CatalogError(SkyimagerError):
    """Base error for release catalog operations."""

    default_code = "catalog_error"


class NetworkError(CatalogError):
    """Raised when the release source cannot be reached."""

    default_code = "network_error"


class EmptyCatalogError(CatalogError):
    """Raised when the release source lists no usable releases."""

    default_code = "empty_catalog"


class ReleaseNotFoundError(CatalogError):
    """Raised when a requested release tag is not in the catalog."""

    default_code = "release_not_found"

    def __init__(self, tag: str, code: str | None = None) -> None:
        super().__init__(f"Release not found: {tag}", code=code)
        self.tag = tag


class FetchError(SkyimagerError):
    """Base error for base image fetch operations."""

    default_code = "fetch_error"


class DownloadError(FetchError):
    """Raised when a base image download fails."""

    default_code = "download_error"


class ChecksumMismatchError(FetchError):
    """Raised when a downloaded file does not match its checksum."""

    default_code = "checksum_mismatch"

    def __init__(
        self, source: str, expected: str, actual: str, code: str | None = None
    ) -> None:
        super().__init__(
            f"Checksum mismatch for {source}: expected {expected}, got {actual}",
            code=code,
        )
        self.source = source
        self.expected = expected
        self.actual = actual


class DiskError(FetchError):
    """Raised on local filesystem failures."""

    default_code = "disk_error"


class CodecError(SkyimagerError):
    """Raised when boot parameters cannot be encoded or decoded."""

    default_code = "codec_error"


class BuildError(SkyimagerError):
    """Raised when a single final image cannot be built."""

    default_code = "build_error"


class InternalError(SkyimagerError):
    """Raised when an internal invariant is broken."""

    default_code = "internal_error"


class BuildInProgressError(SkyimagerError):
    """Raised when a run is already in flight for a work directory."""

    default_code = "build_in_progress"


class RunNotFoundError(SkyimagerError):
    """Raised when a recorded run is not found."""

    default_code = "run_not_found"

    def __init__(self, run_id: int, code: str | None = None) -> None:
        super().__init__(f"Run not found: {run_id}", code=code)
        self.run_id = run_id


__all__ = [
    "BuildError",
    "BuildInProgressError",
    "CatalogError",
    "ChecksumMismatchError",
    "CodecError",
    "DiskError",
    "DownloadError",
    "EmptyCatalogError",
    "FetchError",
    "InternalError",
    "InvalidConfigError",
    "NetworkError",
    "ReleaseNotFoundError",
    "RunNotFoundError",
    "SkyimagerError",
]
