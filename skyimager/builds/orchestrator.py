"""Build orchestration.

This module sequences a build run:

    idle -> validating_config -> fetching_base -> generating_params
         -> building -> completed | failed

- Configuration, catalog and fetch errors end the run immediately.
- A failed image build is recorded on its artifact; the remaining images
  are still built. The run completes if at least one image was built.
- Every failure is reported to the listener exactly once before the state
  transition it causes.

Listeners are always called from the thread that called run().
"""

from __future__ import annotations

import fcntl
import logging
import os
import threading
from collections.abc import Callable, Iterator
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from skyimager.baseimage import fetch
from skyimager.bootparams import generator
from skyimager.bootparams.models import BootParams
from skyimager.buildconfig import BuildConfig, validate_config
from skyimager.builds import builder
from skyimager.builds.manifest import (
    MANIFEST_FILENAME,
    generate_manifest,
    write_manifest,
)
from skyimager.config import Settings, get_settings
from skyimager.errors import (
    BuildError,
    BuildInProgressError,
    CatalogError,
    DiskError,
    FetchError,
    InternalError,
    InvalidConfigError,
    SkyimagerError,
)
from skyimager.releases import catalog
from skyimager.releases.models import Release
from skyimager.types import BuildArtifact, BuildStatus, RunResult, RunState

logger = logging.getLogger(__name__)

# Lock file held inside the work directory while a run owns it
LOCK_FILENAME = ".skyimager.lock"

# Report download progress every this many bytes when the size is unknown
PROGRESS_STEP_BYTES = 8 * 1024 * 1024


class BuildListener:
    """Receives progress events from a run.

    All methods are no-ops; subclass and override what you need.
    """

    def on_stage(self, stage: RunState) -> None:
        """Called on every state transition."""

    def on_progress(self, stage: RunState, detail: str) -> None:
        """Called with human-readable progress within a stage."""

    def on_error(self, error: Exception) -> None:
        """Called once for an error that fails the run."""

    def on_artifact(self, artifact: BuildArtifact) -> None:
        """Called once per final image, successful or not."""


class ListenerGroup(BuildListener):
    """Fans events out to several listeners."""

    def __init__(self, *listeners: BuildListener) -> None:
        self.listeners = list(listeners)

    def on_stage(self, stage: RunState) -> None:
        for listener in self.listeners:
            listener.on_stage(stage)

    def on_progress(self, stage: RunState, detail: str) -> None:
        for listener in self.listeners:
            listener.on_progress(stage, detail)

    def on_error(self, error: Exception) -> None:
        for listener in self.listeners:
            listener.on_error(error)

    def on_artifact(self, artifact: BuildArtifact) -> None:
        for listener in self.listeners:
            listener.on_artifact(artifact)


@contextmanager
def single_flight(work_dir: Path) -> Iterator[None]:
    """Hold exclusive ownership of a work directory for a run.

    Ownership is an flock on a lock file inside the directory, so it holds
    against other threads and other processes alike.

    Raises:
        BuildInProgressError: If a run already owns the directory.
        DiskError: If the lock file cannot be created.
    """
    try:
        work_dir.mkdir(parents=True, exist_ok=True)
        fd = os.open(str(work_dir / LOCK_FILENAME), os.O_RDWR | os.O_CREAT, 0o600)
    except OSError as e:
        raise DiskError(f"Cannot lock work directory {work_dir}: {e}") from e

    try:
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError:
            raise BuildInProgressError(
                f"A build is already running in {work_dir}"
            ) from None
        logger.debug("Acquired work directory lock for %s", work_dir)
        try:
            yield
        finally:
            fcntl.flock(fd, fcntl.LOCK_UN)
    finally:
        os.close(fd)


@dataclass
class _Run:
    """Mutable state of one run."""

    listener: BuildListener
    state: RunState = RunState.IDLE
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    base_image: Path | None = None
    params: list[BootParams] = field(default_factory=list)
    artifacts: list[BuildArtifact] = field(default_factory=list)

    def transition(self, state: RunState) -> None:
        logger.debug("Run state %s -> %s", self.state.value, state.value)
        self.state = state
        self.listener.on_stage(state)

    def progress(self, detail: str) -> None:
        self.listener.on_progress(self.state, detail)

    def result(self, summary: str, error: Exception | None = None) -> RunResult:
        return RunResult(
            state=self.state,
            summary=summary,
            artifacts=self.artifacts,
            error=error,
            base_image_path=self.base_image,
            params=self.params,
            started_at=self.started_at,
            finished_at=datetime.now(timezone.utc),
        )


def summarize(artifacts: list[BuildArtifact]) -> str:
    """Return a human-readable summary of final image results."""
    total = len(artifacts)
    if total == 0:
        return "No images requested"
    failed = sum(1 for a in artifacts if a.status == BuildStatus.FAILED)
    if failed == 0:
        return f"Built {total} image(s)"
    if failed == total:
        return f"All {total} image build(s) failed"
    return f"Built {total - failed} of {total} image(s), {failed} failed"


class BuildOrchestrator:
    """Runs the full pipeline for a BuildConfig.

    Collaborators default to the real implementations and may be replaced,
    for example by tests.
    """

    def __init__(
        self,
        settings: Settings | None = None,
        list_releases: Callable[..., tuple[list[Release], Release]] | None = None,
        fetch_base_image: Callable[..., Path] | None = None,
        generate: Callable[[BuildConfig], list[BootParams]] | None = None,
        build_image: Callable[[Path, BootParams, Path], BuildArtifact] | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self._list_releases = list_releases or catalog.list_releases
        self._fetch_base_image = fetch_base_image or fetch.fetch_base_image
        self._generate = generate or generator.generate
        self._build_image = build_image or builder.build_image

    def run(
        self,
        config: BuildConfig,
        listener: BuildListener | None = None,
        cancel: threading.Event | None = None,
    ) -> RunResult:
        """Execute a build run.

        Args:
            config: Build configuration.
            listener: Receives stage, progress, error and artifact events.
            cancel: Event that aborts network operations when set.

        Returns:
            RunResult in state COMPLETED or FAILED.
        """
        run = _Run(listener=listener or BuildListener())

        run.transition(RunState.VALIDATING_CONFIG)
        try:
            config = validate_config(config)
        except InvalidConfigError as e:
            return self._fail(run, e)

        try:
            with single_flight(config.work_dir):
                return self._run_owned(run, config, cancel)
        except (BuildInProgressError, DiskError) as e:
            return self._fail(run, e)

    def _run_owned(
        self,
        run: _Run,
        config: BuildConfig,
        cancel: threading.Event | None,
    ) -> RunResult:
        logger.info(
            "Starting run in %s: %d visor(s), hypervisor=%s",
            config.work_dir,
            config.visors,
            config.hypervisor,
        )

        run.transition(RunState.FETCHING_BASE)
        try:
            run.base_image = self._fetch(run, config, cancel)
        except (CatalogError, FetchError) as e:
            return self._fail(run, e)
        except Exception as e:
            logger.exception("Unexpected error while fetching the base image")
            return self._fail(run, _internal(f"Unexpected fetch failure: {e}", e))

        run.transition(RunState.GENERATING_PARAMS)
        try:
            run.params = self._generate(config)
        except Exception as e:
            return self._fail(
                run, _internal(f"Boot parameter generation failed: {e}", e)
            )
        if len(run.params) != config.image_count:
            return self._fail(
                run,
                InternalError(
                    f"Expected {config.image_count} boot parameter set(s), "
                    f"got {len(run.params)}"
                ),
            )
        run.progress(f"Generated {len(run.params)} boot parameter set(s)")

        run.transition(RunState.BUILDING)
        try:
            self._build_all(run, config)
            self._write_manifest(run, config)
        except DiskError as e:
            return self._fail(run, e)
        except Exception as e:
            logger.exception("Unexpected error while building images")
            return self._fail(run, _internal(f"Unexpected build failure: {e}", e))

        summary = summarize(run.artifacts)
        if run.artifacts and not any(a.succeeded for a in run.artifacts):
            error = BuildError(summary, code="all_builds_failed")
            run.listener.on_error(error)
            run.transition(RunState.FAILED)
            logger.error("Run in %s failed: %s", config.work_dir, summary)
            return run.result(summary, error)

        run.transition(RunState.COMPLETED)
        logger.info("Run in %s completed: %s", config.work_dir, summary)
        return run.result(summary)

    def _fetch(
        self,
        run: _Run,
        config: BuildConfig,
        cancel: threading.Event | None,
    ) -> Path:
        source: Release | str = config.base_image
        if catalog.is_release_reference(config.base_image):
            run.progress("Obtaining base image releases")
            releases, _ = self._list_releases(
                url=self.settings.releases_url,
                timeout=self.settings.request_timeout,
                cancel=cancel,
                include_prereleases=self.settings.include_prereleases,
                token=self.settings.github_token,
            )
            source = catalog.find_release(releases, config.base_image)
            run.progress(f"Using release {source}")

        run.progress(f"Fetching base image {source}")
        return self._fetch_base_image(
            source,
            config.work_dir,
            expected_checksum=config.base_image_sha256,
            verify_checksum=self.settings.verify_checksum,
            retries=self.settings.download_retries,
            timeout=self.settings.download_timeout,
            cancel=cancel,
            progress=_download_reporter(run),
        )

    def _build_all(self, run: _Run, config: BuildConfig) -> None:
        pending: dict[str, BuildArtifact] = {}
        for p in run.params:
            artifact = BuildArtifact(
                path=builder.image_path_for(config.work_dir, p), index=p.index
            )
            pending[p.label] = artifact
            run.artifacts.append(artifact)

        if not run.params:
            return
        if run.base_image is None:
            raise InternalError("No base image to build from")

        workers = min(len(run.params), self.settings.max_concurrent_builds)
        run.progress(f"Building {len(run.params)} image(s) with {workers} worker(s)")

        with ThreadPoolExecutor(
            max_workers=workers, thread_name_prefix="skyimager-build"
        ) as pool:
            futures = {
                pool.submit(
                    self._build_image, run.base_image, p, pending[p.label].path
                ): p
                for p in run.params
            }
            for future in as_completed(futures):
                artifact = pending[futures[future].label]
                try:
                    built = future.result()
                except BuildError as e:
                    logger.error("Build of %s failed: %s", artifact.path.name, e)
                    artifact.status = BuildStatus.FAILED
                    artifact.error = str(e)
                except Exception as e:
                    logger.exception("Build of %s crashed", artifact.path.name)
                    error = BuildError(
                        f"Unexpected failure building {artifact.path.name}: {e}",
                        code="unexpected_build_error",
                    )
                    artifact.status = BuildStatus.FAILED
                    artifact.error = str(error)
                else:
                    artifact.status = BuildStatus.SUCCESS
                    artifact.sha256 = built.sha256
                    artifact.size_bytes = built.size_bytes
                run.listener.on_artifact(artifact)

    def _write_manifest(self, run: _Run, config: BuildConfig) -> None:
        if not run.artifacts:
            return
        manifest = generate_manifest(run.artifacts, run.params, run.base_image)
        try:
            write_manifest(manifest, config.images_dir / MANIFEST_FILENAME)
        except OSError as e:
            raise DiskError(f"Failed to write manifest: {e}") from e

    def _fail(self, run: _Run, error: SkyimagerError) -> RunResult:
        failed_in = run.state
        logger.error("Run failed during %s: %s", failed_in.value, error)
        run.listener.on_error(error)
        run.transition(RunState.FAILED)
        return run.result(f"Run failed during {failed_in.value}: {error}", error)


def _internal(message: str, cause: BaseException) -> InternalError:
    error = InternalError(message)
    error.__cause__ = cause
    return error


def _download_reporter(run: _Run) -> Callable[[int, int | None], None]:
    last: dict[str, Any] = {"mark": -1}

    def report(received: int, total: int | None) -> None:
        if total:
            mark = received * 100 // total
            if mark != last["mark"]:
                last["mark"] = mark
                run.progress(f"Downloaded {received} of {total} bytes ({mark}%)")
        else:
            mark = received // PROGRESS_STEP_BYTES
            if mark != last["mark"]:
                last["mark"] = mark
                run.progress(f"Downloaded {received} bytes")

    return report


__all__ = [
    "BuildListener",
    "BuildOrchestrator",
    "ListenerGroup",
    "single_flight",
    "summarize",
]
