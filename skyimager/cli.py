"""Thin CLI wrapper for skyimager.

This module provides the command-line interface using Typer.
All business logic is delegated to core modules.
"""

import json
import logging
import secrets
from pathlib import Path
from typing import Annotated, Any, NoReturn

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from skyimager import __version__
from skyimager.builds.orchestrator import BuildListener
from skyimager.config import get_settings, print_settings_json
from skyimager.types import BuildArtifact, RunResult, RunState

app = typer.Typer(
    name="skyimager",
    help="Skyimager - build ready-to-flash Skybian images for a Skyminer",
    no_args_is_help=True,
)
console = Console()
err_console = Console(stderr=True)


def version_callback(value: bool) -> None:
    """Print version and exit."""
    if value:
        console.print(f"skyimager version {__version__}")
        raise typer.Exit()


def setup_logging(level: str) -> None:
    """Route library logging through rich on stderr."""
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=err_console, show_path=False)],
        force=True,
    )


@app.callback()
def main(
    version: Annotated[
        bool | None,
        typer.Option(
            "--version",
            "-V",
            help="Show version and exit",
            callback=version_callback,
            is_eager=True,
        ),
    ] = None,
    log_level: Annotated[
        str | None,
        typer.Option("--log-level", help="Override the configured log level"),
    ] = None,
) -> None:
    """Skyimager - build ready-to-flash Skybian images for a Skyminer."""
    setup_logging((log_level or get_settings().log_level).upper())


@app.command()
def config(
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show effective configuration."""
    settings = get_settings()
    if json_output:
        console.print(print_settings_json(settings))
    else:
        console.print("[bold]Effective Configuration:[/bold]")
        console.print()
        console.print("[bold]Paths:[/bold]")
        console.print(f"  Work directory:      {settings.work_dir}")
        console.print(f"  Database URL:        {settings.db_url}")
        console.print()
        console.print("[bold]Releases:[/bold]")
        console.print(f"  Releases URL:        {settings.releases_url}")
        console.print(f"  Pre-releases:        {settings.include_prereleases}")
        console.print(
            f"  GitHub token:        {'(set)' if settings.github_token else '(none)'}"
        )
        console.print()
        console.print("[bold]Defaults:[/bold]")
        console.print(f"  Gateway IP:          {settings.default_gateway_ip}")
        console.print(f"  Visors:              {settings.default_visors}")
        console.print()
        console.print("[bold]Operational:[/bold]")
        console.print(f"  Log level:           {settings.log_level}")
        console.print(f"  Max builds:          {settings.max_concurrent_builds}")
        console.print(f"  Verify checksums:    {settings.verify_checksum}")
        console.print(f"  Download retries:    {settings.download_retries}")
        console.print()
        console.print("[bold]Timeouts (seconds):[/bold]")
        console.print(f"  Release listing:     {settings.request_timeout}")
        console.print(f"  Download timeout:    {settings.download_timeout}")


@app.command()
def releases(
    prereleases: Annotated[
        bool,
        typer.Option("--pre", help="Include pre-releases"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List base image releases available for download."""
    from skyimager.errors import CatalogError
    from skyimager.releases.catalog import list_releases

    settings = get_settings()
    try:
        found, latest = list_releases(
            url=settings.releases_url,
            timeout=settings.request_timeout,
            include_prereleases=prereleases or settings.include_prereleases,
            token=settings.github_token,
        )
    except CatalogError as e:
        _fail(f"Cannot list releases: {e}", e.code, json_output)

    if json_output:
        _print_json(
            {"latest": latest.tag, "releases": [r.to_dict() for r in found]}
        )
        return

    table = Table(title=f"Skybian releases ({len(found)})")
    table.add_column("Tag", style="green")
    table.add_column("Published")
    table.add_column("Image")
    for r in found:
        image = r.image_asset()
        tag = f"{r} [bold](latest)[/bold]" if r.tag == latest.tag else str(r)
        table.add_row(
            tag,
            r.published_at.strftime("%Y-%m-%d"),
            image.name if image else "-",
        )
    console.print(table)


ConfigFileOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Load build configuration from YAML/JSON"),
]
GatewayOption = Annotated[
    str | None,
    typer.Option("--gateway", "-g", help="Gateway IP shared by all boards"),
]
VisorsOption = Annotated[
    int | None,
    typer.Option("--visors", "-n", help="Number of visor images"),
]
HypervisorOption = Annotated[
    bool | None,
    typer.Option(
        "--hypervisor/--no-hypervisor", help="Build an additional hypervisor image"
    ),
]
PasscodeOption = Annotated[
    str | None,
    typer.Option("--passcode", help="Skysocks passcode shared by all boards"),
]
SeedOption = Annotated[
    str | None,
    typer.Option("--seed", help="Key derivation seed (random if omitted)"),
]


def _print_json(data: Any) -> None:
    console.print(
        json.dumps(data, indent=2), markup=False, highlight=False, soft_wrap=True
    )


def _fail(message: str, code: str, json_output: bool) -> NoReturn:
    if json_output:
        _print_json({"error": {"code": code, "message": message}})
    else:
        console.print(f"[red]{message}[/red]")
    raise typer.Exit(code=1)


def _resolve_build_config(
    config_file: Path | None,
    overrides: dict[str, Any],
) -> Any:
    """Merge a config file, CLI flags and settings defaults into a BuildConfig.

    Flags win over the file, the file wins over settings defaults. A random
    seed is chosen when none is given, so every invocation without --seed
    produces fresh keys.
    """
    from skyimager.buildconfig import parse_build_config, read_config_data

    settings = get_settings()
    data: dict[str, Any] = {
        "work_dir": settings.work_dir,
        "gateway_ip": settings.default_gateway_ip,
        "visors": settings.default_visors,
    }
    if config_file is not None:
        data.update(read_config_data(config_file))
    data.update({k: v for k, v in overrides.items() if v is not None})
    if not data.get("seed"):
        data["seed"] = secrets.token_hex(16)
    return parse_build_config(data)


@app.command()
def params(
    config_file: ConfigFileOption = None,
    gateway: GatewayOption = None,
    visors: VisorsOption = None,
    hypervisor: HypervisorOption = None,
    passcode: PasscodeOption = None,
    seed: SeedOption = None,
    show_secrets: Annotated[
        bool,
        typer.Option("--secrets", help="Include secret keys and passcode"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Preview the boot parameters a build would use."""
    from skyimager.bootparams.generator import generate
    from skyimager.errors import InvalidConfigError

    try:
        cfg = _resolve_build_config(
            config_file,
            {
                "gateway_ip": gateway,
                "visors": visors,
                "hypervisor": hypervisor,
                "passcode": passcode,
                "seed": seed,
            },
        )
        boot_params = generate(cfg)
    except InvalidConfigError as e:
        _fail(str(e), e.code, json_output)

    if json_output:
        output = {
            "seed": cfg.seed,
            "params": [p.to_dict(include_secrets=show_secrets) for p in boot_params],
        }
        _print_json(output)
        return

    if not boot_params:
        console.print("[yellow]No images requested[/yellow]")
        return

    table = Table(title=f"Boot parameters (seed {cfg.seed})")
    table.add_column("Image", style="green")
    table.add_column("Mode")
    table.add_column("Hostname")
    table.add_column("IP")
    table.add_column("Public key")
    if show_secrets:
        table.add_column("Secret key")
    for p in boot_params:
        row = [p.label, p.mode.value, p.hostname, str(p.local_ip), p.local_pk]
        if show_secrets:
            row.append(p.local_sk)
        table.add_row(*row)
    console.print(table)


class ConsoleListener(BuildListener):
    """Prints run events to the console."""

    def __init__(self, quiet: bool = False) -> None:
        self.quiet = quiet

    def on_stage(self, stage: RunState) -> None:
        if not self.quiet:
            console.print(f"[blue]{stage.value.replace('_', ' ').capitalize()}[/blue]")

    def on_progress(self, stage: RunState, detail: str) -> None:
        if not self.quiet:
            console.print(f"  {detail}")

    def on_error(self, error: Exception) -> None:
        if not self.quiet:
            console.print(f"[red]✗ {error}[/red]")

    def on_artifact(self, artifact: BuildArtifact) -> None:
        if self.quiet:
            return
        if artifact.succeeded:
            console.print(f"  [green]✓ {artifact.path.name}[/green]")
        else:
            console.print(f"  [red]✗ {artifact.path.name}: {artifact.error}[/red]")


def _print_flash_instructions(result: RunResult) -> None:
    console.print()
    console.print("[bold]Next steps:[/bold]")
    console.print(
        "  Flash each image onto its own microSD card, for example with "
        "balenaEtcher or dd:"
    )
    for artifact in result.artifacts:
        if artifact.succeeded:
            console.print(
                f"    dd if={artifact.path} of=/dev/sdX bs=4M conv=fsync status=progress"
            )
    console.print(
        "  Insert the hypervisor card into the board plugged into the first "
        "switch port, then the visor cards in order."
    )


@app.command()
def build(
    work_dir: Annotated[
        Path | None,
        typer.Option("--work-dir", "-w", help="Work directory for images"),
    ] = None,
    base_image: Annotated[
        str | None,
        typer.Option(
            "--base-image",
            "-b",
            help='Release tag, "latest", URL or local path of the base image',
        ),
    ] = None,
    sha256: Annotated[
        str | None,
        typer.Option("--sha256", help="Expected SHA-256 of a URL or local file"),
    ] = None,
    config_file: ConfigFileOption = None,
    gateway: GatewayOption = None,
    visors: VisorsOption = None,
    hypervisor: HypervisorOption = None,
    passcode: PasscodeOption = None,
    seed: SeedOption = None,
    clear: Annotated[
        bool,
        typer.Option("--clear", help="Clear the work directory before building"),
    ] = False,
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompts"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Fetch the base image and build one final image per board."""
    from skyimager.baseimage.fetch import clear_work_dir, work_dir_has_content
    from skyimager.builds.history import record_run
    from skyimager.builds.orchestrator import BuildOrchestrator
    from skyimager.db import history_session, open_history
    from skyimager.errors import DiskError, InvalidConfigError

    try:
        cfg = _resolve_build_config(
            config_file,
            {
                "work_dir": work_dir,
                "base_image": base_image,
                "base_image_sha256": sha256,
                "gateway_ip": gateway,
                "visors": visors,
                "hypervisor": hypervisor,
                "passcode": passcode,
                "seed": seed,
            },
        )
    except InvalidConfigError as e:
        _fail(str(e), e.code, json_output)

    if clear and work_dir_has_content(cfg.work_dir):
        if not yes:
            console.print(
                f"[bold red]WARNING:[/bold red] This will DELETE {cfg.work_dir}"
            )
            if not typer.confirm("Are you sure you want to continue?", default=False):
                console.print("[yellow]Aborted[/yellow]")
                raise typer.Exit(code=0)
        try:
            clear_work_dir(cfg.work_dir)
        except DiskError as e:
            _fail(str(e), e.code, json_output)

    settings = get_settings()
    result = BuildOrchestrator(settings=settings).run(
        cfg, listener=ConsoleListener(quiet=json_output)
    )

    with history_session(open_history(settings.db_url)) as session:
        run_id = record_run(session, cfg, result).id

    if json_output:
        output = result.to_dict()
        output["run_id"] = run_id
        output["seed"] = cfg.seed
        _print_json(output)
    elif result.state == RunState.COMPLETED:
        console.print(f"[green]✓ {result.summary}[/green] (run #{run_id})")
        console.print(f"  Images: {cfg.images_dir}")
        if result.artifacts:
            _print_flash_instructions(result)
    else:
        console.print(f"[red]✗ {result.summary}[/red] (run #{run_id})")

    if result.state != RunState.COMPLETED:
        raise typer.Exit(code=1)


@app.command("clear")
def clear_cmd(
    directory: Annotated[Path, typer.Argument(help="Work directory to clear")],
    yes: Annotated[
        bool,
        typer.Option("--yes", "-y", help="Skip confirmation prompt"),
    ] = False,
) -> None:
    """Delete a work directory and everything in it."""
    from skyimager.baseimage.fetch import clear_work_dir, work_dir_has_content
    from skyimager.errors import DiskError

    if not work_dir_has_content(directory):
        console.print(f"[yellow]Nothing to clear in {directory}[/yellow]")
        return

    if not yes:
        console.print(f"[bold red]WARNING:[/bold red] This will DELETE {directory}")
        if not typer.confirm("Are you sure you want to continue?", default=False):
            console.print("[yellow]Aborted[/yellow]")
            raise typer.Exit(code=0)

    try:
        clear_work_dir(directory)
    except DiskError as e:
        console.print(f"[red]{e}[/red]")
        raise typer.Exit(code=1) from None
    console.print(f"[green]✓ Cleared {directory}[/green]")


@app.command()
def inspect(
    image: Annotated[Path, typer.Argument(help="Final image to inspect")],
    show_secrets: Annotated[
        bool,
        typer.Option("--secrets", help="Include secret key and passcode"),
    ] = False,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show the boot parameters stored in an image."""
    from skyimager.bootparams.codec import read_params
    from skyimager.errors import CodecError

    try:
        p = read_params(image)
    except CodecError as e:
        _fail(f"{image}: {e}", e.code, json_output)
    except OSError as e:
        _fail(f"Cannot read {image}: {e}", "disk_error", json_output)

    data = p.to_dict(include_secrets=show_secrets)
    if json_output:
        _print_json(data)
        return

    console.print(f"[bold]{image.name}[/bold]")
    for key, value in data.items():
        if isinstance(value, list):
            value = ", ".join(value) or "-"
        console.print(f"  {key.replace('_', ' ').capitalize():<16} {value}")


runs_app = typer.Typer(help="Inspect recorded build runs")
app.add_typer(runs_app, name="runs")


@runs_app.command("list")
def runs_list(
    state: Annotated[
        str | None,
        typer.Option("--state", "-s", help="Filter by state (completed/failed)"),
    ] = None,
    limit: Annotated[
        int,
        typer.Option("--limit", "-l", help="Maximum number of records to return"),
    ] = 100,
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """List recorded build runs."""
    from skyimager.builds.history import list_runs
    from skyimager.db import open_history

    state_filter: RunState | None = None
    if state:
        try:
            state_filter = RunState(state)
        except ValueError:
            console.print(f"[red]Invalid state: {state}[/red]")
            console.print("Valid values: completed, failed")
            raise typer.Exit(code=1) from None

    factory = open_history()
    with factory() as session:
        runs = list_runs(session, state=state_filter, limit=limit)

        if not runs:
            if json_output:
                _print_json([])
            else:
                console.print("[yellow]No runs found[/yellow]")
            return

        if json_output:
            _print_json([r.to_dict() for r in runs])
            return

        console.print(f"[bold]Found {len(runs)} run(s):[/bold]")
        console.print()
        for r in runs:
            color = "green" if r.is_completed() else "red"
            console.print(f"  [{color}]Run #{r.id}[/{color}]")
            console.print(f"    Work dir: {r.work_dir}")
            console.print(f"    State: {r.state}")
            console.print(f"    Summary: {r.summary}")
            console.print(
                f"    Finished: {r.finished_at.isoformat() if r.finished_at else 'N/A'}"
            )
            console.print()


@runs_app.command("show")
def runs_show(
    run_id: Annotated[int, typer.Argument(help="Run ID to show")],
    json_output: Annotated[
        bool,
        typer.Option("--json", help="Output as JSON"),
    ] = False,
) -> None:
    """Show a recorded build run and its images."""
    from skyimager.builds.history import get_run
    from skyimager.db import open_history
    from skyimager.errors import RunNotFoundError

    factory = open_history()
    with factory() as session:
        try:
            run = get_run(session, run_id)
        except RunNotFoundError as e:
            _fail(str(e), e.code, json_output)

        if json_output:
            _print_json(run.to_dict())
            return

        console.print(f"[bold]Run #{run.id}[/bold] ({run.state})")
        console.print(f"  Summary: {run.summary}")
        console.print(f"  Work dir: {run.work_dir}")
        console.print(f"  Base image: {run.base_image_path or run.base_image}")
        if run.error_message:
            console.print(f"  Error: [red]{run.error_code}: {run.error_message}[/red]")
        console.print()
        for image in run.images:
            color = "green" if image.status == "success" else "red"
            console.print(
                f"  [{color}]{image.label:<12}[/{color}] "
                f"{image.hostname or '-':<14} {image.local_ip or '-':<15} "
                f"{image.status}"
            )
            if image.error:
                console.print(f"    Error: {image.error}")


if __name__ == "__main__":
    app()
