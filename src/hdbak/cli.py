"""Command-line interface for hdbak."""

from __future__ import annotations

import io
import logging
from pathlib import Path
from typing import Iterable

import tomli_w
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.prompt import Confirm, Prompt
from rich.table import Table

from .config import DEFAULT_CONFIG_FILENAME, Config, ConfigError, load_config
from .errors import HdbError
from .fileset import FileSet
from .manager import BackupOrchestrator, BackupReport
from .models import CopyResult, Outcome
from .repository import Repository
from .volume import NEW_VOLUME, FilesystemKind, SubprocessRunner

app = typer.Typer(help="Back up directory trees onto removable media, never hashing or copying a file twice")
console = Console()
err_console = Console(stderr=True)


def _load_orchestrator(config: Config, *, quiet: bool) -> BackupOrchestrator:
    return BackupOrchestrator(config, runner=SubprocessRunner(quiet=quiet), prompter=ConsolePrompter())


def _configure_logging(verbose: bool, debug: bool) -> None:
    level = logging.DEBUG if debug else logging.INFO if verbose else logging.WARNING
    logger = logging.getLogger("hdbak")
    logger.handlers.clear()
    logger.addHandler(RichHandler(console=err_console, show_path=debug, markup=False))
    logger.setLevel(level)
    logger.propagate = False


def _handle_error(exc: BaseException) -> None:
    if isinstance(exc, KeyboardInterrupt):
        console.print("[yellow]Interrupted. The medium was not ejected; check the log for release errors.[/yellow]")
        raise typer.Exit(code=130)
    if isinstance(exc, PermissionError):
        console.print("[red]Permission denied.[/red] Re-run the command with elevated privileges (e.g. `sudo`).")
        raise typer.Exit(code=1)
    if isinstance(exc, ConfigError):
        message = str(exc)
        console.print(f"[red]{message}[/red]")
        if "does not exist" in message:
            console.print("[yellow]Use 'hdbak init --config <path>' to create a configuration file.[/yellow]")
        raise typer.Exit(code=1)
    if isinstance(exc, HdbError):
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=1)
    raise exc


class ConsolePrompter:
    """Interactive prompts for volume selection and the passphrase."""

    def ask_volume_id(self) -> str:
        return Prompt.ask(
            f"Insert the volume and enter its number or {NEW_VOLUME} to use a new volume",
            console=console,
            default=NEW_VOLUME,
        )

    def confirm_overwrite(self, volume_id: str) -> bool:
        return Confirm.ask(
            f"Are you sure you have inserted volume {volume_id} and want to overwrite it?",
            console=console,
            default=False,
        )

    def ask_passphrase(self, prompt: str) -> str:
        return Prompt.ask(prompt, console=console, password=True)


def _format_copy_results(results: Iterable[CopyResult]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Entry")
    table.add_column("Outcome")

    styles = {
        Outcome.OK: "green",
        Outcome.UNSUPPORTED: "yellow",
        Outcome.OUT_OF_SPACE: "red",
        Outcome.SOURCE_VANISHED: "red",
    }
    for result in results:
        if result.outcome == Outcome.OK:
            continue
        style = styles[result.outcome]
        table.add_row(result.metadata.archive_path, f"[{style}]{result.outcome.value}[/{style}]")

    if table.row_count:
        console.print(table)


def _format_report(report: BackupReport) -> None:
    _format_copy_results(report.results)
    console.print(
        f"[green]Volume {report.volume_id}: {report.copied} entries copied, "
        f"{len(report.fileset)} recorded, {report.dropped} dropped.[/green]"
    )
    if report.ejected:
        console.print("[green]Volume ejected.[/green]")


def _format_filesets(filesets: Iterable[tuple[str, FileSet]]) -> None:
    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Volume")
    table.add_column("Label")
    table.add_column("Host")
    table.add_column("Dir", overflow="fold")
    table.add_column("Entries", justify="right")

    for volume_id, fileset in filesets:
        table.add_row(volume_id, fileset.label, fileset.host, fileset.source_dir, str(len(fileset)))

    console.print(table)


def _render_init_config(*, repository_root: str, device: str, mount_point: str, filesystem: str) -> str:
    data = {
        "repository": {"root": repository_root},
        "volume": {
            "device": device,
            "mount_point": mount_point,
            "filesystem": filesystem,
            "encrypt": False,
            "eject": True,
            "label": "",
        },
        "backup": {
            "lookup": False,
            "prune": True,
            "skip_backed_up": False,
            "preserve_atime": True,
            "preserve_ids": True,
        },
    }

    buffer = io.StringIO()
    buffer.write("# hdbak configuration\n\n")
    buffer.write(tomli_w.dumps(data))
    return buffer.getvalue()


@app.command()
def init(
    config: Path = typer.Option(
        Path(DEFAULT_CONFIG_FILENAME),
        "--config",
        "-c",
        help="Path to write the configuration file",
        dir_okay=False,
        writable=True,
    ),
    repository_root: str = typer.Option("~/.hdb", "--repository", help="Directory holding the file sets"),
    device: str = typer.Option("/dev/sdb", "--device", help="Block device of the backup medium"),
    mount_point: str = typer.Option("/mnt", "--mount-point", help="Where the medium gets mounted"),
    filesystem: FilesystemKind = typer.Option(FilesystemKind.EXT4, "--fstype", help="Filesystem to create"),
    force: bool = typer.Option(False, "--force", help="Overwrite existing config if present"),
) -> None:
    """Create a starter hdbak configuration file."""

    if config.exists() and not force:
        console.print(f"[red]Configuration '{config}' already exists. Use --force to overwrite.[/red]")
        raise typer.Exit(code=1)

    config.parent.mkdir(parents=True, exist_ok=True)
    config.write_text(
        _render_init_config(
            repository_root=repository_root,
            device=device,
            mount_point=mount_point,
            filesystem=filesystem.value,
        )
    )
    console.print(f"[green]Created '{config}'.[/green]")


@app.command()
def backup(
    source: Path = typer.Argument(..., help="Directory to back up"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to hdbak.toml"),
    volume: str | None = typer.Option(None, "--volume", help="Volume ID to write (0 for a new one); asked if omitted"),
    label: str | None = typer.Option(None, "--label", "-l", help="Label for human consumption"),
    skip_eject: bool = typer.Option(False, "--skip-eject", "-s", help="Skip ejecting the medium on successful completion"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Output more information"),
    debug: bool = typer.Option(False, "--debug", "-d", help="Turn on debugging information"),
) -> None:
    """Format the medium, copy SOURCE onto it and record what was copied."""

    _configure_logging(verbose, debug)
    try:
        config_obj = load_config(config)
        orchestrator = _load_orchestrator(config_obj, quiet=not debug)
        report = orchestrator.run(source, volume_id=volume, label=label, eject=False if skip_eject else None)
        _format_report(report)
    except (Exception, KeyboardInterrupt) as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def volumes(
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to hdbak.toml"),
) -> None:
    """List the file sets recorded in the repository."""

    try:
        config_obj = load_config(config)
        repository = Repository(config_obj.repository.root, context=config_obj.run_context())
        _format_filesets(repository.iter_filesets())
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


@app.command()
def show(
    volume: str = typer.Argument(..., help="Volume ID to dump"),
    config: Path | None = typer.Option(None, "--config", "-c", help="Path to hdbak.toml"),
) -> None:
    """Print the recorded file set of one volume."""

    try:
        config_obj = load_config(config)
        repository = Repository(config_obj.repository.root, context=config_obj.run_context())
        if volume not in repository.filesets:
            raise HdbError(f"No file set recorded for volume '{volume}'")
        buffer = io.StringIO()
        repository.filesets[volume].write(buffer)
        console.print(buffer.getvalue(), end="", markup=False, highlight=False, soft_wrap=True)
    except Exception as exc:  # noqa: BLE001
        _handle_error(exc)


def run() -> None:
    """Entry point used for console_script bindings."""

    app()
