"""
Command-line interface for Workload-Py.

This module provides the ``workload`` command-line entry point over the
operation surface in ``workload_py.installer``.
"""

import logging
import sys
from pathlib import Path
from typing import Annotated, Any, List, Optional

import orjson
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from workload_py import __version__
from workload_py.config import WorkloadConfig
from workload_py.errors import WorkloadError
from workload_py.installer import OperationResult, WorkloadInstaller

# Set up the console and logger
console = Console()
logging.basicConfig(
    level=logging.INFO,
    format="%(message)s",
    datefmt="[%X]",
    handlers=[RichHandler(console=console, rich_tracebacks=True)],
)
logger = logging.getLogger("workload")

app = typer.Typer(
    help="Install SDK workloads side by side, per generation.",
    add_completion=False,
)

ConfigOption = Annotated[
    Optional[Path],
    typer.Option(
        "--config",
        "-c",
        help="Path to the config file (default: ~/.config/workload-py/config.yaml).",
    ),
]
GenerationOption = Annotated[
    Optional[str],
    typer.Option(
        "--generation",
        "-g",
        help="SDK generation. Uses WORKLOAD_GENERATION or the config if not set.",
    ),
]
OfflineCacheOption = Annotated[
    Optional[Path],
    typer.Option(
        "--offline-cache",
        help="Directory of pack archives to install from before the feed.",
    ),
]
JsonOption = Annotated[
    bool, typer.Option("--json", help="Print the result as JSON.")
]


def log_error(message: str) -> None:
    """Log an error message to both logger and console."""
    logger.error(message)
    console.print(f"[red]{message}[/red]")
    return None


def load_installer(config_path: Optional[Path]) -> WorkloadInstaller:
    config = WorkloadConfig.load(config_path)
    logger.debug(f"Installation root: {config.install_root}")
    return WorkloadInstaller.from_config(config)


def resolve_generation(
    generation: Optional[str], config_path: Optional[Path]
) -> str:
    """Pick the generation from the flag, then the environment and config."""
    if generation:
        return generation
    configured = WorkloadConfig.load(config_path).default_generation
    if not configured:
        log_error(
            "Generation not specified. "
            "Use --generation, set WORKLOAD_GENERATION, or set default_generation."
        )
        raise typer.Exit(1)
    return configured


def print_json(data: Any) -> None:
    # Plain stdout so the output stays parseable.
    typer.echo(orjson.dumps(data, option=orjson.OPT_INDENT_2).decode())


def report(result: OperationResult, json_output: bool) -> None:
    """Print *result* and exit non-zero when the operation failed."""
    if json_output:
        print_json(result.to_dict())
    else:
        for pkg in sorted(result.installed, key=str):
            console.print(f"[green]Installed[/green] {pkg}")
        for pkg in sorted(result.removed, key=str):
            console.print(f"[yellow]Removed[/yellow] {pkg}")
        for pkg in sorted(result.failed_removals, key=str):
            reason = result.failed_removals[pkg]
            console.print(f"[red]Could not remove[/red] {pkg}: {reason}")
        if result.collection_error is not None:
            log_error(
                f"Garbage collection after {result.operation} failed: "
                f"{result.collection_error}"
            )
        if result.success:
            console.print(f"{result.operation.capitalize()} completed.")
    if not result.success:
        if not json_output:
            log_error(f"{result.operation.capitalize()} failed: {result.detail}")
        raise typer.Exit(1)


@app.callback()
def callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Enable verbose output."
    ),
    json: bool = typer.Option(False, "--json", help="Output logs in JSON format."),
    version: bool = typer.Option(
        False, "--version", help="Show the application version and exit."
    ),
) -> None:
    """
    Workload-Py: optional SDK components, installed and collected per generation.
    """
    if version:
        console.print(f"Workload-Py version: {__version__}")
        raise typer.Exit()

    if verbose:
        logger.setLevel(logging.DEBUG)
        logger.debug("Verbose logging enabled")

    if json:
        for handler in logging.root.handlers:
            logging.root.removeHandler(handler)
        logging.basicConfig(
            level=logging.INFO if not verbose else logging.DEBUG,
            format='{"timestamp": "%(asctime)s", "level": "%(levelname)s", '
            '"message": "%(message)s"}',
            datefmt="%Y-%m-%dT%H:%M:%S",
            stream=sys.stdout,
        )
        logger.debug("JSON logging enabled")


@app.command()
def install(
    workloads: Annotated[List[str], typer.Argument(help="Workload IDs to install.")],
    generation: GenerationOption = None,
    skip_manifest_update: Annotated[
        bool,
        typer.Option(
            "--skip-manifest-update",
            help="Install against the manifests already on this machine.",
        ),
    ] = False,
    offline_cache: OfflineCacheOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Install workloads and the packs they require.
    """
    gen = resolve_generation(generation, config)
    logger.info(f"Installing {', '.join(workloads)} for generation {gen}...")
    installer = load_installer(config)
    result = installer.install_workloads(
        workloads,
        gen,
        skip_manifest_update=skip_manifest_update,
        offline_cache=offline_cache,
    )
    report(result, json_output)


@app.command()
def uninstall(
    workloads: Annotated[List[str], typer.Argument(help="Workload IDs to remove.")],
    generation: GenerationOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Uninstall workloads; packs no generation needs are collected.
    """
    gen = resolve_generation(generation, config)
    logger.info(f"Uninstalling {', '.join(workloads)} for generation {gen}...")
    installer = load_installer(config)
    report(installer.uninstall_workloads(workloads, gen), json_output)


@app.command()
def update(
    generation: GenerationOption = None,
    from_previous_generation: Annotated[
        bool,
        typer.Option(
            "--from-previous-generation",
            help="Also install the workloads of the nearest older generation.",
        ),
    ] = False,
    offline_cache: OfflineCacheOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Update manifests and bring installed workloads up to date.
    """
    gen = resolve_generation(generation, config)
    logger.info(f"Updating workloads for generation {gen}...")
    installer = load_installer(config)
    result = installer.update_workloads(
        gen,
        from_previous_generation=from_previous_generation,
        offline_cache=offline_cache,
    )
    report(result, json_output)


@app.command()
def repair(
    generation: GenerationOption = None,
    offline_cache: OfflineCacheOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Reinstall every pack the installed workloads require.
    """
    gen = resolve_generation(generation, config)
    logger.info(f"Repairing workloads for generation {gen}...")
    installer = load_installer(config)
    report(installer.repair_workloads(gen, offline_cache=offline_cache), json_output)


@app.command(name="gc")
def collect_garbage(
    dry_run: Annotated[
        bool,
        typer.Option("--dry-run", help="Show what would be removed and stop."),
    ] = False,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Remove packs that no installed generation requires.
    """
    logger.info("Collecting unused packs...")
    installer = load_installer(config)
    result = installer.collect_garbage(dry_run=dry_run)
    if dry_run and not json_output:
        for pkg in sorted(result.removed, key=str):
            console.print(f"Would remove {pkg}")
        for generation in result.workloads:
            console.print(f"Would drop generation {generation}")
        return
    report(result, json_output)


@app.command()
def retire(
    generation: Annotated[str, typer.Argument(help="Generation to retire.")],
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    Forget a generation no longer on this machine and collect its packs.
    """
    logger.info(f"Retiring generation {generation}...")
    installer = load_installer(config)
    report(installer.retire_generation(generation), json_output)


@app.command(name="list")
def list_workloads(
    generation: GenerationOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    List installed workloads and packs.
    """
    gen = resolve_generation(generation, config)
    installer = load_installer(config)
    try:
        workloads = installer.list_installed_workloads(gen)
        packs = installer.list_installed_packs(gen)
    except WorkloadError as e:
        log_error(f"Could not list workloads: {e}")
        raise typer.Exit(1) from e

    if json_output:
        data = {
            "generation": gen,
            "workloads": workloads,
            "packs": [
                {"id": p.id, "version": p.version, "kind": p.kind.value} for p in packs
            ],
        }
        print_json(data)
        return

    if not workloads:
        logger.info(f"No workloads installed for generation {gen}")
        return

    table = Table(title=f"Installed Workloads ({gen})")
    table.add_column("Workload")
    for workload_id in workloads:
        table.add_row(workload_id)
    console.print(table)

    table = Table(title="Installed Packs")
    table.add_column("Pack")
    table.add_column("Version")
    table.add_column("Kind")
    for pkg in packs:
        table.add_row(pkg.id, pkg.version, pkg.kind.value)
    console.print(table)


@app.command()
def search(
    generation: GenerationOption = None,
    json_output: JsonOption = False,
    config: ConfigOption = None,
) -> None:
    """
    List workloads the installed manifests offer on this platform.
    """
    gen = resolve_generation(generation, config)
    installer = load_installer(config)
    try:
        available = installer.list_available_workloads(gen)
        manifests = installer.manifests.load(gen)
    except WorkloadError as e:
        log_error(f"Could not read manifests: {e}")
        raise typer.Exit(1) from e

    if json_output:
        print_json(available)
        return

    table = Table(title=f"Available Workloads ({gen}, {installer.platform})")
    table.add_column("Workload")
    table.add_column("Manifest")
    table.add_column("Description")
    for workload_id in available:
        workload = manifests.workload(workload_id)
        table.add_row(
            workload_id,
            manifests.workload_owner(workload_id) or "",
            workload.description if workload else "",
        )
    console.print(table)


@app.command()
def version() -> None:
    """Show the application version and exit."""
    console.print(f"Workload-Py version: {__version__}")


if __name__ == "__main__":
    app()
