"""Main CLI application for jbmarket."""

import logging
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from jbmarket import __version__
from jbmarket.config.parser import ConfigError, load_generator_config
from jbmarket.core.registry import RegistryConflict, split_key
from jbmarket.core.store import ManifestStore, StoreError
from jbmarket.marketplace.base import MarketplaceError
from jbmarket.marketplace.throttle import RetryBudgetExhausted

if TYPE_CHECKING:
    from jbmarket.core.builder import BuildSummary
    from jbmarket.core.lookup import PluginLookup

# Create the main Typer app
app = typer.Typer(
    name="jbmarket",
    help="JetBrains Marketplace plugin index generator",
    add_completion=False,
    no_args_is_help=True,
)

console = Console()
error_console = Console(stderr=True)

# Set up logger for the jbmarket package
logger = logging.getLogger("jbmarket")

StoreOption = Annotated[
    Path,
    typer.Option(
        "--store",
        "-s",
        help="Generated store directory",
    ),
]

ConfigOption = Annotated[
    Path | None,
    typer.Option(
        "--config",
        "-c",
        help="Configuration file (defaults to ./jbmarket.yaml if present)",
    ),
]


def setup_logging(verbosity: int) -> None:
    """Configure logging based on verbosity level.

    Args:
        verbosity: 0=WARNING, 1=INFO, 2=DEBUG, 3+=DEBUG with source paths
    """
    if verbosity == 0:
        level = logging.WARNING
    elif verbosity == 1:
        level = logging.INFO
    else:
        level = logging.DEBUG

    logger.setLevel(level)

    # Only add handler if not already configured
    if not logger.handlers:
        handler = RichHandler(
            console=error_console,
            show_time=verbosity >= 2,
            show_path=verbosity >= 3,
            rich_tracebacks=True,
        )
        handler.setLevel(level)
        logger.addHandler(handler)
    else:
        for h in logger.handlers:
            h.setLevel(level)


def print_error(message: str) -> None:
    """Print an error message to stderr."""
    error_console.print(f"[red]Error:[/red] {message}")


def print_success(message: str) -> None:
    """Print a success message."""
    console.print(f"[green]✓[/green] {message}")


def print_warning(message: str) -> None:
    """Print a warning message."""
    console.print(f"[yellow]⚠[/yellow] {message}")


def print_summary(summary: "BuildSummary") -> None:
    """Print omissions, conflicts and failures of a generator run."""
    if summary.omissions:
        table = Table(title="Omitted Plugins")
        table.add_column("Plugin", style="cyan")
        table.add_column("IDE", style="green")
        table.add_column("Reason", style="dim")
        for omission in summary.omissions:
            table.add_row(omission.plugin_id, omission.ide or "all", omission.reason)
        if logger.isEnabledFor(logging.INFO):
            console.print(table)
        else:
            console.print(f"{len(summary.omissions)} plugin/IDE combination(s) omitted")

    for ambiguity in summary.ambiguities:
        print_warning(str(ambiguity))
    for conflict in summary.conflicts:
        print_error(str(conflict))
    for failure in summary.failures:
        print_error(failure)


def get_lookup(store_path: Path, config_path: Path | None = None) -> "PluginLookup":
    """Open a store for reading, exiting if it does not exist."""
    from jbmarket.core.lookup import PluginLookup

    store = ManifestStore(store_path)
    if not store.exists():
        print_error(f"No generated store at {store_path}")
        print_error("Run 'jbmarket generate' first")
        raise typer.Exit(1)
    try:
        aliases = load_generator_config(config_path).aliases
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1) from e
    return PluginLookup(store, aliases)


@app.callback()
def callback(
    verbose: Annotated[
        int,
        typer.Option(
            "--verbose",
            "-v",
            count=True,
            help="Increase verbosity (-v info, -vv debug, -vvv trace)",
        ),
    ] = 0,
) -> None:
    """jbmarket - pre-resolved JetBrains IDE plugins for package managers."""
    setup_logging(verbose)


@app.command()
def version() -> None:
    """Show the jbmarket version."""
    console.print(f"jbmarket {__version__}")


@app.command()
def generate(
    output_path: Annotated[
        Path | None,
        typer.Option(
            "--output-path",
            "-o",
            help="Store directory (defaults to output_path in jbmarket.yaml)",
        ),
    ] = None,
    config: ConfigOption = None,
    workers: Annotated[
        int | None,
        typer.Option(
            "--workers",
            "-w",
            min=1,
            help="Number of plugins processed concurrently",
        ),
    ] = None,
    plugins: Annotated[
        list[str] | None,
        typer.Option(
            "--plugin",
            "-p",
            help="Only resolve these plugin ids (repeatable)",
        ),
    ] = None,
    dry_run: Annotated[
        bool,
        typer.Option(
            "--dry-run",
            help="Resolve everything but do not write the store",
        ),
    ] = False,
) -> None:
    """Regenerate the plugin store from the JetBrains Marketplace.

    IDE versions inside the freshness window are resolved again; manifests
    of older IDE versions are carried forward unchanged. The store is only
    replaced if the whole run succeeds.
    """
    from jbmarket.core.generator import Generator
    from jbmarket.marketplace.factory import create_marketplace_client

    try:
        generator_config = load_generator_config(config)
    except ConfigError as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    if workers is not None:
        generator_config.workers = workers
    if plugins:
        generator_config.plugins = list(plugins)

    client = create_marketplace_client(generator_config)
    generator = Generator(generator_config, client, output_path=output_path)

    console.print(f"Generating plugin store in {generator.output_path}...")
    try:
        report = generator.run(dry_run=dry_run)
    except (RetryBudgetExhausted, RegistryConflict) as e:
        if e.summary is None:
            print_error(str(e))
        else:
            print_summary(e.summary)
            if isinstance(e, RetryBudgetExhausted):
                print_error(str(e))
        print_error("Store left unchanged")
        raise typer.Exit(1) from e
    except (MarketplaceError, StoreError) as e:
        print_error(str(e))
        print_error("Store left unchanged")
        raise typer.Exit(1) from e

    summary = report.summary
    print_summary(summary)

    if report.published:
        print_success(
            f"Wrote {len(report.fresh_builds)} manifest(s), carried forward "
            f"{report.carried_forward}, {summary.new_registry_entries} new registry entries"
        )
    else:
        print_success(
            f"Dry run: {len(report.fresh_builds)} IDE version(s), "
            f"{summary.assigned} plugin assignment(s)"
        )


@app.command()
def lookup(
    ide: Annotated[str, typer.Argument(help="IDE name (e.g. 'idea', 'pycharm-community')")],
    ide_version: Annotated[str, typer.Argument(help="IDE version (e.g. '2025.1.2')")],
    plugin_ids: Annotated[list[str], typer.Argument(help="Plugin ids")],
    store: StoreOption = Path("data/cache"),
    config: ConfigOption = None,
) -> None:
    """Print the download URL and hash of plugins for an IDE version."""
    from jbmarket.core.lookup import PluginNotFound

    plugin_lookup = get_lookup(store, config)
    try:
        downloads = plugin_lookup.plugins_for(ide, ide_version, plugin_ids)
    except PluginNotFound as e:
        print_error(str(e))
        raise typer.Exit(1) from e

    for download in downloads:
        console.print(f"[cyan]{download.plugin_id}[/cyan] {download.version}")
        console.print(f"  url:     {download.url}", soft_wrap=True)
        console.print(f"  hash:    {download.hash}", soft_wrap=True)
        console.print(f"  fetcher: {download.fetcher}")
        console.print(f"  name:    {download.store_name}", soft_wrap=True)


@app.command()
def ides(
    store: StoreOption = Path("data/cache"),
    config: ConfigOption = None,
) -> None:
    """List IDE names and the versions with a manifest."""
    plugin_lookup = get_lookup(store, config)
    versions = plugin_lookup.ides()
    if not versions:
        console.print("No IDE manifests in store")
        return

    table = Table(title="IDE Versions")
    table.add_column("IDE", style="cyan")
    table.add_column("Versions", style="green")
    for name, ide_versions in versions.items():
        table.add_row(name, ", ".join(ide_versions))
    console.print(table)


@app.command()
def plugins(
    ide: Annotated[str, typer.Argument(help="IDE name")],
    ide_version: Annotated[str, typer.Argument(help="IDE version")],
    store: StoreOption = Path("data/cache"),
    config: ConfigOption = None,
) -> None:
    """List the plugins available for an IDE version."""
    plugin_lookup = get_lookup(store, config)
    manifest = plugin_lookup.manifest(ide, ide_version)
    if manifest is None:
        print_error(f"No manifest for {ide} {ide_version}")
        raise typer.Exit(1)

    if not manifest.plugins:
        console.print(f"No plugins for {ide} {ide_version}")
        return

    table = Table(title=f"Plugins for {manifest.ide_name} {manifest.ide_version}")
    table.add_column("Plugin", style="cyan")
    table.add_column("Version", style="green")
    for plugin_id in sorted(manifest.plugins):
        _, plugin_version = split_key(manifest.plugins[plugin_id])
        table.add_row(plugin_id, plugin_version)
    console.print(table)


if __name__ == "__main__":
    app()
