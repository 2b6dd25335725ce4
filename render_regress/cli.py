"""CLI entry point for the regression harness."""

from __future__ import annotations

import logging
import shlex
import sys
from pathlib import Path

import click
from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table

from render_regress.models.config import ConfigurationError, HarnessConfig
from render_regress.orchestrator import Orchestrator

console = Console()

DEFAULT_CONFIG = "render-regress.json"


def setup_logging(verbose: bool = False) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=console, rich_tracebacks=True)],
    )


def load_config(path: str) -> HarnessConfig:
    """Load the config file, falling back to defaults when the default file is absent."""
    config_path = Path(path)
    if not config_path.exists():
        if path != DEFAULT_CONFIG:
            raise ConfigurationError(f"Config file not found: {path}")
        return HarnessConfig()
    try:
        return HarnessConfig.load(config_path)
    except ValueError as e:
        # malformed JSON
        raise ConfigurationError(f"Cannot read config file {path}: {e}") from None


def _split(command: str | None) -> list[str] | None:
    return shlex.split(command) if command else None


def _fail(error: ConfigurationError) -> None:
    console.print(f"[red]{error}[/red]")
    sys.exit(error.exit_code)


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def cli(verbose: bool) -> None:
    """Image regression tests for a renderer."""
    setup_logging(verbose)


@cli.command()
@click.argument("paths", nargs=-1, type=click.Path())
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
@click.option("--renderer", help="Renderer command line")
@click.option("--reference-renderer", help="Ground-truth renderer command line")
@click.option("--image-diff", help="Image diff tool command line")
@click.option("--image-convert", help="Image convert tool command line")
@click.option("--backend", type=click.Choice(["external", "pillow"]), help="Image comparison backend")
@click.option("--update", "-u", "update_mode", help="Reference update mode: no, new or all")
@click.option("--log-dir", "-l", help="Directory for logs and images of failing tests (must be empty)")
@click.option("--out-dir", "-o", help="Keep rendered outputs in this directory")
@click.option("--clamp/--no-clamp", default=None, help="Clamp render output before comparing")
@click.option("--threshold", "-t", type=float, help="Default comparison threshold")
@click.option("--quiet", "-q", is_flag=True, help="Tell test scripts to be quiet")
@click.option("--report", help="Write a JSON report to this path")
def run(paths, config, renderer, reference_renderer, image_diff, image_convert, backend,
        update_mode, log_dir, out_dir, clamp, threshold, quiet, report) -> None:
    """Run the tests found under PATHS (default: current directory)."""
    try:
        cfg = load_config(config).merged(
            renderer_command=_split(renderer),
            reference_renderer_command=_split(reference_renderer),
            image_diff_command=_split(image_diff),
            image_convert_command=_split(image_convert),
            image_backend=backend,
            update_mode=update_mode,
            log_dir=log_dir,
            out_dir=out_dir,
            clamp_output=clamp,
            compare_threshold=threshold,
            quiet=quiet or None,
            report_path=report,
        )
        result = Orchestrator(cfg, console=console).run(paths or ["."])
    except ConfigurationError as e:
        _fail(e)
        return

    table = Table(title="Results Summary")
    table.add_column("Metric", style="bold")
    table.add_column("Value")
    table.add_row("Run ID", result.run_id)
    table.add_row("Duration", f"{result.duration_seconds}s")
    table.add_row("Total Tests", str(result.total_tests))
    table.add_row("Passed", f"[green]{result.passed}[/green]")
    table.add_row("Failed", f"[red]{result.failed}[/red]")
    table.add_row("Ignored", f"[yellow]{result.ignored}[/yellow]")
    table.add_row("References Updated", str(result.references_updated))
    console.print(table)

    sys.exit(0 if result.ok else 1)


@cli.command()
@click.argument("test_file", type=click.Path(exists=True, dir_okay=False))
@click.argument("name", required=False)
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def params(test_file: str, name: str | None, config: str) -> None:
    """Show the test parameters declared by TEST_FILE."""
    try:
        cfg = load_config(config)
    except ConfigurationError as e:
        _fail(e)
        return

    table = Orchestrator(cfg, console=console).show_params(test_file)
    if name is not None:
        for value in table.get(name, []):
            click.echo(value)
        return
    if not table:
        console.print("[yellow]No test parameters[/yellow]")
        return
    for key, values in table.items():
        for value in values:
            click.echo(f"{key} = {value}")


@cli.command()
@click.option("--config", "-c", default=DEFAULT_CONFIG, help="Config file path")
def init(config: str) -> None:
    """Create a default configuration file."""
    config_path = Path(config)
    if config_path.exists():
        if not click.confirm(f"{config} already exists. Overwrite?"):
            return

    HarnessConfig().save(config_path)
    console.print(f"[green]Created {config_path}[/green]")
    console.print("\nEdit the tool commands, then run:")
    console.print("  [blue]render-regress run tests/[/blue]")


if __name__ == "__main__":
    cli()
