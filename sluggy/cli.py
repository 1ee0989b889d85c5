"""Command-line interface for Sluggy.

This module defines the CLI commands using the Click framework.

Commands:
- build: Build the site into the output directory.
- serve: Run the preview server with incremental rebuilds and live reload.
"""

from __future__ import annotations

import logging
from pathlib import Path

import click

from . import __version__
from .config import BuildConfig, load_config
from .errors import BuildError
from .orchestrator import BuildReport, full_build


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)-7s %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load(
    project_root: Path,
    config_path: Path | None,
    drafts: bool,
    workers: int | None = None,
    output: Path | None = None,
) -> BuildConfig:
    try:
        mapping = load_config(project_root, config_path)
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    if drafts:
        mapping["include_drafts"] = True
    if workers:
        mapping["workers"] = workers
    return BuildConfig.from_mapping(mapping, project_root, output)


def _echo_errors(report: BuildReport) -> None:
    for error in report.errors:
        click.echo(click.style(f"  {error.entity_id}", fg="yellow") + f": {error.kind}: {error.message}", err=True)


@click.group()
@click.version_option(version=__version__, prog_name="sluggy")
def cli():
    """Sluggy incremental static site builder."""


@cli.command()
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (defaults to sluggy.yaml in the current directory)",
)
@click.option(
    "--output",
    "-o",
    type=click.Path(file_okay=False, path_type=Path),
    help="Output directory (overrides output_dir)",
)
@click.option("--workers", type=click.IntRange(min=1), help="Render worker threads")
@click.option("--verbose", "-v", is_flag=True, help="Log every build step")
def build(
    drafts: bool,
    config_path: Path | None,
    output: Path | None,
    workers: int | None,
    verbose: bool,
):
    """Build the site into the output directory."""
    _configure_logging(verbose)
    project_root = Path.cwd()
    config = _load(project_root, config_path, drafts, workers, output)

    try:
        report = full_build(project_root, config=config)
    except BuildError as exc:
        click.echo(click.style("Build failed:", fg="red", bold=True), err=True)
        click.echo(click.style(f"  Error: {exc.message}", fg="white"), err=True)
        raise SystemExit(1) from None

    if report.errors:
        click.echo(click.style(f"Build finished with {len(report.errors)} error(s):", fg="red", bold=True), err=True)
        _echo_errors(report)
        click.echo(report.summary(), err=True)
        raise SystemExit(1)
    click.echo(f"Built {len(report.written)} files into {config.output_root}")


@cli.command()
@click.option("--drafts", is_flag=True, help="Include draft content")
@click.option(
    "--port",
    type=int,
    required=False,
    help="Port to run the preview server (overrides sluggy.yaml)",
)
@click.option(
    "--ws-port",
    type=int,
    required=False,
    help="Port for the live reload websocket server (overrides sluggy.yaml ws_port)",
)
@click.option("--no-watch", is_flag=True, help="Serve without watching for changes")
@click.option(
    "--config",
    "config_path",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Configuration file (defaults to sluggy.yaml in the current directory)",
)
@click.option("--verbose", "-v", is_flag=True, help="Log every build step")
def serve(
    drafts: bool,
    port: int | None,
    ws_port: int | None,
    no_watch: bool,
    config_path: Path | None,
    verbose: bool,
):
    """Run the preview server with live reload."""
    _configure_logging(verbose)
    project_root = Path.cwd()
    from .server import DevServer

    try:
        server = DevServer(
            project_root,
            http_port=port,
            ws_port=ws_port,
            include_drafts=drafts,
            config_path=config_path,
        )
    except (FileNotFoundError, ValueError) as exc:
        raise click.ClickException(str(exc)) from exc
    server.start(watch=not no_watch)


def main():
    """Entry point for the CLI application."""
    cli()
