import logging
import sys
from pathlib import Path

import click

from .errors import ReflectionError
from .layout import resolve_layout
from .log import configure_logging, trace
from .pipeline import ReflectionMode, ReflectionRequest
from .triggers import run_background, run_explicit, run_watch

logger = logging.getLogger(__name__)


@click.group()
@click.option("--verbose", "-v", count=True, help="Increase log output (-v info, -vv debug, -vvv trace)")
def reflectgen(verbose):
    configure_logging(verbose)


@reflectgen.command()
@click.option("--project", "-p", default=".", type=click.Path(exists=True, file_okay=False, resolve_path=True))
@click.option("--entrypoint", "-e", default=None, type=str, help="Application module, relative to the project root")
@click.option("--force", "-f", is_flag=True, default=False, help="Regenerate even if the types are up to date")
@click.option("--timeout", "-t", default=None, type=click.IntRange(min=1), help="Runner timeout in milliseconds")
@click.option(
    "--mode",
    "-m",
    default=ReflectionMode.ARTIFACTS_ONLY.value,
    type=click.Choice([m.value for m in ReflectionMode]),
    help="Also report registered plugins with 'full'",
)
def generate(project, entrypoint, force, timeout, mode):
    """Generate types for the project."""
    try:
        layout = resolve_layout(Path(project), entrypoint)
    except ReflectionError as e:
        click.echo(f"reflectgen: {e}", err=True)
        sys.exit(1)

    request = ReflectionRequest(layout, mode=ReflectionMode(mode), timeout_ms=timeout, force=force)
    sys.exit(run_explicit(request))


@reflectgen.command()
@click.option("--project", "-p", default=".", type=click.Path(file_okay=False, resolve_path=True))
def postinstall(project):
    """Generate types after installing dependencies; never fails."""
    try:
        layout = resolve_layout(Path(project))
    except ReflectionError as e:
        trace(logger, "skipping type generation: %s", e)
        sys.exit(0)
    sys.exit(run_background(layout))


@reflectgen.command()
@click.option("--project", "-p", default=".", type=click.Path(exists=True, file_okay=False, resolve_path=True))
@click.option("--entrypoint", "-e", default=None, type=str, help="Application module, relative to the project root")
def watch(project, entrypoint):
    """Regenerate types whenever the sources change."""
    try:
        layout = resolve_layout(Path(project), entrypoint)
    except ReflectionError as e:
        click.echo(f"reflectgen: {e}", err=True)
        sys.exit(1)
    sys.exit(run_watch(layout))
