"""Shared helpers and the main CLI group."""

from __future__ import annotations

import logging
import sys

import click

from .. import __version__
from ..config import Config, load
from ..exceptions import ConfigError

LOG_LEVELS = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _setup_logging(level: str) -> None:
    """Send log records to stderr at *level*."""
    logging.basicConfig(
        level=LOG_LEVELS[level.lower()],
        stream=sys.stderr,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logging.getLogger("gfetch").setLevel(LOG_LEVELS[level.lower()])


def _load_config(ctx) -> Config:
    """Load and validate the configuration named by --config."""
    path = ctx.obj["config_path"]
    try:
        return load(path)
    except ConfigError as exc:
        raise click.ClickException(f"config: {exc}")


# ---------------------------------------------------------------------------
# Main group
# ---------------------------------------------------------------------------

@click.group()
@click.option("--config", "-c", "config_path", type=click.Path(), default="config.yaml",
              envvar="GFETCH_CONFIG", show_default=True,
              help="Config file, or a directory of config files (or set GFETCH_CONFIG).")
@click.option("--log-level", type=click.Choice(list(LOG_LEVELS), case_sensitive=False),
              default="info", show_default=True, help="Log verbosity on stderr.")
@click.pass_context
def main(ctx, config_path, log_level):
    """gfetch: selectively mirror remote git repositories.

    Each configured repository is mirrored into a local directory,
    keeping only the branches and tags its patterns select.

    \b
    Quick start:
      gfetch -c config.yaml validate-config
      gfetch -c config.yaml sync --dry-run --prune
      gfetch -c config.yaml daemon --listen :8080

    \b
    Patterns are literal names, '*' for everything, or /regex/.
    """
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path
    _setup_logging(log_level)


@main.command()
def version():
    """Print the gfetch version."""
    click.echo(f"gfetch {__version__}")
