"""Configuration commands: validate-config and cat."""

from __future__ import annotations

import click
import yaml

from ._helpers import main, _load_config


@main.command("validate-config")
@click.pass_context
def validate_config(ctx):
    """Load and validate the configuration, then exit."""
    cfg = _load_config(ctx)
    click.echo("Config is valid.")
    click.echo(f"{len(cfg.repos)} repo(s): {', '.join(r.name for r in cfg.repos)}", err=True)


@main.command()
@click.pass_context
def cat(ctx):
    """Print the resolved configuration as YAML.

    Defaults are already folded into each repository, so this shows
    exactly what a sync would use.
    """
    cfg = _load_config(ctx)
    click.echo(yaml.safe_dump(cfg.to_dict(), sort_keys=False, default_flow_style=False), nl=False)
