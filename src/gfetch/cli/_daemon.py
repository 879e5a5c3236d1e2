"""The daemon command."""

from __future__ import annotations

import click

from .. import daemon as _daemon
from ..report import SyncStats
from ..syncer import Syncer
from ._helpers import main, _load_config


@main.command()
@click.option("--listen", "--listen-addr", "listen", default=_daemon.DEFAULT_LISTEN, show_default=True,
              help="HTTP listen address, host:port or :port.")
@click.pass_context
def daemon(ctx, listen):
    """Sync every repository on its poll interval until stopped.

    Also serves /health, /metrics and POST /sync[/<repo>] over HTTP.
    Stop with Ctrl+C or SIGTERM.
    """
    cfg = _load_config(ctx)
    try:
        _daemon.parse_listen(listen)
    except ValueError as exc:
        raise click.BadParameter(str(exc), param_hint="--listen")
    stats = SyncStats()
    _daemon.run(Syncer(reporter=stats), cfg, listen, stats)
