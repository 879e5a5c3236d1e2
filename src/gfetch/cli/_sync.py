"""The sync command."""

from __future__ import annotations

import json

import click

from ..config import parse_duration
from ..exceptions import ConfigError
from ..syncer import Syncer, SyncOptions, SyncResult
from ._helpers import main, _load_config

# Lists longer than this are shortened to a count on quiet lines.
QUIET_LIMIT = 5


@main.command()
@click.option("--repo", "repo_name", help="Sync only the named repository.")
@click.option("--prune", is_flag=True, default=False,
              help="Delete local branches and tags no longer matched by any pattern.")
@click.option("--prune-stale", is_flag=True, default=False,
              help="Also delete matched branches with no commits within the stale age (needs --prune).")
@click.option("--stale-age", help="Age threshold for stale branches, e.g. 30d or 12h (default: 180d).")
@click.option("--dry-run", is_flag=True, default=False,
              help="Report what would be pruned without deleting anything.")
@click.option("--json", "as_json", is_flag=True, default=False, help="Print results as JSON.")
@click.pass_context
def sync(ctx, repo_name, prune, prune_stale, stale_age, dry_run, as_json):
    """Sync all repositories (or one) once and exit.

    Exits with status 1 if any repository reports an error.

    \b
    Examples:
        gfetch sync
        gfetch sync --repo app --prune --dry-run
        gfetch sync --prune --prune-stale --stale-age 90d
    """
    cfg = _load_config(ctx)
    try:
        age = parse_duration(stale_age)
    except ConfigError as exc:
        raise click.BadParameter(str(exc), param_hint="--stale-age")
    opts = SyncOptions(prune=prune, prune_stale=prune_stale, stale_age=age, dry_run=dry_run)

    syncer = Syncer()
    if repo_name:
        repo = cfg.get(repo_name)
        if repo is None:
            raise click.ClickException(f"repo {repo_name!r} not found in config")
        results = [syncer.sync_repo(repo, opts)]
    else:
        results = syncer.sync_all(cfg, opts)

    if as_json:
        click.echo(json.dumps([r.to_dict() for r in results], indent=2))
    else:
        for result in results:
            _print_result(result, dry_run)

    if any(r.error is not None for r in results):
        ctx.exit(1)


# ---------------------------------------------------------------------------
# Human-readable report
# ---------------------------------------------------------------------------

def _summary(r: SyncResult) -> str:
    branch_ok = len(r.branches_synced) + len(r.branches_up_to_date)
    branch_total = branch_ok + len(r.branches_failed)
    tag_ok = len(r.tags_fetched) + len(r.tags_up_to_date)
    tag_total = tag_ok + len(r.tags_failed)
    parts = []
    if branch_total:
        parts.append(f"{branch_ok}/{branch_total} branches")
    if tag_total:
        parts.append(f"{tag_ok}/{tag_total} tags")
    return f" [{', '.join(parts)}]" if parts else ""


def _print_section(title: str, lines: list[tuple[str, str, list[str], bool]]) -> None:
    if not any(items for _, _, items, _ in lines):
        return
    click.echo(f"  {title}:")
    for symbol, label, items, quiet in lines:
        if not items:
            continue
        content = ", ".join(items)
        if quiet and len(items) > QUIET_LIMIT:
            content = f"{len(items)} items"
        click.echo(f"    {symbol} {label}: {content}")


def _print_result(r: SyncResult, dry_run: bool) -> None:
    prune_symbol = "!" if dry_run else "✓"
    prune_label = "to prune (dry-run)" if dry_run else "pruned"

    click.echo(f"Repo: {r.repo_name}{_summary(r)}")
    _print_section("Branches", [
        ("✓", "synced", r.branches_synced, False),
        ("!", "failed", r.branches_failed, False),
        ("-", "up-to-date", r.branches_up_to_date, True),
        ("!", "obsolete", r.branches_obsolete, False),
        ("-", "stale", r.branches_stale, True),
        (prune_symbol, prune_label, r.branches_pruned, False),
    ])
    _print_section("Tags", [
        ("✓", "fetched", r.tags_fetched, False),
        ("!", "failed", r.tags_failed, False),
        ("-", "up-to-date", r.tags_up_to_date, True),
        ("!", "obsolete", r.tags_obsolete, False),
        (prune_symbol, prune_label, r.tags_pruned, False),
    ])
    if r.checkout:
        click.echo(f"  ✓ Checkout: {r.checkout}")
    if r.error is not None:
        click.echo(f"  ! Error: {r.error}")
