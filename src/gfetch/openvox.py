"""OpenVox mode: one checked-out directory per matched ref.

Each matched branch or tag is materialized as ``<local_path>/<name>``,
where *name* is the ref name with every character outside
``[A-Za-z0-9_]`` replaced by ``_`` (the characters an OpenVox/Puppet
environment name may contain).  Each directory holds its own repository.
A bare resolver repository in ``<local_path>/.gfetch-meta`` is used to
list the remote and to check staleness.
"""

from __future__ import annotations

import logging
import os
import re
import time
from collections.abc import Iterable
from datetime import timedelta
from typing import TYPE_CHECKING

from dulwich.errors import NotGitRepository
from dulwich.repo import Repo

from . import report
from .branch import checkout_ref, sync_branch
from .exceptions import CollisionError, GfetchError, ResolveError
from .prune import apply_prune, delete_dir, list_dirs, plan_prune
from .refs import RemoteRef, ensure_repo, list_remote_refs, peel_to_commit, read_ref
from .stale import is_older_than, is_stale
from .tag import sync_single_tag

if TYPE_CHECKING:
    from .prune import PrunePolicy
    from .syncer import RepoRun

logger = logging.getLogger(__name__)

META_DIR = ".gfetch-meta"

_UNSAFE = re.compile(r"[^A-Za-z0-9_]")


def sanitize_name(name: str) -> str:
    """Map a ref name to a directory name; e.g. ``feature/x-1`` -> ``feature_x_1``."""
    return _UNSAFE.sub("_", name)


class NameRegistry:
    """Sanitized directory name -> original ref name, refusing collisions."""

    def __init__(self):
        self._names: dict[str, str] = {}

    def add(self, name: str) -> str:
        """Register *name* and return its sanitized key.

        Raises:
            CollisionError: If a different name already owns the same key.
        """
        key = sanitize_name(name)
        existing = self._names.get(key)
        if existing is not None and existing != name:
            raise CollisionError(f"{existing!r} and {name!r} both sanitize to {key!r}")
        self._names[key] = name
        return key

    def original(self, key: str, default: str | None = None) -> str | None:
        return self._names.get(key, default)

    def __contains__(self, key: str) -> bool:
        return key in self._names

    def __iter__(self):
        return iter(self._names)

    def __len__(self) -> int:
        return len(self._names)


def detect_collisions(names: Iterable[str], registry: NameRegistry | None = None) -> NameRegistry:
    """Register every name in order, raising on the first collision."""
    registry = registry if registry is not None else NameRegistry()
    for name in names:
        registry.add(name)
    return registry


# ---------------------------------------------------------------------------
# Sync flow
# ---------------------------------------------------------------------------

def sync_openvox(run: RepoRun) -> None:
    """Resolve, materialize and prune the directories of one repository."""
    repo = run.repo
    base = repo.local_path

    try:
        try:
            os.makedirs(base, exist_ok=True)
        except OSError as exc:
            raise ResolveError(f"creating local_path {base}: {exc}") from exc
        resolver = ensure_repo(os.path.join(base, META_DIR), repo.url, bare=True)
        remote = list_remote_refs(run.auth, run.cancel)
    except GfetchError as exc:
        run.log.error("resolving failed: %s", exc)
        run.abort(exc)
        return

    branches = remote.matching_branches(repo.branches) if repo.branches else []
    tags = remote.matching_tags(repo.tags) if repo.tags else []
    try:
        registry = detect_collisions([r.name for r in branches] + [r.name for r in tags])
    except CollisionError as exc:
        run.log.error("name collision after sanitization: %s", exc)
        run.result.error = exc
        return

    default = remote.default_branch
    policy = run.policy(stale_protected={sanitize_name(default)} if default else ())

    run.log.debug("syncing %d branch(es), %d tag(s)", len(branches), len(tags))
    skipped: list[str] = []
    for ref in branches:
        run.check_cancelled()
        if (
            policy.deletes_stale
            and ref.name != default
            and is_stale(resolver, ref, policy.stale_age, run.auth, run.cancel, run.log)
        ):
            skipped.append(ref.name)
            continue
        _sync_branch_dir(run, ref)

    for ref in tags:
        run.check_cancelled()
        _sync_tag_dir(run, ref)
    run.surface_item_errors()

    if policy.enabled:
        _prune_dirs(run, registry, skipped, policy)


def _sync_branch_dir(run: RepoRun, ref: RemoteRef) -> None:
    dirname = sanitize_name(ref.name)
    start = time.monotonic()
    try:
        local = ensure_repo(os.path.join(run.repo.local_path, dirname), run.repo.url)
        moved = sync_branch(local, ref.name, run.auth, run.cancel)
        checkout_ref(local, ref.name)
    except GfetchError as exc:
        run.item_failed("branch", f"{ref.name} ({dirname})", exc, report.BRANCH_SYNC)
        run.result.branches_failed.append(ref.name)
        return
    run.reporter.operation_timed(run.repo.name, report.BRANCH, time.monotonic() - start)
    if moved:
        run.log.info("branch %s synced into %s", ref.name, dirname)
        run.result.branches_synced.append(ref.name)
    else:
        run.result.branches_up_to_date.append(ref.name)


def _sync_tag_dir(run: RepoRun, ref: RemoteRef) -> None:
    dirname = sanitize_name(ref.name)
    start = time.monotonic()
    try:
        local = ensure_repo(os.path.join(run.repo.local_path, dirname), run.repo.url)
        updated = sync_single_tag(local, ref.name, run.auth, run.cancel)
        checkout_ref(local, ref.name)
    except GfetchError as exc:
        run.item_failed("tag", f"{ref.name} ({dirname})", exc, report.TAG_SYNC)
        run.result.tags_failed.append(ref.name)
        return
    run.reporter.operation_timed(run.repo.name, report.TAG, time.monotonic() - start)
    if updated:
        run.log.info("tag %s fetched into %s", ref.name, dirname)
        run.result.tags_fetched.append(ref.name)
    else:
        run.result.tags_up_to_date.append(ref.name)


def _prune_dirs(
    run: RepoRun,
    registry: NameRegistry,
    skipped: list[str],
    policy: PrunePolicy,
) -> None:
    """Prune obsolete directories and, with prune_stale, stale ones.

    Every active directory is stale-checked by the commit its HEAD points
    at, tag directories included.
    """
    base = run.repo.local_path
    skipped_dirs = {sanitize_name(name) for name in skipped}

    def stale(dirname: str) -> bool:
        if dirname in skipped_dirs:
            return True
        return _dir_is_stale(os.path.join(base, dirname), policy.stale_age, run.log)

    plan = plan_prune(set(list_dirs(base)) | skipped_dirs, registry.__contains__, policy, stale)
    pruned = apply_prune(plan, policy, lambda d: delete_dir(base, d), run.log, "directory")

    # Active directories are reported by ref name, obsolete ones by directory.
    run.result.branches_obsolete = plan.obsolete
    run.result.branches_stale = [registry.original(d, d) for d in plan.stale]
    run.result.branches_pruned = [registry.original(d, d) for d in pruned]


def _dir_is_stale(path: str, age: timedelta | None, log) -> bool:
    if not os.path.isdir(path):
        return False
    try:
        local = Repo(path)
    except NotGitRepository:
        log.warning("skipping stale check: %s is not a git repository", path)
        return False
    sha = read_ref(local, b"HEAD")
    if sha is None:
        return False
    try:
        commit = peel_to_commit(local, sha)
    except (KeyError, ValueError):
        return False
    return is_older_than(commit, age)
