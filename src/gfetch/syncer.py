"""Sync orchestration.

A run moves through fixed phases::

    init -> resolving -> synchronizing -> pruning -> checkout -> done

Init resolves credentials and checks reachability; resolving opens (or
creates) the local repository and lists the remote once.  Every later
phase works from that single listing.  Failures of individual branches
or tags are recorded and do not stop the run; failures before
synchronizing end it.  :meth:`Syncer.sync_repo` never raises: whatever
happens, the caller gets a :class:`SyncResult`.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta

from dulwich.repo import Repo

from . import report
from ._auth import Auth, check_reachable, resolve_auth
from .branch import checkout_ref, sync_branch
from .config import DEFAULT_STALE_AGE, Config, RepoConfig
from .exceptions import GfetchError, RefSyncError, SyncCancelled
from .openvox import sync_openvox
from .prune import PrunePolicy, apply_prune, delete_branch, delete_tag, plan_prune
from .refs import (
    RemoteRefs,
    check_cancelled,
    ensure_repo,
    list_remote_refs,
    local_branches,
    local_tags,
)
from .stale import is_stale, local_branch_is_stale
from .tag import fetch_tags, partition_tags

logger = logging.getLogger(__name__)

# Bare repository inside the mirror's git directory that receives depth-1
# staleness fetches.
SCRATCH_DIR = "gfetch-scratch"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SyncOptions:
    """Per-invocation overrides, OR-ed with each repository's own settings."""
    prune: bool = False
    prune_stale: bool = False
    stale_age: timedelta | None = None
    dry_run: bool = False

    def effective(self, repo: RepoConfig) -> SyncOptions:
        prune_stale = self.prune_stale or repo.prune_stale
        stale_age = self.stale_age or repo.stale_age
        if prune_stale and not stale_age:
            stale_age = DEFAULT_STALE_AGE
        return SyncOptions(
            prune=self.prune or repo.prune,
            prune_stale=prune_stale,
            stale_age=stale_age,
            dry_run=self.dry_run,
        )


@dataclass
class SyncResult:
    """Outcome of syncing one repository."""
    repo_name: str
    branches_synced: list[str] = field(default_factory=list)
    branches_up_to_date: list[str] = field(default_factory=list)
    branches_failed: list[str] = field(default_factory=list)
    branches_obsolete: list[str] = field(default_factory=list)
    branches_stale: list[str] = field(default_factory=list)
    branches_pruned: list[str] = field(default_factory=list)
    tags_fetched: list[str] = field(default_factory=list)
    tags_up_to_date: list[str] = field(default_factory=list)
    tags_failed: list[str] = field(default_factory=list)
    tags_obsolete: list[str] = field(default_factory=list)
    tags_pruned: list[str] = field(default_factory=list)
    checkout: str | None = None
    error: BaseException | None = None
    duration: float = 0.0

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def has_successes(self) -> bool:
        return bool(
            self.branches_synced or self.branches_up_to_date
            or self.tags_fetched or self.tags_up_to_date
        )

    def to_dict(self) -> dict:
        return {
            "repo": self.repo_name,
            "branches_synced": list(self.branches_synced),
            "branches_up_to_date": list(self.branches_up_to_date),
            "branches_failed": list(self.branches_failed),
            "branches_obsolete": list(self.branches_obsolete),
            "branches_stale": list(self.branches_stale),
            "branches_pruned": list(self.branches_pruned),
            "tags_fetched": list(self.tags_fetched),
            "tags_up_to_date": list(self.tags_up_to_date),
            "tags_failed": list(self.tags_failed),
            "tags_obsolete": list(self.tags_obsolete),
            "tags_pruned": list(self.tags_pruned),
            "checkout": self.checkout,
            "error": str(self.error) if self.error is not None else None,
            "duration": round(self.duration, 3),
        }


class RepoLogger(logging.LoggerAdapter):
    """Prefix every message with the repository (and mode) it concerns."""

    def process(self, msg, kwargs):
        prefix = self.extra["repo"]
        if self.extra.get("mode"):
            prefix = f"{prefix} {self.extra['mode']}"
        return f"[{prefix}] {msg}", kwargs


@dataclass
class RepoRun:
    """State shared by the phases of one repository run."""
    repo: RepoConfig
    opts: SyncOptions
    auth: Auth
    result: SyncResult
    log: RepoLogger
    reporter: report.Reporter
    cancel: threading.Event | None = None
    errors: list[GfetchError] = field(default_factory=list)

    def policy(self, protected=(), stale_protected=()) -> PrunePolicy:
        return PrunePolicy(
            prune=self.opts.prune,
            prune_stale=self.opts.prune_stale,
            dry_run=self.opts.dry_run,
            stale_age=self.opts.stale_age,
            protected=frozenset(n for n in protected if n),
            stale_protected=frozenset(n for n in stale_protected if n),
        )

    def item_failed(self, kind: str, name: str, exc: GfetchError, operation: str) -> None:
        self.log.error("%s sync failed for %s: %s", kind, name, exc)
        self.reporter.operation_failed(self.repo.name, operation)
        self.errors.append(exc)

    def abort(self, exc: GfetchError, operation: str = report.CLONE) -> None:
        self.reporter.operation_failed(self.repo.name, operation)
        self.result.error = exc

    def surface_item_errors(self) -> None:
        if self.result.error is None and self.errors and not self.result.has_successes:
            self.result.error = self.errors[0]

    def check_cancelled(self) -> None:
        check_cancelled(self.cancel)


# ---------------------------------------------------------------------------
# Syncer
# ---------------------------------------------------------------------------

class Syncer:
    """Runs sync passes, reporting to *reporter*.

    *preflight* is called with each :class:`RepoConfig` before any local
    state is touched and should raise :class:`GfetchError` to skip the
    repository.
    """

    def __init__(self, reporter: report.Reporter | None = None, preflight=check_reachable):
        self.reporter = reporter or report.Reporter()
        self.preflight = preflight

    def sync_all(
        self,
        config: Config,
        opts: SyncOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> list[SyncResult]:
        """Sync every configured repository in name order."""
        repos = sorted(config.repos, key=lambda r: r.name)
        return [self.sync_repo(repo, opts, cancel) for repo in repos]

    def sync_repo(
        self,
        repo: RepoConfig,
        opts: SyncOptions | None = None,
        cancel: threading.Event | None = None,
    ) -> SyncResult:
        """Sync one repository and return what happened."""
        start = time.monotonic()
        result = SyncResult(repo.name)
        opts = (opts or SyncOptions()).effective(repo)
        log = RepoLogger(logger, {"repo": repo.name, "mode": "openvox" if repo.openvox else ""})

        self.reporter.sync_started(repo.name)
        log.info("sync starting")
        try:
            self._run(repo, opts, result, log, cancel)
        except SyncCancelled as exc:
            log.warning("sync cancelled")
            result.error = exc
        except Exception as exc:
            log.exception("unexpected error during sync")
            result.error = exc

        result.duration = time.monotonic() - start
        self.reporter.operation_timed(repo.name, report.TOTAL, result.duration)
        self.reporter.sync_finished(repo.name, result.ok)
        _log_summary(result, log)
        return result

    def _run(self, repo, opts, result, log, cancel) -> None:
        check_cancelled(cancel)
        try:
            auth = resolve_auth(repo)
            self.preflight(repo)
        except GfetchError as exc:
            log.warning("skipping sync: %s", exc)
            self.reporter.operation_failed(repo.name, report.CLONE)
            result.error = exc
            return

        run = RepoRun(repo, opts, auth, result, log, self.reporter, cancel)
        if repo.openvox:
            sync_openvox(run)
            return

        # Resolving
        try:
            local = ensure_repo(repo.local_path, repo.url)
            remote = list_remote_refs(auth, cancel)
        except GfetchError as exc:
            log.error("resolving failed: %s", exc)
            run.abort(exc)
            return

        # Synchronizing
        protected = {repo.checkout}
        stale_protected = {remote.default_branch}
        policy = run.policy(protected, stale_protected)
        scratch = None
        if policy.deletes_stale and repo.branches:
            try:
                scratch = ensure_repo(os.path.join(local.controldir(), SCRATCH_DIR), repo.url, bare=True)
            except GfetchError as exc:
                log.error("resolving failed: %s", exc)
                run.abort(exc)
                return
        skipped = _sync_branches(run, local, remote, policy, scratch)
        _sync_tags(run, local, remote)
        run.surface_item_errors()

        # Pruning
        if policy.enabled:
            _prune_branches(run, local, skipped, policy)
            _prune_tags(run, local, policy)

        # Checkout
        if repo.checkout:
            _checkout(run, local)


# ---------------------------------------------------------------------------
# Classic mode phases
# ---------------------------------------------------------------------------

def _sync_branches(
    run: RepoRun, local: Repo, remote: RemoteRefs, policy: PrunePolicy, scratch: Repo | None = None,
) -> list[str]:
    """Sync matched branches; return those skipped as stale.

    Tips missing locally are fetched into *scratch* rather than *local*.
    """
    if not run.repo.branches:
        return []
    matched = remote.matching_branches(run.repo.branches)
    run.log.debug("syncing %d branch(es)", len(matched))

    skipped: list[str] = []
    exempt = policy.protected | policy.stale_protected
    for ref in matched:
        run.check_cancelled()
        if (
            policy.deletes_stale
            and ref.name not in exempt
            and is_stale(local, ref, policy.stale_age, run.auth, run.cancel, run.log, scratch=scratch)
        ):
            skipped.append(ref.name)
            continue

        start = time.monotonic()
        try:
            moved = sync_branch(local, ref.name, run.auth, run.cancel)
        except RefSyncError as exc:
            run.item_failed("branch", ref.name, exc, report.BRANCH_SYNC)
            run.result.branches_failed.append(ref.name)
            continue
        run.reporter.operation_timed(run.repo.name, report.BRANCH, time.monotonic() - start)
        if moved:
            run.log.info("branch %s synced", ref.name)
            run.result.branches_synced.append(ref.name)
        else:
            run.result.branches_up_to_date.append(ref.name)
    return skipped


def _sync_tags(run: RepoRun, local: Repo, remote: RemoteRefs) -> None:
    if not run.repo.tags:
        return
    start = time.monotonic()
    matched = remote.matching_tags(run.repo.tags)
    up_to_date, to_fetch = partition_tags(local, matched)
    run.result.tags_up_to_date.extend(up_to_date)
    if not to_fetch:
        run.log.debug("no new tags to fetch")
        return

    run.check_cancelled()
    try:
        fetched, failed = fetch_tags(local, to_fetch, run.auth, run.cancel)
    except RefSyncError as exc:
        run.item_failed("tag", f"{len(to_fetch)} tag(s)", exc, report.TAG_SYNC)
        run.result.tags_failed.extend(t.name for t in to_fetch)
        return
    for name in failed:
        run.item_failed("tag", name, RefSyncError(f"tag {name} missing after fetch"), report.TAG_SYNC)
    run.result.tags_fetched.extend(fetched)
    run.result.tags_failed.extend(failed)
    run.reporter.operation_timed(run.repo.name, report.TAG, time.monotonic() - start)
    run.log.info("tags synced: %d fetched", len(fetched))


def _prune_branches(run: RepoRun, local: Repo, skipped: list[str], policy: PrunePolicy) -> None:
    if not run.repo.branches:
        return
    skipped_set = set(skipped)

    def stale(name: str) -> bool:
        return name in skipped_set or local_branch_is_stale(local, name, policy.stale_age, run.log)

    plan = plan_prune(set(local_branches(local)) | skipped_set, run.repo.branches, policy, stale)
    run.result.branches_obsolete = plan.obsolete
    run.result.branches_stale = plan.stale
    run.result.branches_pruned = apply_prune(
        plan, policy, lambda name: delete_branch(local, name), run.log, "branch"
    )


def _prune_tags(run: RepoRun, local: Repo, policy: PrunePolicy) -> None:
    if not run.repo.tags:
        return
    # Tags have no staleness; only the obsolete axis applies.
    tag_policy = PrunePolicy(prune=policy.prune, dry_run=policy.dry_run, protected=policy.protected)
    plan = plan_prune(local_tags(local), run.repo.tags, tag_policy)
    run.result.tags_obsolete = plan.obsolete
    run.result.tags_pruned = apply_prune(
        plan, tag_policy, lambda name: delete_tag(local, name), run.log, "tag"
    )


def _checkout(run: RepoRun, local: Repo) -> None:
    name = run.repo.checkout
    try:
        commit = checkout_ref(local, name)
    except RefSyncError as exc:
        run.log.error("failed to check out %s: %s", name, exc)
        if run.result.error is None:
            run.result.error = RefSyncError(f"checkout {name}: {exc}")
        return
    run.log.info("checked out %s at %s", name, commit.id.decode()[:7])
    run.result.checkout = name


# ---------------------------------------------------------------------------
# Summary
# ---------------------------------------------------------------------------

def _counts(done: list, up_to_date: list, failed: list) -> str | None:
    outdated = len(done) + len(failed)
    total = outdated + len(up_to_date)
    if not total:
        return None
    if outdated:
        return f"total={total} outdated={outdated} synced={len(done)}"
    return f"total={total}"


def _log_summary(result: SyncResult, log: RepoLogger) -> None:
    if result.error is not None:
        log.error("sync failed after %.2fs: %s", result.duration, result.error)
        return
    parts = [f"duration={result.duration:.2f}s"]
    errors = len(result.branches_failed) + len(result.tags_failed)
    if errors:
        parts.append(f"errors={errors}")
    branches = _counts(result.branches_synced, result.branches_up_to_date, result.branches_failed)
    if branches:
        parts.append(f"branches[{branches}]")
    tags = _counts(result.tags_fetched, result.tags_up_to_date, result.tags_failed)
    if tags:
        parts.append(f"tags[{tags}]")
    level = logging.WARNING if errors else logging.INFO
    msg = "sync finished with errors" if errors else "sync finished"
    log.log(level, "%s %s", msg, " ".join(parts))
