"""Pruning of obsolete and stale local branches, tags and directories.

Pruning is planned first and applied second.  A plan classifies every
local name as obsolete (no configured pattern wants it any more) or
stale (still wanted, but its tip is older than the stale age), and
derives the deletion candidates from the policy.  Dry-run applies the
same plan without touching anything, so it reports exactly what a live
run would delete.
"""

from __future__ import annotations

import logging
import os
import shutil
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import timedelta

from dulwich.repo import Repo

from .exceptions import GfetchError
from .patterns import Pattern, matches_any
from .refs import HEADS_PREFIX, REMOTES_PREFIX, TAGS_PREFIX

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class PrunePolicy:
    """What a run is allowed to delete.

    *protected* names are never deleted.  *stale_protected* names may
    still be deleted as obsolete, but never for being stale.
    """
    prune: bool = False
    prune_stale: bool = False
    dry_run: bool = False
    stale_age: timedelta | None = None
    protected: frozenset[str] = frozenset()
    stale_protected: frozenset[str] = frozenset()

    @property
    def enabled(self) -> bool:
        return self.prune or self.prune_stale

    @property
    def checks_stale(self) -> bool:
        return self.prune_stale and bool(self.stale_age)

    @property
    def deletes_stale(self) -> bool:
        # Stale deletion needs prune as well; prune_stale alone only reports.
        return self.prune and self.checks_stale


@dataclass
class PrunePlan:
    obsolete: list[str] = field(default_factory=list)
    stale: list[str] = field(default_factory=list)
    candidates: list[str] = field(default_factory=list)


# ---------------------------------------------------------------------------
# Planning and applying
# ---------------------------------------------------------------------------

def plan_prune(
    names: Iterable[str],
    wanted: Iterable[Pattern] | Callable[[str], bool],
    policy: PrunePolicy,
    is_stale: Callable[[str], bool] | None = None,
) -> PrunePlan:
    """Classify local *names* and pick the ones *policy* allows deleting.

    *wanted* is either the configured patterns or a predicate; names it
    rejects are obsolete.  *is_stale* is only consulted for wanted names,
    and only when the policy checks staleness.
    """
    if callable(wanted):
        is_wanted = wanted
    else:
        patterns = tuple(wanted)

        def is_wanted(name: str) -> bool:
            return matches_any(name, patterns)

    plan = PrunePlan()
    for name in sorted(set(names)):
        if not is_wanted(name):
            plan.obsolete.append(name)
        elif policy.checks_stale and is_stale is not None and is_stale(name):
            plan.stale.append(name)

    if policy.prune:
        plan.candidates.extend(n for n in plan.obsolete if n not in policy.protected)
    if policy.deletes_stale:
        plan.candidates.extend(
            n for n in plan.stale
            if n not in policy.protected and n not in policy.stale_protected
        )
    return plan


def apply_prune(
    plan: PrunePlan,
    policy: PrunePolicy,
    delete: Callable[[str], object],
    log: logging.Logger | logging.LoggerAdapter | None = None,
    what: str = "branch",
) -> list[str]:
    """Delete the plan's candidates, or only report them in dry-run mode.

    Returns:
        The names deleted (or that would be deleted).  A failed deletion
        is logged and left out.
    """
    log = log or logger
    for name in sorted((set(plan.obsolete) | set(plan.stale)) & policy.protected):
        if policy.prune:
            log.info("skipping prune of protected %s %s", what, name)

    pruned: list[str] = []
    for name in plan.candidates:
        if policy.dry_run:
            log.info("%s %s would be pruned (dry-run)", what, name)
            pruned.append(name)
            continue
        try:
            delete(name)
        except (OSError, KeyError, GfetchError) as exc:
            log.error("failed to prune %s %s: %s", what, name, exc)
            continue
        log.info("%s %s pruned", what, name)
        pruned.append(name)
    return pruned


# ---------------------------------------------------------------------------
# Deleters
# ---------------------------------------------------------------------------

def _remove_ref(repo: Repo, ref: bytes) -> bool:
    if ref not in repo.refs:
        return False
    del repo.refs[ref]
    return True


def delete_branch(repo: Repo, name: str) -> bool:
    """Remove a local branch and its remote-tracking ref.

    Missing refs are not an error.  Returns True if anything was removed.
    """
    removed_local = _remove_ref(repo, HEADS_PREFIX + name.encode())
    removed_tracking = _remove_ref(repo, REMOTES_PREFIX + name.encode())
    return removed_local or removed_tracking


def delete_tag(repo: Repo, name: str) -> bool:
    return _remove_ref(repo, TAGS_PREFIX + name.encode())


def list_dirs(base: str | os.PathLike) -> list[str]:
    """Non-hidden subdirectories of *base*, sorted."""
    try:
        entries = list(os.scandir(base))
    except FileNotFoundError:
        return []
    return sorted(e.name for e in entries if e.is_dir() and not e.name.startswith("."))


def delete_dir(base: str | os.PathLike, name: str) -> bool:
    path = os.path.join(base, name)
    if not os.path.exists(path):
        return False
    shutil.rmtree(path)
    return True
