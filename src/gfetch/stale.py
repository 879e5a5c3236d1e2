"""Staleness checks based on committer timestamps.

A ref is stale when its tip commit was committed longer ago than the
configured age.  Remote refs are checked without a full fetch: the local
object store is consulted first, and only when the commit is missing is
a depth-1 fetch made into a throwaway ref.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone

from dulwich.objects import Commit
from dulwich.repo import Repo

from .exceptions import RefSyncError, SyncCancelled
from .refs import HEADS_PREFIX, RemoteRef, fetch_refs, peel_to_commit, read_ref

logger = logging.getLogger(__name__)

TMP_PREFIX = b"refs/gfetch-tmp/"


def commit_time(commit: Commit) -> datetime:
    """Committer time of *commit* as an aware UTC datetime."""
    return datetime.fromtimestamp(commit.commit_time, tz=timezone.utc)


def is_older_than(commit: Commit, age: timedelta | None, now: datetime | None = None) -> bool:
    """True if *commit* was committed more than *age* before *now*.

    A zero or missing *age* never makes anything stale.
    """
    if not age:
        return False
    if now is None:
        now = datetime.now(timezone.utc)
    return now - commit_time(commit) > age


@contextmanager
def temporary_ref(repo: Repo, name: str) -> Iterator[bytes]:
    """Yield a scratch ref name under ``refs/gfetch-tmp/``; delete it on exit."""
    ref = TMP_PREFIX + name.encode()
    try:
        yield ref
    finally:
        try:
            del repo.refs[ref]
        except KeyError:
            pass


def check_staleness(
    repo: Repo,
    ref: RemoteRef,
    age: timedelta | None,
    auth,
    cancel: threading.Event | None = None,
    now: datetime | None = None,
    scratch: Repo | None = None,
) -> bool:
    """Decide whether remote *ref* is stale.

    The tip is looked up in *repo* first.  When it is missing, a depth-1
    fetch goes into *scratch* (default: *repo*).  A shallow fetch marks the
    commit as a history cut-off in the receiving repository, so mirrors
    that later sync the branch must pass a separate scratch repository.

    Raises whatever the depth-1 fetch raises; see :func:`is_stale` for the
    fail-safe variant.
    """
    if not age:
        return False
    try:
        commit = peel_to_commit(repo, ref.sha)
    except KeyError:
        commit = None
    if commit is None:
        scratch = scratch if scratch is not None else repo
        with temporary_ref(scratch, ref.name) as tmp:
            fetched = fetch_refs(scratch, auth, [ref.ref], cancel=cancel, depth=1)
            sha = fetched.get(ref.ref)
            if sha is None:
                raise RefSyncError(f"{ref.kind} {ref.name} not found on remote")
            scratch.refs[tmp] = sha
            commit = peel_to_commit(scratch, sha)
    return is_older_than(commit, age, now)


def is_stale(
    repo: Repo,
    ref: RemoteRef,
    age: timedelta | None,
    auth,
    cancel: threading.Event | None = None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
    scratch: Repo | None = None,
) -> bool:
    """Like :func:`check_staleness`, but any failure means "not stale".

    Cancellation is never swallowed.
    """
    log = log or logger
    try:
        stale = check_staleness(repo, ref, age, auth, cancel, scratch=scratch)
    except SyncCancelled:
        raise
    except Exception as exc:
        log.warning("failed to check staleness of %s %s, syncing anyway: %s", ref.kind, ref.name, exc)
        return False
    if stale:
        log.info("skipping stale %s %s", ref.kind, ref.name)
    return stale


def local_branch_is_stale(
    repo: Repo,
    name: str,
    age: timedelta | None,
    log: logging.Logger | logging.LoggerAdapter | None = None,
) -> bool:
    """Staleness of a local branch tip; unreadable branches are not stale."""
    if not age:
        return False
    sha = read_ref(repo, HEADS_PREFIX + name.encode())
    if sha is None:
        return False
    try:
        commit = peel_to_commit(repo, sha)
    except (KeyError, ValueError) as exc:
        (log or logger).warning("cannot read tip of branch %s: %s", name, exc)
        return False
    return is_older_than(commit, age)
