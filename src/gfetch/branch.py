"""Branch synchronization and working-tree checkout."""

from __future__ import annotations

import logging
import os
import threading

from dulwich.index import build_index_from_tree
from dulwich.objects import Commit
from dulwich.repo import Repo

from .exceptions import TRANSPORT_ERRORS, RefSyncError
from .refs import (
    HEADS_PREFIX,
    REMOTES_PREFIX,
    TAGS_PREFIX,
    check_cancelled,
    fetch_refs,
    peel_to_commit,
    read_ref,
)

logger = logging.getLogger(__name__)


def sync_branch(repo: Repo, name: str, auth, cancel: threading.Event | None = None) -> bool:
    """Bring local branch *name* to the remote's tip.

    Only ``refs/heads/<name>`` is fetched.  The remote-tracking ref and
    the local branch are force-moved to the fetched commit, so rewritten
    remote history is followed rather than merged.

    Returns:
        True if the local branch moved, False if it was already current.

    Raises:
        RefSyncError: If the fetch fails or the remote no longer has the branch.
    """
    ref = HEADS_PREFIX + name.encode()
    try:
        fetched = fetch_refs(repo, auth, [ref], cancel=cancel)
    except TRANSPORT_ERRORS as exc:
        raise RefSyncError(f"fetch branch {name}: {exc}") from exc
    # Nothing is written once the run is cancelled.
    check_cancelled(cancel)

    sha = fetched.get(ref)
    if sha is None:
        raise RefSyncError(f"branch {name} not found on remote")
    if sha not in repo.object_store:
        raise RefSyncError(f"fetch branch {name}: commit {sha.decode()} missing after fetch")

    tracking = REMOTES_PREFIX + name.encode()
    if read_ref(repo, tracking) != sha:
        repo.refs[tracking] = sha
    if read_ref(repo, ref) == sha:
        logger.debug("branch %s already at %s", name, sha.decode()[:7])
        return False
    repo.refs[ref] = sha
    logger.debug("branch %s moved to %s", name, sha.decode()[:7])
    return True


# ---------------------------------------------------------------------------
# Checkout
# ---------------------------------------------------------------------------

def checkout_ref(repo: Repo, name: str) -> Commit:
    """Check out branch or tag *name* into the working tree.

    A branch wins over a tag of the same name.  Branches leave HEAD
    symbolic; tags detach it at the peeled commit.  The working tree is
    then hard-reset, discarding local modifications.

    Returns:
        The commit now checked out.

    Raises:
        RefSyncError: If *name* is neither a local branch nor a local tag,
            or its target cannot be read.
    """
    branch_ref = HEADS_PREFIX + name.encode()
    tag_ref = TAGS_PREFIX + name.encode()

    sha = read_ref(repo, branch_ref)
    if sha is not None:
        commit = _resolve(repo, sha, name)
        repo.refs.set_symbolic_ref(b"HEAD", branch_ref)
    else:
        sha = read_ref(repo, tag_ref)
        if sha is None:
            raise RefSyncError(f"ref {name} not found as branch or tag")
        commit = _resolve(repo, sha, name)
        _detach_head(repo, commit.id)

    try:
        hard_reset(repo, commit)
    except OSError as exc:
        raise RefSyncError(f"reset working tree to {name}: {exc}") from exc
    return commit


def _resolve(repo: Repo, sha: bytes, name: str) -> Commit:
    try:
        return peel_to_commit(repo, sha)
    except (KeyError, ValueError) as exc:
        raise RefSyncError(f"resolve {name}: {exc}") from exc


def _detach_head(repo: Repo, sha: bytes) -> None:
    # Remove HEAD first so the write does not follow a symbolic ref.
    try:
        del repo.refs[b"HEAD"]
    except KeyError:
        pass
    repo.refs[b"HEAD"] = sha


def hard_reset(repo: Repo, commit: Commit) -> None:
    """Make the index and working tree match *commit* exactly.

    Files tracked before but absent from *commit* are removed, along with
    any directories that become empty.  Untracked files are left alone.
    """
    index_path = repo.index_path()
    old_paths: set[bytes] = set()
    if os.path.exists(index_path):
        old_paths = set(repo.open_index())

    build_index_from_tree(repo.path, index_path, repo.object_store, commit.tree)
    new_paths = set(repo.open_index())

    root = os.fsencode(repo.path)
    for path in sorted(old_paths - new_paths):
        full = os.path.join(root, path)
        try:
            os.remove(full)
        except FileNotFoundError:
            continue
        _prune_empty_dirs(root, os.path.dirname(full))


def _prune_empty_dirs(root: bytes, directory: bytes) -> None:
    while directory and directory != root and directory.startswith(root):
        try:
            if os.listdir(directory):
                return
            os.rmdir(directory)
        except FileNotFoundError:
            pass
        directory = os.path.dirname(directory)
