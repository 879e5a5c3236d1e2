"""Local repositories and remote ref discovery.

Listing uses the transport's ref advertisement only, so discovering what
exists remotely costs the same whatever the size of the repository.
Fetching is always narrow: callers name the exact refs they want.
"""

from __future__ import annotations

import logging
import os
import threading
from collections.abc import Iterable
from dataclasses import dataclass

from dulwich.errors import NotGitRepository
from dulwich.objects import Commit, Tag
from dulwich.protocol import ZERO_SHA
from dulwich.repo import Repo

from .exceptions import TRANSPORT_ERRORS, ResolveError, SyncCancelled
from .patterns import Pattern, matches_any

logger = logging.getLogger(__name__)

REMOTE_NAME = b"origin"
HEADS_PREFIX = b"refs/heads/"
TAGS_PREFIX = b"refs/tags/"
REMOTES_PREFIX = b"refs/remotes/origin/"
PEELED_SUFFIX = b"^{}"

_MAX_PEEL = 50


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RemoteRef:
    """A branch or tag advertised by the remote."""
    kind: str     # "branch" or "tag"
    name: str     # short name, e.g. "main" or "v1.0"
    sha: bytes    # 40-char hex, as dulwich stores it

    @property
    def ref(self) -> bytes:
        prefix = HEADS_PREFIX if self.kind == "branch" else TAGS_PREFIX
        return prefix + self.name.encode()


@dataclass(frozen=True)
class RemoteRefs:
    """One listing of the remote: branches, tags and the default branch."""
    branches: tuple[RemoteRef, ...] = ()
    tags: tuple[RemoteRef, ...] = ()
    default_branch: str | None = None

    def matching_branches(self, patterns: Iterable[Pattern]) -> list[RemoteRef]:
        patterns = tuple(patterns)
        return [r for r in self.branches if matches_any(r.name, patterns)]

    def matching_tags(self, patterns: Iterable[Pattern]) -> list[RemoteRef]:
        patterns = tuple(patterns)
        return [r for r in self.tags if matches_any(r.name, patterns)]


# ---------------------------------------------------------------------------
# Cancellation
# ---------------------------------------------------------------------------

def check_cancelled(cancel: threading.Event | None) -> None:
    """Raise :class:`SyncCancelled` if *cancel* has been set."""
    if cancel is not None and cancel.is_set():
        raise SyncCancelled("sync cancelled")


def _progress_cb(cancel: threading.Event | None):
    """Return a dulwich progress callback that aborts the transfer on cancel."""
    if cancel is None:
        return None

    def _on_progress(msg):
        check_cancelled(cancel)

    return _on_progress


# ---------------------------------------------------------------------------
# Local repositories
# ---------------------------------------------------------------------------

def ensure_repo(path: str | os.PathLike, url: str, *, bare: bool = False) -> Repo:
    """Open the repository at *path*, creating an empty one if needed.

    A new repository has no commits and no branches; only the ``origin``
    remote is registered.  Bare repositories serve as resolvers, the
    others get a working tree for checkouts.

    Raises:
        ResolveError: If *path* is a non-empty directory that is not a
            repository, or the repository cannot be created.
    """
    path = os.fspath(path)
    try:
        if os.path.isdir(path) and os.listdir(path):
            repo = Repo(path)
        else:
            os.makedirs(path, exist_ok=True)
            repo = Repo.init_bare(path) if bare else Repo.init(path)
            logger.debug("initialized %s repository at %s", "bare" if bare else "working", path)
        _set_remote(repo, url)
    except NotGitRepository as exc:
        raise ResolveError(f"{path} exists but is not a git repository") from exc
    except OSError as exc:
        raise ResolveError(f"init {path}: {exc}") from exc
    return repo


def _set_remote(repo: Repo, url: str) -> None:
    config = repo.get_config()
    section = (b"remote", REMOTE_NAME)
    try:
        current = config.get(section, b"url")
    except KeyError:
        current = None
    if current == url.encode():
        return
    config.set(section, b"url", url.encode())
    config.set(section, b"fetch", b"+refs/heads/*:refs/remotes/origin/*")
    config.write_to_path()


def read_ref(repo: Repo, ref: bytes) -> bytes | None:
    """Return the sha *ref* points to, or None if it does not exist."""
    try:
        return repo.refs[ref]
    except KeyError:
        return None


def local_branches(repo: Repo) -> list[str]:
    return sorted(name.decode() for name in repo.refs.keys(base=HEADS_PREFIX))


def local_tags(repo: Repo) -> list[str]:
    return sorted(name.decode() for name in repo.refs.keys(base=TAGS_PREFIX))


def peel_to_commit(repo: Repo, sha: bytes) -> Commit:
    """Follow annotated tags from *sha* down to a commit.

    Raises:
        KeyError: If an object along the way is missing locally.
        ValueError: If the chain ends at something other than a commit.
    """
    obj = repo[sha]
    for _ in range(_MAX_PEEL):
        if not isinstance(obj, Tag):
            break
        obj = repo[obj.object[1]]
    if not isinstance(obj, Commit):
        raise ValueError(f"{sha.decode()} does not point to a commit")
    return obj


# ---------------------------------------------------------------------------
# Remote operations
# ---------------------------------------------------------------------------

def _advertised(result) -> tuple[dict, dict]:
    """Split a dulwich ref listing into ``(refs, symrefs)``.

    Older dulwich releases return a plain dict, newer ones a result object.
    """
    refs = result.refs if hasattr(result, "refs") else result
    symrefs = getattr(result, "symrefs", None) or {}
    return refs, symrefs


def list_remote_refs(auth, cancel: threading.Event | None = None) -> RemoteRefs:
    """List remote branches and tags without transferring any objects.

    Raises:
        ResolveError: If the remote cannot be listed.
    """
    check_cancelled(cancel)
    try:
        client, path = auth.client()
        result = client.get_refs(path)
    except TRANSPORT_ERRORS as exc:
        raise ResolveError(f"listing remote refs: {exc}") from exc
    check_cancelled(cancel)

    refs, symrefs = _advertised(result)
    branches: dict[str, RemoteRef] = {}
    tags: dict[str, RemoteRef] = {}
    for ref, sha in refs.items():
        if ref.endswith(PEELED_SUFFIX) or sha == ZERO_SHA:
            continue
        if ref.startswith(HEADS_PREFIX):
            name = ref[len(HEADS_PREFIX):].decode()
            branches.setdefault(name, RemoteRef("branch", name, sha))
        elif ref.startswith(TAGS_PREFIX):
            name = ref[len(TAGS_PREFIX):].decode()
            tags.setdefault(name, RemoteRef("tag", name, sha))

    return RemoteRefs(
        branches=tuple(branches[n] for n in sorted(branches)),
        tags=tuple(tags[n] for n in sorted(tags)),
        default_branch=_default_branch(refs, symrefs, branches),
    )


def _default_branch(refs: dict, symrefs: dict, branches: dict[str, RemoteRef]) -> str | None:
    target = symrefs.get(b"HEAD")
    if target is not None and target.startswith(HEADS_PREFIX):
        return target[len(HEADS_PREFIX):].decode()
    # No symref capability: guess from the sha HEAD resolves to.
    head_sha = refs.get(b"HEAD")
    if head_sha is None:
        return None
    candidates = sorted(n for n, r in branches.items() if r.sha == head_sha)
    if len(candidates) == 1:
        return candidates[0]
    for name in ("main", "master"):
        if name in candidates:
            return name
    return None


def fetch_refs(
    repo: Repo,
    auth,
    ref_names: Iterable[bytes],
    *,
    cancel: threading.Event | None = None,
    depth: int | None = None,
) -> dict[bytes, bytes]:
    """Fetch the objects behind *ref_names* only, and nothing else.

    Objects already present locally are not requested again.  Local refs
    are left untouched; the caller decides where the returned shas go.

    Returns:
        ``{full_ref_name: sha}`` for every requested ref the remote has.
    """
    ref_names = list(dict.fromkeys(ref_names))

    def determine_wants(refs, depth=None):
        wants = []
        for name in ref_names:
            sha = refs.get(name)
            if sha is None or sha == ZERO_SHA or sha in repo.object_store:
                continue
            if sha not in wants:
                wants.append(sha)
        return wants

    check_cancelled(cancel)
    client, path = auth.client()
    kwargs = {"determine_wants": determine_wants, "progress": _progress_cb(cancel)}
    if depth is not None:
        kwargs["depth"] = depth
    result = client.fetch(path, repo, **kwargs)
    check_cancelled(cancel)

    refs, _ = _advertised(result)
    return {name: refs[name] for name in ref_names if name in refs}
