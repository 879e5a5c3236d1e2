"""Tag synchronization.

Tags are treated as immutable in classic mode: a tag that exists locally
is never fetched again, and every missing tag arrives in a single
batched fetch.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable

from dulwich.repo import Repo

from .exceptions import TRANSPORT_ERRORS, RefSyncError
from .refs import TAGS_PREFIX, RemoteRef, check_cancelled, fetch_refs, read_ref

logger = logging.getLogger(__name__)


def partition_tags(repo: Repo, tags: Iterable[RemoteRef]) -> tuple[list[str], list[RemoteRef]]:
    """Split remote *tags* into ``(up_to_date_names, to_fetch)``."""
    up_to_date: list[str] = []
    to_fetch: list[RemoteRef] = []
    for tag in tags:
        if tag.ref in repo.refs:
            up_to_date.append(tag.name)
        else:
            to_fetch.append(tag)
    return up_to_date, to_fetch


def fetch_tags(
    repo: Repo,
    tags: list[RemoteRef],
    auth,
    cancel: threading.Event | None = None,
) -> tuple[list[str], list[str]]:
    """Fetch *tags* in one round trip and create their local refs.

    Returns:
        ``(fetched, failed)`` tag names.  A tag is failed when the remote
        no longer advertises it or its object did not arrive.

    Raises:
        RefSyncError: If the batched fetch itself fails; none of *tags*
            is written in that case.
    """
    if not tags:
        return [], []
    try:
        fetched = fetch_refs(repo, auth, [t.ref for t in tags], cancel=cancel)
    except TRANSPORT_ERRORS as exc:
        raise RefSyncError(f"fetch {len(tags)} tag(s): {exc}") from exc
    check_cancelled(cancel)

    ok: list[str] = []
    failed: list[str] = []
    for tag in tags:
        sha = fetched.get(tag.ref)
        if sha is None or sha not in repo.object_store:
            logger.debug("tag %s missing from fetch result", tag.name)
            failed.append(tag.name)
            continue
        repo.refs[tag.ref] = sha
        ok.append(tag.name)
    return ok, failed


def sync_single_tag(repo: Repo, name: str, auth, cancel: threading.Event | None = None) -> bool:
    """Force-fetch one tag into *repo*.

    Used for OpenVox directories, where each tag has a repository of its
    own and a moved tag must be followed.

    Returns:
        True if the local tag pointer changed.

    Raises:
        RefSyncError: If the fetch fails or the remote no longer has the tag.
    """
    ref = TAGS_PREFIX + name.encode()
    try:
        fetched = fetch_refs(repo, auth, [ref], cancel=cancel)
    except TRANSPORT_ERRORS as exc:
        raise RefSyncError(f"fetch tag {name}: {exc}") from exc
    check_cancelled(cancel)

    sha = fetched.get(ref)
    if sha is None:
        raise RefSyncError(f"tag {name} not found on remote")
    if sha not in repo.object_store:
        raise RefSyncError(f"fetch tag {name}: object {sha.decode()} missing after fetch")
    if read_ref(repo, ref) == sha:
        return False
    repo.refs[ref] = sha
    return True
