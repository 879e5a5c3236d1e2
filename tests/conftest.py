"""Shared fixtures for gfetch tests."""

import time

import pytest
from click.testing import CliRunner
from dulwich.index import commit_tree
from dulwich.objects import Blob, Commit, Tag
from dulwich.repo import Repo

from gfetch.config import build_repo

DAY = 86400


class Remote:
    """A bare repository on disk standing in for the git server."""

    def __init__(self, path):
        self.path = str(path)
        self.repo = Repo.init_bare(self.path, mkdir=True)

    def commit(self, files, *, days_ago=0, parents=(), message="commit"):
        store = self.repo.object_store
        entries = []
        for name, data in sorted(files.items()):
            blob = Blob.from_string(data)
            store.add_object(blob)
            entries.append((name.encode(), blob.id, 0o100644))
        c = Commit()
        c.tree = commit_tree(store, entries)
        c.parents = list(parents)
        c.author = c.committer = b"test <test@test>"
        c.author_time = c.commit_time = int(time.time() - days_ago * DAY)
        c.author_timezone = c.commit_timezone = 0
        c.encoding = b"UTF-8"
        c.message = message.encode() + b"\n"
        store.add_object(c)
        return c.id

    def branch(self, name, files=None, *, days_ago=0, parent=None):
        """Point branch *name* at a new commit and return its sha."""
        if files is None:
            files = {"README": f"{name}\n".encode()}
        sha = self.commit(files, days_ago=days_ago,
                          parents=[parent] if parent else [], message=name)
        self.repo.refs[b"refs/heads/" + name.encode()] = sha
        return sha

    def tag(self, name, target, *, annotated=False):
        ref = b"refs/tags/" + name.encode()
        if not annotated:
            self.repo.refs[ref] = target
            return target
        tag = Tag()
        tag.tagger = b"test <test@test>"
        tag.message = f"release {name}\n".encode()
        tag.name = name.encode()
        tag.object = (Commit, target)
        tag.tag_time = int(time.time())
        tag.tag_timezone = 0
        self.repo.object_store.add_object(tag)
        self.repo.refs[ref] = tag.id
        return tag.id

    def set_head(self, branch):
        self.repo.refs.set_symbolic_ref(b"HEAD", b"refs/heads/" + branch.encode())

    def delete_branch(self, name):
        del self.repo.refs[b"refs/heads/" + name.encode()]

    def delete_tag(self, name):
        del self.repo.refs[b"refs/tags/" + name.encode()]


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------

@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def empty_remote(tmp_path):
    """A bare remote with no refs at all."""
    return Remote(tmp_path / "remote.git")


@pytest.fixture
def remote(empty_remote):
    """Remote with 'main' (default) and 'develop', plus tags v1.0 and v2.0.

    v1.0 is lightweight, v2.0 annotated; both point at main.
    """
    r = empty_remote
    main = r.branch("main", {"README": b"main\n", "src/app.py": b"print('hi')\n"})
    r.branch("develop")
    r.tag("v1.0", main)
    r.tag("v2.0", main, annotated=True)
    r.set_head("main")
    return r


@pytest.fixture
def local_path(tmp_path):
    return str(tmp_path / "local")


@pytest.fixture
def make_repo(local_path):
    """Build a validated RepoConfig mirroring *remote* into local_path."""

    def _make(remote, **overrides):
        raw = {
            "name": "app",
            "url": remote.path,
            "local_path": local_path,
            "branches": ["*"],
            "tags": ["*"],
        }
        raw.update(overrides)
        return build_repo(raw)

    return _make
