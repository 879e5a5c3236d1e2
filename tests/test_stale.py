"""Tests for staleness checks."""

import threading
from datetime import datetime, timedelta, timezone

import pytest

from gfetch._auth import Auth
from gfetch.branch import sync_branch
from gfetch.exceptions import SyncCancelled
from gfetch.refs import RemoteRef, ensure_repo, list_remote_refs
from gfetch.stale import (
    TMP_PREFIX,
    check_staleness,
    is_older_than,
    is_stale,
    local_branch_is_stale,
    temporary_ref,
)

AGE = timedelta(days=180)


@pytest.fixture
def aged_remote(empty_remote):
    """Remote with 'main' (today) and 'old-feature' (400 days old)."""
    empty_remote.branch("main")
    empty_remote.branch("old-feature", days_ago=400)
    empty_remote.set_head("main")
    return empty_remote


def _ref(remote, name):
    for ref in list_remote_refs(Auth(remote.path)).branches:
        if ref.name == name:
            return ref
    raise AssertionError(name)


def _tmp_refs(repo):
    return list(repo.refs.keys(base=TMP_PREFIX))


class TestIsOlderThan:
    def test_threshold(self, aged_remote):
        commit = aged_remote.repo[aged_remote.repo.refs[b"refs/heads/old-feature"]]
        assert is_older_than(commit, AGE)
        assert not is_older_than(commit, timedelta(days=500))

    def test_zero_age_never_stale(self, aged_remote):
        commit = aged_remote.repo[aged_remote.repo.refs[b"refs/heads/old-feature"]]
        assert not is_older_than(commit, timedelta(0))
        assert not is_older_than(commit, None)

    def test_explicit_now(self, aged_remote):
        commit = aged_remote.repo[aged_remote.repo.refs[b"refs/heads/main"]]
        later = datetime.now(timezone.utc) + timedelta(days=365)
        assert is_older_than(commit, AGE, now=later)


class TestCheckStaleness:
    def test_uses_local_commit(self, aged_remote, tmp_path):
        auth = Auth(aged_remote.path)
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sync_branch(work, "old-feature", auth)
        ref = _ref(aged_remote, "old-feature")
        # A broken transport proves no network access is needed.
        assert check_staleness(work, ref, AGE, Auth(str(tmp_path / "gone.git")))

    def test_depth_one_fetch_leaves_no_refs(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "meta", aged_remote.path, bare=True)
        ref = _ref(aged_remote, "old-feature")
        try:
            check_staleness(work, ref, AGE, Auth(aged_remote.path))
        except NotImplementedError:
            pytest.skip("local transport without shallow fetch support")
        assert _tmp_refs(work) == []
        assert list(work.refs.keys(base=b"refs/heads/")) == []

    def test_fresh_branch(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sync_branch(work, "main", Auth(aged_remote.path))
        assert not check_staleness(work, _ref(aged_remote, "main"), AGE, Auth(aged_remote.path))

    def test_zero_age_skips_everything(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        broken = Auth(str(tmp_path / "gone.git"))
        assert not check_staleness(work, _ref(aged_remote, "old-feature"), timedelta(0), broken)


class TestIsStale:
    def test_failure_means_not_stale(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        ref = RemoteRef("branch", "old-feature", b"1" * 40)
        assert is_stale(work, ref, AGE, Auth(str(tmp_path / "gone.git"))) is False
        assert _tmp_refs(work) == []

    def test_failure_logs_warning(self, aged_remote, tmp_path, caplog):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        ref = RemoteRef("branch", "old-feature", b"1" * 40)
        is_stale(work, ref, AGE, Auth(str(tmp_path / "gone.git")))
        assert "syncing anyway" in caplog.text

    def test_cancellation_propagates(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        ref = RemoteRef("branch", "old-feature", b"1" * 40)
        cancel = threading.Event()
        cancel.set()
        with pytest.raises(SyncCancelled):
            is_stale(work, ref, AGE, Auth(aged_remote.path), cancel)

    def test_stale_local(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sync_branch(work, "old-feature", Auth(aged_remote.path))
        assert is_stale(work, _ref(aged_remote, "old-feature"), AGE, Auth(aged_remote.path))


class TestTemporaryRef:
    def test_removed_after_success(self, tmp_path, aged_remote):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sha = aged_remote.repo.refs[b"refs/heads/main"]
        sync_branch(work, "main", Auth(aged_remote.path))
        with temporary_ref(work, "main") as ref:
            work.refs[ref] = sha
            assert ref == TMP_PREFIX + b"main"
            assert ref in work.refs
        assert ref not in work.refs

    def test_removed_after_error(self, tmp_path, aged_remote):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sync_branch(work, "main", Auth(aged_remote.path))
        sha = aged_remote.repo.refs[b"refs/heads/main"]
        with pytest.raises(RuntimeError):
            with temporary_ref(work, "main") as ref:
                work.refs[ref] = sha
                raise RuntimeError("boom")
        assert _tmp_refs(work) == []

    def test_never_written_is_fine(self, tmp_path, aged_remote):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        with temporary_ref(work, "x"):
            pass
        assert _tmp_refs(work) == []


class TestLocalBranchIsStale:
    def test_local_tips(self, aged_remote, tmp_path):
        auth = Auth(aged_remote.path)
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        sync_branch(work, "main", auth)
        sync_branch(work, "old-feature", auth)
        assert local_branch_is_stale(work, "old-feature", AGE)
        assert not local_branch_is_stale(work, "main", AGE)
        assert not local_branch_is_stale(work, "absent", AGE)


class TestScratchRepository:
    def test_shallow_fetch_stays_out_of_mirror(self, aged_remote, tmp_path):
        work = ensure_repo(tmp_path / "work", aged_remote.path)
        scratch = ensure_repo(tmp_path / "scratch", aged_remote.path, bare=True)
        ref = _ref(aged_remote, "old-feature")
        try:
            stale = check_staleness(work, ref, AGE, Auth(aged_remote.path), scratch=scratch)
        except NotImplementedError:
            pytest.skip("local transport without shallow fetch support")
        assert stale
        assert ref.sha not in work.object_store
        assert ref.sha in scratch.object_store
        assert _tmp_refs(scratch) == []
