"""Tests for OpenVox mode."""

import os

import pytest

from gfetch.exceptions import CollisionError
from gfetch.openvox import META_DIR, NameRegistry, detect_collisions, sanitize_name
from gfetch.syncer import Syncer, SyncOptions


@pytest.mark.parametrize("name, expected", [
    ("main", "main"),
    ("feature/x-1", "feature_x_1"),
    ("v1.0.2", "v1_0_2"),
    ("release_2024", "release_2024"),
    ("a b+c", "a_b_c"),
])
def test_sanitize_name(name, expected):
    assert sanitize_name(name) == expected
    assert sanitize_name(expected) == expected


class TestNameRegistry:
    def test_add_returns_key(self):
        registry = NameRegistry()
        assert registry.add("feature/x") == "feature_x"
        assert "feature_x" in registry
        assert registry.original("feature_x") == "feature/x"
        assert len(registry) == 1

    def test_same_name_twice_is_fine(self):
        registry = detect_collisions(["main", "main"])
        assert list(registry) == ["main"]

    def test_collision(self):
        with pytest.raises(CollisionError, match="both sanitize to 'a_b'"):
            detect_collisions(["a-b", "a_b"])

    def test_collision_between_branch_and_tag(self):
        registry = detect_collisions(["release/1"])
        with pytest.raises(CollisionError):
            detect_collisions(["release-1"], registry)

    def test_original_default(self):
        assert NameRegistry().original("x", "x") == "x"


# ---------------------------------------------------------------------------
# Sync flow
# ---------------------------------------------------------------------------

def _sync(repo, **opts):
    return Syncer().sync_repo(repo, SyncOptions(**opts))


class TestSyncOpenvox:
    def test_materializes_each_ref(self, remote, make_repo, local_path):
        result = _sync(make_repo(remote, openvox=True))
        assert result.error is None
        assert result.branches_synced == ["develop", "main"]
        assert result.tags_fetched == ["v1.0", "v2.0"]
        assert sorted(os.listdir(local_path)) == sorted([META_DIR, "develop", "main", "v1_0", "v2_0"])
        with open(os.path.join(local_path, "main", "README"), "rb") as f:
            assert f.read() == b"main\n"
        with open(os.path.join(local_path, "develop", "README"), "rb") as f:
            assert f.read() == b"develop\n"
        assert os.path.exists(os.path.join(local_path, "v2_0", "src", "app.py"))

    def test_second_run_up_to_date(self, remote, make_repo):
        repo = make_repo(remote, openvox=True)
        _sync(repo)
        result = _sync(repo)
        assert result.branches_synced == []
        assert result.branches_up_to_date == ["develop", "main"]
        assert result.tags_up_to_date == ["v1.0", "v2.0"]

    def test_branch_update_reaches_directory(self, remote, make_repo, local_path):
        repo = make_repo(remote, openvox=True, tags=[])
        _sync(repo)
        old = remote.repo.refs[b"refs/heads/develop"]
        remote.branch("develop", {"README": b"develop v2\n"}, parent=old)
        result = _sync(repo)
        assert result.branches_synced == ["develop"]
        with open(os.path.join(local_path, "develop", "README"), "rb") as f:
            assert f.read() == b"develop v2\n"

    def test_obsolete_directory_pruned(self, remote, make_repo, local_path):
        repo = make_repo(remote, openvox=True, tags=[])
        _sync(repo)
        remote.delete_branch("develop")
        result = _sync(repo, prune=True)
        assert result.branches_obsolete == ["develop"]
        assert result.branches_pruned == ["develop"]
        assert not os.path.exists(os.path.join(local_path, "develop"))
        assert os.path.isdir(os.path.join(local_path, "main"))
        assert os.path.isdir(os.path.join(local_path, META_DIR))

    def test_dry_run_keeps_directory(self, remote, make_repo, local_path):
        repo = make_repo(remote, openvox=True, tags=[])
        _sync(repo)
        remote.delete_branch("develop")
        result = _sync(repo, prune=True, dry_run=True)
        assert result.branches_pruned == ["develop"]
        assert os.path.isdir(os.path.join(local_path, "develop"))

    def test_no_prune_reports_only(self, remote, make_repo, local_path):
        repo = make_repo(remote, openvox=True, tags=[])
        _sync(repo)
        remote.delete_branch("develop")
        result = _sync(repo)
        assert result.branches_obsolete == []
        assert os.path.isdir(os.path.join(local_path, "develop"))

    def test_collision_aborts_before_materializing(self, empty_remote, make_repo, local_path):
        empty_remote.branch("a-b")
        empty_remote.branch("a_b")
        empty_remote.set_head("a-b")
        result = _sync(make_repo(empty_remote, openvox=True))
        assert isinstance(result.error, CollisionError)
        assert result.branches_synced == []
        assert os.listdir(local_path) == [META_DIR]

    def test_nested_branch_name(self, empty_remote, make_repo, local_path):
        empty_remote.branch("main")
        empty_remote.branch("feature/login")
        empty_remote.set_head("main")
        result = _sync(make_repo(empty_remote, openvox=True, tags=[]))
        assert result.branches_synced == ["feature/login", "main"]
        assert os.path.isdir(os.path.join(local_path, "feature_login"))

    def test_stale_branch_directory_pruned(self, empty_remote, make_repo, local_path):
        empty_remote.branch("main")
        empty_remote.branch("old-feature", days_ago=400)
        empty_remote.set_head("main")
        result = _sync(
            make_repo(empty_remote, openvox=True, tags=[]),
            prune=True, prune_stale=True,
        )
        assert result.error is None
        assert result.branches_stale == ["old-feature"]
        assert result.branches_pruned == ["old-feature"]
        assert result.branches_obsolete == []
        assert not os.path.exists(os.path.join(local_path, "old_feature"))
        assert os.path.isdir(os.path.join(local_path, "main"))

    def test_stale_default_branch_kept(self, empty_remote, make_repo, local_path):
        empty_remote.branch("main", days_ago=400)
        empty_remote.set_head("main")
        result = _sync(
            make_repo(empty_remote, openvox=True, tags=[]),
            prune=True, prune_stale=True,
        )
        assert result.branches_pruned == []
        assert os.path.isdir(os.path.join(local_path, "main"))

    def test_stale_tag_directory_pruned(self, empty_remote, make_repo, local_path):
        main = empty_remote.branch("main")
        old = empty_remote.commit({"README": b"old\n"}, days_ago=400)
        empty_remote.tag("v1", old)
        empty_remote.tag("v2", main)
        empty_remote.set_head("main")
        result = _sync(make_repo(empty_remote, openvox=True), prune=True, prune_stale=True)
        assert result.error is None
        assert result.tags_fetched == ["v1", "v2"]
        assert result.branches_stale == ["v1"]
        assert result.branches_pruned == ["v1"]
        assert not os.path.exists(os.path.join(local_path, "v1"))
        assert os.path.isdir(os.path.join(local_path, "v2"))
        assert os.path.isdir(os.path.join(local_path, "main"))
