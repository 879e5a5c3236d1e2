"""Tests for prune planning and deletion."""

import logging
from dataclasses import replace
from datetime import timedelta

import pytest

from gfetch._auth import Auth
from gfetch.branch import sync_branch
from gfetch.patterns import parse_patterns
from gfetch.prune import (
    PrunePolicy,
    apply_prune,
    delete_branch,
    delete_dir,
    delete_tag,
    list_dirs,
    plan_prune,
)
from gfetch.refs import ensure_repo, read_ref
from gfetch.tag import sync_single_tag

AGE = timedelta(days=180)
NAMES = ["main", "develop", "feature-a", "old-feature", "scratch"]
PATTERNS = parse_patterns(["main", "develop", "/^feature-/", "old-feature"])


def _stale(name):
    return name in ("old-feature", "develop")


class TestPlan:
    def test_obsolete_only_when_prune(self):
        plan = plan_prune(NAMES, PATTERNS, PrunePolicy(prune=True))
        assert plan.obsolete == ["scratch"]
        assert plan.stale == []
        assert plan.candidates == ["scratch"]

    def test_obsolete_reported_without_prune(self):
        plan = plan_prune(NAMES, PATTERNS, PrunePolicy())
        assert plan.obsolete == ["scratch"]
        assert plan.candidates == []

    def test_stale_and_obsolete(self):
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=AGE)
        plan = plan_prune(NAMES, PATTERNS, policy, _stale)
        assert plan.obsolete == ["scratch"]
        assert plan.stale == ["develop", "old-feature"]
        assert sorted(plan.candidates) == ["develop", "old-feature", "scratch"]

    def test_stale_without_prune_deletes_nothing(self):
        policy = PrunePolicy(prune_stale=True, stale_age=AGE)
        plan = plan_prune(NAMES, PATTERNS, policy, _stale)
        assert plan.stale == ["develop", "old-feature"]
        assert plan.candidates == []

    def test_zero_age_checks_nothing(self):
        calls = []
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=timedelta(0))
        plan = plan_prune(NAMES, PATTERNS, policy, lambda n: calls.append(n) or True)
        assert plan.stale == []
        assert calls == []

    def test_stale_check_only_for_matched_names(self):
        calls = []
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=AGE)
        plan_prune(NAMES, PATTERNS, policy, lambda n: calls.append(n) or False)
        assert "scratch" not in calls

    def test_protected_never_candidate(self):
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=AGE,
                             protected=frozenset({"scratch", "old-feature"}))
        plan = plan_prune(NAMES, PATTERNS, policy, _stale)
        assert plan.candidates == ["develop"]

    def test_stale_protected_only_on_stale_axis(self):
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=AGE,
                             stale_protected=frozenset({"develop", "scratch"}))
        plan = plan_prune(NAMES, PATTERNS, policy, _stale)
        assert sorted(plan.candidates) == ["old-feature", "scratch"]

    def test_predicate_instead_of_patterns(self):
        plan = plan_prune(["a", "b"], lambda n: n == "a", PrunePolicy(prune=True))
        assert plan.obsolete == ["b"]

    def test_duplicates_collapsed(self):
        plan = plan_prune(["x", "x"], PATTERNS, PrunePolicy(prune=True))
        assert plan.candidates == ["x"]


class TestApply:
    def _plan(self):
        policy = PrunePolicy(prune=True, prune_stale=True, stale_age=AGE)
        return plan_prune(NAMES, PATTERNS, policy, _stale), policy

    def test_dry_run_equals_live(self):
        plan, policy = self._plan()
        deleted = []
        dry = apply_prune(plan, replace(policy, dry_run=True),
                          lambda n: pytest.fail("dry-run deleted " + n))
        live = apply_prune(plan, policy, deleted.append)
        assert dry == live == deleted

    def test_failed_delete_left_out(self, caplog):
        plan, policy = self._plan()

        def delete(name):
            if name == "develop":
                raise OSError("locked")

        with caplog.at_level(logging.ERROR):
            pruned = apply_prune(plan, policy, delete)
        assert "develop" not in pruned
        assert "old-feature" in pruned
        assert "failed to prune branch develop" in caplog.text

    def test_dry_run_logs(self, caplog):
        plan = plan_prune(["scratch"], PATTERNS, PrunePolicy(prune=True, dry_run=True))
        with caplog.at_level(logging.INFO):
            apply_prune(plan, PrunePolicy(prune=True, dry_run=True), lambda n: None, what="tag")
        assert "tag scratch would be pruned (dry-run)" in caplog.text


# ---------------------------------------------------------------------------
# Deleters
# ---------------------------------------------------------------------------

class TestDeleters:
    def test_delete_branch_removes_tracking_ref(self, remote, tmp_path):
        work = ensure_repo(tmp_path / "work", remote.path)
        sync_branch(work, "develop", Auth(remote.path))
        assert delete_branch(work, "develop") is True
        assert read_ref(work, b"refs/heads/develop") is None
        assert read_ref(work, b"refs/remotes/origin/develop") is None

    def test_delete_absent_branch_is_not_an_error(self, remote, tmp_path):
        work = ensure_repo(tmp_path / "work", remote.path)
        assert delete_branch(work, "nope") is False

    def test_delete_tag(self, remote, tmp_path):
        work = ensure_repo(tmp_path / "work", remote.path)
        sync_single_tag(work, "v1.0", Auth(remote.path))
        assert delete_tag(work, "v1.0") is True
        assert read_ref(work, b"refs/tags/v1.0") is None
        assert delete_tag(work, "v1.0") is False

    def test_list_dirs_skips_hidden_and_files(self, tmp_path):
        (tmp_path / "main").mkdir()
        (tmp_path / ".gfetch-meta").mkdir()
        (tmp_path / "file.txt").write_text("x")
        assert list_dirs(tmp_path) == ["main"]
        assert list_dirs(tmp_path / "missing") == []

    def test_delete_dir(self, tmp_path):
        (tmp_path / "old" / "sub").mkdir(parents=True)
        assert delete_dir(tmp_path, "old") is True
        assert not (tmp_path / "old").exists()
        assert delete_dir(tmp_path, "old") is False
