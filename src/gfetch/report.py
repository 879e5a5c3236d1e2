"""Run reporting.

The sync engine reports through a :class:`Reporter` it is given, never
through global state.  The base class does nothing; :class:`SyncStats`
keeps in-memory counters for the daemon's ``/metrics`` endpoint.
"""

from __future__ import annotations

import threading
import time
from collections import defaultdict

# Operation labels.
CLONE = "clone"
BRANCH_SYNC = "branch_sync"
TAG_SYNC = "tag_sync"
BRANCH = "branch"
TAG = "tag"
TOTAL = "total"


class Reporter:
    """No-op reporter.  Subclass and override what you need."""

    def sync_started(self, repo: str) -> None:
        pass

    def sync_finished(self, repo: str, ok: bool) -> None:
        pass

    def operation_failed(self, repo: str, operation: str) -> None:
        pass

    def operation_timed(self, repo: str, operation: str, seconds: float) -> None:
        pass


class SyncStats(Reporter):
    """Thread-safe per-repository counters."""

    def __init__(self):
        self._lock = threading.Lock()
        self._syncs: dict[str, int] = defaultdict(int)
        self._successes: dict[str, int] = defaultdict(int)
        self._failures: dict[str, dict[str, int]] = defaultdict(lambda: defaultdict(int))
        self._durations: dict[str, dict[str, float]] = defaultdict(dict)
        self._last_success: dict[str, float] = {}
        self._last_failure: dict[str, float] = {}

    def sync_started(self, repo: str) -> None:
        with self._lock:
            self._syncs[repo] += 1

    def sync_finished(self, repo: str, ok: bool) -> None:
        now = time.time()
        with self._lock:
            if ok:
                self._successes[repo] += 1
                self._last_success[repo] = now
            else:
                self._last_failure[repo] = now

    def operation_failed(self, repo: str, operation: str) -> None:
        with self._lock:
            self._failures[repo][operation] += 1

    def operation_timed(self, repo: str, operation: str, seconds: float) -> None:
        with self._lock:
            self._durations[repo][operation] = seconds

    def snapshot(self) -> dict:
        """Return a JSON-serializable copy of every counter, keyed by repo."""
        with self._lock:
            repos = sorted(set(self._syncs) | set(self._failures) | set(self._durations))
            return {
                repo: {
                    "syncs_total": self._syncs.get(repo, 0),
                    "sync_success_total": self._successes.get(repo, 0),
                    "sync_failures_total": dict(self._failures.get(repo, {})),
                    "last_duration_seconds": dict(self._durations.get(repo, {})),
                    "last_success_timestamp": self._last_success.get(repo),
                    "last_failure_timestamp": self._last_failure.get(repo),
                }
                for repo in repos
            }
