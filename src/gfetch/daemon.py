"""Long-running mode: periodic syncs plus a small HTTP control API.

Every repository gets its own thread that syncs immediately and then
once per ``poll_interval``.  A per-repository lock keeps runs of the
same repository strictly sequential; a scheduled tick that finds a run
already in progress is skipped.

HTTP endpoints::

    GET  /health        {"status": "ok"}
    GET  /metrics       counters from SyncStats
    POST /sync          sync every repository now
    POST /sync/<repo>   sync one repository now
"""

from __future__ import annotations

import json
import logging
import signal
import threading
from socketserver import ThreadingMixIn
from wsgiref.simple_server import WSGIRequestHandler, WSGIServer, make_server

from .config import Config, RepoConfig
from .report import SyncStats
from .syncer import Syncer, SyncResult

logger = logging.getLogger(__name__)

DEFAULT_LISTEN = ":8080"
SHUTDOWN_TIMEOUT = 10.0


class RepoLocks:
    """One lock per repository name, created on first use."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}

    def __getitem__(self, name: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(name)
            if lock is None:
                lock = self._locks[name] = threading.Lock()
            return lock


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------

class Scheduler:
    """Sync each repository on its own interval until *stop* is set.

    Setting *stop* also cancels runs that are in flight.
    """

    def __init__(self, syncer: Syncer, config: Config, *, locks: RepoLocks | None = None,
                 stop: threading.Event | None = None):
        self.syncer = syncer
        self.config = config
        self.locks = locks if locks is not None else RepoLocks()
        self.stop = stop if stop is not None else threading.Event()
        self._threads: list[threading.Thread] = []

    def run_once(self, repo: RepoConfig) -> SyncResult | None:
        """Sync *repo* unless a run is already in progress (then return None)."""
        lock = self.locks[repo.name]
        if not lock.acquire(blocking=False):
            logger.info("[%s] previous sync still running, skipping this tick", repo.name)
            return None
        try:
            return self.syncer.sync_repo(repo, cancel=self.stop)
        finally:
            lock.release()

    def _loop(self, repo: RepoConfig) -> None:
        interval = repo.poll_interval.total_seconds()
        while not self.stop.is_set():
            self.run_once(repo)
            if self.stop.wait(interval):
                break

    def start(self) -> None:
        for repo in self.config.repos:
            thread = threading.Thread(
                target=self._loop, args=(repo,), name=f"gfetch-{repo.name}", daemon=True,
            )
            thread.start()
            self._threads.append(thread)
            logger.info("scheduled repo %s every %s", repo.name, repo.poll_interval)

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)


# ---------------------------------------------------------------------------
# WSGI app
# ---------------------------------------------------------------------------

def _send_json(start_response, status: str, obj) -> list[bytes]:
    body = json.dumps(obj).encode()
    start_response(status, [
        ("Content-Type", "application/json"),
        ("Content-Length", str(len(body))),
    ])
    return [body]


def make_app(syncer: Syncer, config: Config, locks: RepoLocks | None = None,
             stats: SyncStats | None = None, cancel: threading.Event | None = None):
    """Return the WSGI application for the daemon's HTTP API.

    Manual syncs wait for any scheduled run of the same repository to
    finish first.  The response is a list of result dicts; if any run
    reports an error the status is 500.
    """
    locks = locks if locks is not None else RepoLocks()

    def _sync(repo: RepoConfig) -> SyncResult:
        with locks[repo.name]:
            return syncer.sync_repo(repo, cancel=cancel)

    def _results(start_response, results: list[SyncResult]):
        status = "500 Internal Server Error" if any(r.error for r in results) else "200 OK"
        return _send_json(start_response, status, [r.to_dict() for r in results])

    def app(environ, start_response):
        method = environ.get("REQUEST_METHOD", "GET")
        path = environ.get("PATH_INFO", "/").rstrip("/") or "/"

        if path == "/health":
            if method != "GET":
                return _send_json(start_response, "405 Method Not Allowed", {"error": "method not allowed"})
            return _send_json(start_response, "200 OK", {"status": "ok"})

        if path == "/metrics":
            if method != "GET":
                return _send_json(start_response, "405 Method Not Allowed", {"error": "method not allowed"})
            return _send_json(start_response, "200 OK", stats.snapshot() if stats else {})

        if path == "/sync" or path.startswith("/sync/"):
            if method != "POST":
                return _send_json(start_response, "405 Method Not Allowed", {"error": "method not allowed"})
            if path == "/sync":
                logger.info("manual sync triggered for all repos")
                repos = sorted(config.repos, key=lambda r: r.name)
                return _results(start_response, [_sync(r) for r in repos])
            name = path[len("/sync/"):]
            repo = config.get(name)
            if repo is None:
                return _send_json(start_response, "404 Not Found", {"error": "repo not found"})
            logger.info("manual sync triggered for %s", name)
            return _results(start_response, [_sync(repo)])

        return _send_json(start_response, "404 Not Found", {"error": "not found"})

    return app


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

class _ThreadingWSGIServer(ThreadingMixIn, WSGIServer):
    daemon_threads = True


class _LogHandler(WSGIRequestHandler):
    def log_message(self, format, *args):
        logger.debug("%s - %s", self.client_address[0], format % args)


def parse_listen(listen: str) -> tuple[str, int]:
    """Split ``"host:port"`` (or ``":port"``) into its parts."""
    host, sep, port = listen.rpartition(":")
    if not sep:
        host, port = "", listen
    try:
        return host, int(port)
    except ValueError:
        raise ValueError(f"invalid listen address {listen!r}") from None


def run(syncer: Syncer, config: Config, listen: str = DEFAULT_LISTEN,
        stats: SyncStats | None = None) -> None:
    """Run the scheduler and HTTP server until SIGINT or SIGTERM."""
    stop = threading.Event()
    scheduler = Scheduler(syncer, config, stop=stop)
    app = make_app(syncer, config, scheduler.locks, stats, cancel=stop)

    host, port = parse_listen(listen)
    server = make_server(host, port, app,
                         server_class=_ThreadingWSGIServer, handler_class=_LogHandler)

    def _on_signal(signum, frame):
        logger.info("received %s, shutting down", signal.Signals(signum).name)
        stop.set()

    signal.signal(signal.SIGINT, _on_signal)
    signal.signal(signal.SIGTERM, _on_signal)

    scheduler.start()
    http_thread = threading.Thread(target=server.serve_forever, name="gfetch-http", daemon=True)
    http_thread.start()
    logger.info("daemon started: %d repo(s), listening on %s:%d",
                len(config.repos), host or "0.0.0.0", server.server_port)
    try:
        stop.wait()
    finally:
        stop.set()
        server.shutdown()
        server.server_close()
        scheduler.join(SHUTDOWN_TIMEOUT)
        logger.info("daemon stopped")
