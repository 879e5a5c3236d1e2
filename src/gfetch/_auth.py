"""Transport credentials and reachability checks.

The sync engine treats :class:`Auth` as an opaque handle: it only ever
asks it for a dulwich client.
"""

from __future__ import annotations

import shlex
import subprocess
from dataclasses import dataclass, field
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlparse, urlunparse
from urllib.request import Request, urlopen

from dulwich.client import get_transport_and_path

from .config import RepoConfig, is_ssh_url
from .exceptions import ResolveError

CREDENTIAL_TIMEOUT = 5
REACHABILITY_TIMEOUT = 10


@dataclass(frozen=True)
class Auth:
    """Everything needed to open a transport to one remote."""
    url: str
    transport_kwargs: dict = field(default_factory=dict)

    def client(self):
        """Return a dulwich ``(client, path)`` pair for the remote."""
        return get_transport_and_path(self.url, **self.transport_kwargs)

    def __repr__(self) -> str:
        # Never leak injected credentials into logs.
        parsed = urlparse(self.url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc += f":{parsed.port}"
            return f"Auth({parsed._replace(netloc=netloc).geturl()!r})"
        return f"Auth({self.url!r})"


def resolve_auth(repo: RepoConfig) -> Auth:
    """Build the transport handle for *repo*.

    HTTPS URLs get credentials from the local git credential helper when
    one answers.  SSH URLs use the configured key and, if given, a
    strict known-hosts file.  Local paths and ``file://`` URLs pass
    through unchanged.
    """
    if repo.is_https:
        return Auth(resolve_credentials(repo.url))
    if is_ssh_url(repo.url):
        kwargs: dict = {}
        if repo.ssh_key_path:
            kwargs["key_filename"] = repo.ssh_key_path
        if repo.ssh_known_hosts:
            kwargs["ssh_command"] = " ".join([
                "ssh",
                "-o", "StrictHostKeyChecking=yes",
                "-o", shlex.quote(f"UserKnownHostsFile={repo.ssh_known_hosts}"),
            ])
        return Auth(repo.url, kwargs)
    return Auth(repo.url)


def _run_helper(args: list[str], stdin: str | None = None) -> str | None:
    """Run a credential helper; return its stdout, or None if it failed."""
    try:
        proc = subprocess.run(args, input=stdin, capture_output=True, text=True,
                              timeout=CREDENTIAL_TIMEOUT)
    except (FileNotFoundError, subprocess.TimeoutExpired):
        return None
    return proc.stdout if proc.returncode == 0 else None


def _with_userinfo(parsed, username: str, password: str) -> str:
    netloc = f"{quote(username, safe='')}:{quote(password, safe='')}@{parsed.hostname}"
    if parsed.port:
        netloc += f":{parsed.port}"
    return urlunparse(parsed._replace(netloc=netloc))


def resolve_credentials(url: str) -> str:
    """Inject credentials into an HTTPS URL if a helper can supply them.

    ``git credential fill`` is asked first, so any helper git itself is
    configured with works.  ``gh auth token`` is the fallback for GitHub
    hosts.  Non-HTTPS URLs and URLs that already carry a user are
    returned unchanged.
    """
    if not url.startswith("https://"):
        return url
    parsed = urlparse(url)
    if parsed.username:
        return url

    out = _run_helper(["git", "credential", "fill"],
                      f"protocol={parsed.scheme}\nhost={parsed.hostname}\n\n")
    if out:
        creds = dict(line.split("=", 1) for line in out.splitlines() if "=" in line)
        if creds.get("username") and creds.get("password"):
            return _with_userinfo(parsed, creds["username"], creds["password"])

    token = (_run_helper(["gh", "auth", "token", "--hostname", parsed.hostname]) or "").strip()
    if token:
        return _with_userinfo(parsed, "x-access-token", token)
    return url


def check_reachable(repo: RepoConfig) -> None:
    """Verify that an HTTP(S) repo URL answers before syncing it.

    Only public repositories are supported over HTTPS; private ones need
    an SSH URL.  Other URL kinds are not checked.

    Raises:
        ResolveError: If the URL cannot be reached or does not answer 200.
    """
    if not repo.is_https:
        return
    check_url = repo.url[:-4] if repo.url.endswith(".git") else repo.url
    try:
        with urlopen(Request(check_url, method="HEAD"), timeout=REACHABILITY_TIMEOUT) as resp:
            status = resp.status
    except HTTPError as exc:
        status = exc.code
    except (URLError, OSError) as exc:
        raise ResolveError(f"repo {repo.name}: HTTPS URL is not reachable: {exc}") from exc
    if status != 200:
        raise ResolveError(
            f"repo {repo.name}: HTTPS URL is not publicly accessible (status {status}); "
            "use an SSH URL with ssh_key_path for private repos"
        )
