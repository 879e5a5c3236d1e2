"""YAML configuration: loading, default inheritance and validation.

A configuration is either a single YAML file::

    defaults:
      local_path: /srv/mirrors/app
      stale_age: 90d
    repos:
      - name: app
        url: git@github.com:example/app.git
        ssh_key_path: ~/.ssh/id_ed25519
        branches: [main, "/^release-/"]
        tags: ["*"]

or a directory holding an optional ``global.yaml`` (the defaults) and one
``<anything>/config.yaml`` per group of repos.

Defaults are folded into each repo exactly once, by :func:`merge`, and
the result is frozen into a :class:`RepoConfig`.  The sync engine only
ever sees fully resolved, validated descriptors.
"""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import Any

import yaml

from .exceptions import ConfigError
from .patterns import Pattern, matches_any, parse_patterns

logger = logging.getLogger(__name__)

DEFAULT_POLL_INTERVAL = timedelta(minutes=2)
MIN_POLL_INTERVAL = timedelta(seconds=10)
DEFAULT_STALE_AGE = timedelta(days=180)

# Keys a repo may inherit from the defaults section.
DEFAULT_KEYS = (
    "ssh_key_path",
    "ssh_known_hosts",
    "local_path",
    "poll_interval",
    "branches",
    "tags",
    "openvox",
    "prune",
    "prune_stale",
    "stale_age",
)
REPO_KEYS = ("name", "url", "checkout") + DEFAULT_KEYS


# ---------------------------------------------------------------------------
# Durations
# ---------------------------------------------------------------------------

_DURATION_UNITS = {
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "d": timedelta(days=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h|d)")


def parse_duration(value: str | int | float | timedelta | None) -> timedelta | None:
    """Parse ``"180d"``, ``"1h30m"``, ``"90s"`` or ``"500ms"``.

    Bare numbers are seconds.  ``None`` and ``""`` return ``None``.
    """
    if value is None or value == "":
        return None
    if isinstance(value, timedelta):
        return value
    if isinstance(value, bool):
        raise ConfigError(f"invalid duration {value!r}")
    if isinstance(value, (int, float)):
        return timedelta(seconds=value)
    text = str(value).strip()
    pos = 0
    total = timedelta()
    for m in _DURATION_PART.finditer(text):
        if m.start() != pos:
            break
        total += float(m.group(1)) * _DURATION_UNITS[m.group(2)]
        pos = m.end()
    if pos == 0 or pos != len(text):
        raise ConfigError(f"invalid duration {value!r} (use e.g. 30s, 10m, 2h, 180d)")
    return total


def format_duration(value: timedelta | None) -> str | None:
    """Render a timedelta the way :func:`parse_duration` reads it."""
    if value is None:
        return None
    seconds = int(value.total_seconds())
    if seconds and seconds % 86400 == 0:
        return f"{seconds // 86400}d"
    if seconds and seconds % 3600 == 0:
        return f"{seconds // 3600}h"
    if seconds and seconds % 60 == 0:
        return f"{seconds // 60}m"
    return f"{seconds}s"


# ---------------------------------------------------------------------------
# Data structures
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class RepoConfig:
    """Fully resolved sync settings for one repository."""
    name: str
    url: str
    local_path: str
    branches: tuple[Pattern, ...] = ()
    tags: tuple[Pattern, ...] = ()
    checkout: str | None = None
    openvox: bool = False
    prune: bool = False
    prune_stale: bool = False
    stale_age: timedelta | None = None
    poll_interval: timedelta = DEFAULT_POLL_INTERVAL
    ssh_key_path: str | None = None
    ssh_known_hosts: str | None = None

    @property
    def is_https(self) -> bool:
        return self.url.startswith(("https://", "http://"))

    @property
    def is_ssh(self) -> bool:
        return is_ssh_url(self.url)

    def to_dict(self) -> dict:
        out: dict[str, Any] = {"name": self.name, "url": self.url}
        if self.ssh_key_path:
            out["ssh_key_path"] = self.ssh_key_path
        if self.ssh_known_hosts:
            out["ssh_known_hosts"] = self.ssh_known_hosts
        out["local_path"] = self.local_path
        out["poll_interval"] = format_duration(self.poll_interval)
        if self.branches:
            out["branches"] = [p.raw for p in self.branches]
        if self.tags:
            out["tags"] = [p.raw for p in self.tags]
        if self.checkout:
            out["checkout"] = self.checkout
        out["openvox"] = self.openvox
        out["prune"] = self.prune
        out["prune_stale"] = self.prune_stale
        if self.stale_age is not None:
            out["stale_age"] = format_duration(self.stale_age)
        return out


@dataclass(frozen=True)
class Config:
    """A validated set of repositories."""
    repos: tuple[RepoConfig, ...] = ()
    defaults: dict = field(default_factory=dict, compare=False)

    def get(self, name: str) -> RepoConfig | None:
        for repo in self.repos:
            if repo.name == name:
                return repo
        return None

    def to_dict(self) -> dict:
        return {"repos": [r.to_dict() for r in self.repos]}


def is_ssh_url(url: str) -> bool:
    """True for ``ssh://`` URLs and scp-style ``user@host:path``."""
    if url.startswith(("ssh://", "git+ssh://", "ssh+git://")):
        return True
    return re.match(r"^[\w.-]+@[\w.-]+:", url) is not None


# ---------------------------------------------------------------------------
# Default inheritance
# ---------------------------------------------------------------------------

def _is_unset(value) -> bool:
    return value is None or value == "" or value == []


def merge(specific: dict, defaults: dict | None) -> dict:
    """Return *specific* with every unset inheritable key taken from *defaults*.

    A key is unset when it is missing, null, an empty string or an empty
    list.  Neither argument is modified.
    """
    effective = dict(specific)
    for key in DEFAULT_KEYS:
        if _is_unset(effective.get(key)) and defaults and not _is_unset(defaults.get(key)):
            effective[key] = defaults[key]
    return effective


# ---------------------------------------------------------------------------
# Loading
# ---------------------------------------------------------------------------

def _read_yaml(path: Path) -> dict:
    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as exc:
        raise ConfigError(f"parsing {path}: {exc}") from exc
    except OSError as exc:
        raise ConfigError(f"reading {path}: {exc}") from exc
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigError(f"{path}: expected a mapping at top level")
    return data


def _repo_list(data: dict, source) -> list[dict]:
    repos = data.get("repos") or []
    if not isinstance(repos, list) or not all(isinstance(r, dict) for r in repos):
        raise ConfigError(f"{source}: 'repos' must be a list of mappings")
    return repos


def _file_defaults(data: dict, source) -> dict:
    defaults = data.get("defaults")
    if defaults is not None:
        if not isinstance(defaults, dict):
            raise ConfigError(f"{source}: 'defaults' must be a mapping")
        return defaults
    # Legacy layout: default keys at the top level of the file.
    return {k: data[k] for k in DEFAULT_KEYS if k in data}


def load(path: str | os.PathLike) -> Config:
    """Load, merge and validate a configuration file or directory.

    Raises:
        ConfigError: On unreadable files, bad YAML, or failed validation.
    """
    path = Path(path)
    if not path.exists():
        raise ConfigError(f"config path not found: {path}")
    if path.is_dir():
        defaults, raw_repos = _load_dir(path)
    else:
        data = _read_yaml(path)
        defaults = _file_defaults(data, path)
        raw_repos = _repo_list(data, path)
    return build_config(raw_repos, defaults)


def _load_dir(path: Path) -> tuple[dict, list[dict]]:
    defaults: dict = {}
    global_path = path / "global.yaml"
    if global_path.exists():
        defaults = _read_yaml(global_path)
    raw_repos: list[dict] = []
    for sub in sorted(path.glob("*/config.yaml")):
        raw_repos.extend(_repo_list(_read_yaml(sub), sub))
    return defaults, raw_repos


def build_config(raw_repos: list[dict], defaults: dict | None = None) -> Config:
    """Resolve and validate raw repo mappings into a :class:`Config`."""
    if not raw_repos:
        raise ConfigError("no repos configured")
    repos = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_repos):
        unknown = set(raw) - set(REPO_KEYS)
        if unknown:
            raise ConfigError(
                f"repo at index {index}: unknown key(s) {', '.join(sorted(unknown))}"
            )
        repo = build_repo(merge(raw, defaults), index)
        if repo.name in seen:
            raise ConfigError(f"duplicate repo name: {repo.name}")
        seen.add(repo.name)
        repos.append(repo)
    return Config(repos=tuple(repos), defaults=dict(defaults or {}))


def _as_list(value, key: str, name: str) -> list:
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if not isinstance(value, list):
        raise ConfigError(f"repo {name}: {key} must be a list")
    return [str(v) for v in value]


def build_repo(raw: dict, index: int = 0) -> RepoConfig:
    """Validate one merged repo mapping and freeze it."""
    name = raw.get("name")
    if not name:
        raise ConfigError(f"repo at index {index}: name is required")
    name = str(name)

    url = raw.get("url")
    if not url:
        raise ConfigError(f"repo {name}: url is required")
    url = str(url)

    local_path = raw.get("local_path")
    if not local_path:
        raise ConfigError(f"repo {name}: local_path is required")
    local_path = os.path.expanduser(str(local_path))

    ssh_key_path = raw.get("ssh_key_path") or None
    if ssh_key_path:
        ssh_key_path = os.path.expanduser(str(ssh_key_path))
    ssh_known_hosts = raw.get("ssh_known_hosts") or None
    if ssh_known_hosts:
        ssh_known_hosts = os.path.expanduser(str(ssh_known_hosts))
    if is_ssh_url(url):
        if not ssh_key_path:
            raise ConfigError(f"repo {name}: ssh_key_path is required")
        if not os.path.exists(ssh_key_path):
            raise ConfigError(f"repo {name}: ssh key not found at {ssh_key_path}")

    try:
        poll_interval = parse_duration(raw.get("poll_interval"))
        stale_age = parse_duration(raw.get("stale_age"))
        branches = parse_patterns(_as_list(raw.get("branches"), "branches", name))
        tags = parse_patterns(_as_list(raw.get("tags"), "tags", name))
    except ConfigError as exc:
        raise ConfigError(f"repo {name}: {exc}") from exc

    if poll_interval is None:
        poll_interval = DEFAULT_POLL_INTERVAL
    elif poll_interval < MIN_POLL_INTERVAL:
        raise ConfigError(
            f"repo {name}: poll_interval must be at least 10s, got {format_duration(poll_interval)}"
        )

    prune_stale = bool(raw.get("prune_stale", False))
    if prune_stale and not stale_age:
        stale_age = DEFAULT_STALE_AGE

    if not branches and not tags:
        raise ConfigError(f"repo {name}: at least one branch or tag pattern is required")

    openvox = bool(raw.get("openvox", False))
    checkout = raw.get("checkout") or None
    if checkout is not None:
        checkout = str(checkout)
        if openvox:
            logger.warning(
                "repo %s has both openvox and checkout set; checkout is ignored in openvox mode",
                name,
            )
        elif not matches_any(checkout, branches) and not matches_any(checkout, tags):
            raise ConfigError(
                f"repo {name}: checkout {checkout!r} does not match any configured branch or tag pattern"
            )

    return RepoConfig(
        name=name,
        url=url,
        local_path=local_path,
        branches=branches,
        tags=tags,
        checkout=checkout,
        openvox=openvox,
        prune=bool(raw.get("prune", False)),
        prune_stale=prune_stale,
        stale_age=stale_age,
        poll_interval=poll_interval,
        ssh_key_path=ssh_key_path,
        ssh_known_hosts=ssh_known_hosts,
    )
