"""Branch and tag name patterns.

A pattern is one of:

* ``*`` -- matches every name.
* ``/regex/`` -- a regular expression between slashes, searched (not
  anchored) in the name.  Add ``^``/``$`` yourself when needed.
* anything else -- a literal name, compared exactly.
"""

from __future__ import annotations

import re
from collections.abc import Iterable
from dataclasses import dataclass, field

from .exceptions import ConfigError

WILDCARD = "*"


@dataclass(frozen=True)
class Pattern:
    """A compiled match specification."""
    raw: str
    _regex: re.Pattern | None = field(default=None, compare=False, repr=False)

    @classmethod
    def parse(cls, raw: str) -> Pattern:
        """Build a pattern from its configured string, compiling regexes.

        Raises:
            ConfigError: If *raw* is a ``/.../`` pattern that does not compile.
        """
        if not isinstance(raw, str):
            raise ConfigError(f"pattern must be a string, got {type(raw).__name__}")
        if not _is_regex(raw):
            return cls(raw)
        try:
            regex = re.compile(raw[1:-1])
        except re.error as exc:
            raise ConfigError(f"invalid regex {raw!r}: {exc}") from exc
        return cls(raw, regex)

    @property
    def kind(self) -> str:
        """``"wildcard"``, ``"regex"`` or ``"literal"``."""
        if self.raw == WILDCARD:
            return "wildcard"
        if self._regex is not None:
            return "regex"
        return "literal"

    def matches(self, name: str) -> bool:
        if self.raw == WILDCARD:
            return True
        if self._regex is not None:
            return self._regex.search(name) is not None
        return self.raw == name

    def __str__(self) -> str:
        return self.raw


def _is_regex(raw: str) -> bool:
    # "/" and "//" stay literal so they never become an empty regex.
    return len(raw) > 2 and raw.startswith("/") and raw.endswith("/")


def parse_patterns(raws: Iterable[str] | None) -> tuple[Pattern, ...]:
    """Compile a list of configured pattern strings."""
    return tuple(Pattern.parse(raw) for raw in raws or ())


def matches_any(name: str, patterns: Iterable[Pattern]) -> bool:
    """Return True if *name* matches at least one of *patterns*."""
    return any(p.matches(name) for p in patterns)
