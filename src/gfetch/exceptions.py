"""Exceptions for gfetch."""

from dulwich.errors import GitProtocolError, NotGitRepository


class GfetchError(Exception):
    """Base class for gfetch errors."""


class ConfigError(GfetchError):
    """Raised when the configuration is invalid.

    Configuration errors are detected before any local state is touched.
    """


class CollisionError(ConfigError):
    """Raised when two ref names sanitize to the same directory name."""


class ResolveError(GfetchError):
    """Raised when remote refs cannot be listed or the local repo cannot be opened."""


class RefSyncError(GfetchError):
    """Raised when a single branch or tag fails to fetch, resolve or check out."""


class SyncCancelled(Exception):
    """Raised when a sync run is aborted through its cancellation event."""


# Failures raised by dulwich transports and the filesystem underneath them.
TRANSPORT_ERRORS = (OSError, ValueError, GitProtocolError, NotGitRepository)
