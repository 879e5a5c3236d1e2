"""gfetch: selectively mirror remote git repositories."""

__version__ = "0.1.0"

from .config import Config, RepoConfig, load
from .exceptions import (
    CollisionError,
    ConfigError,
    GfetchError,
    RefSyncError,
    ResolveError,
    SyncCancelled,
)
from .patterns import Pattern, matches_any
from .report import Reporter, SyncStats
from .syncer import Syncer, SyncOptions, SyncResult

__all__ = [
    "Config", "RepoConfig", "load",
    "GfetchError", "ConfigError", "CollisionError", "ResolveError", "RefSyncError", "SyncCancelled",
    "Pattern", "matches_any",
    "Reporter", "SyncStats",
    "Syncer", "SyncOptions", "SyncResult",
]
