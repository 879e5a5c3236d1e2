"""gfetch CLI: selectively mirror remote git repositories."""

from ._helpers import main  # noqa: F401  entry point

# Import command modules to register Click commands with the main group.
from . import _sync, _config, _daemon  # noqa: F401
