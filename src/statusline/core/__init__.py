"""Core modules for the statusline.

This package contains the shared plumbing:
    - config: YAML configuration, loaded once per process
    - errors: Error taxonomy
    - hook_state: Hook-written compaction signals
    - paths: XDG-compliant path resolution
    - retry: Exponential-backoff retry policy
"""

from . import config
from . import errors
from . import hook_state
from . import paths
from . import retry

__all__ = [
    "config",
    "errors",
    "hook_state",
    "paths",
    "retry",
]
