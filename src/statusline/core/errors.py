"""Error types for the statusline engine."""


class StatuslineError(Exception):
    """Base class for all statusline errors."""

    pass


class InvalidPathError(StatuslineError):
    """A path failed validation (null bytes, unresolvable, wrong type or extension)."""

    pass


class ConfigError(StatuslineError):
    """Configuration file or value is malformed."""

    pass


class DatabaseError(StatuslineError):
    """SQLite store failed (connection, lock timeout after retries, corruption)."""

    pass


class StatsIOError(StatuslineError):
    """Filesystem failure on the JSON mirror or hook state files."""

    pass
