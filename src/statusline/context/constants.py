"""Context window sizes and detection thresholds."""

# Current Sonnet/Opus generations (3.5 and later)
MODERN_CONTEXT_WINDOW = 200_000

# Sonnet/Opus before 3.5
LEGACY_CONTEXT_WINDOW = 160_000

DEFAULT_CONTEXT_WINDOW = 200_000  # Fallback for unknown models

# Families whose window follows the version heuristic; others use the default
VERSIONED_FAMILIES = ("Sonnet", "Opus")
KNOWN_FAMILIES = ("Sonnet", "Opus", "Haiku")

# Transcript reading
SMALL_FILE_BYTES = 1024 * 1024
TAIL_BYTES_PER_LINE = 2048
MIN_TAIL_BYTES = 200 * 1024

# Compaction detection
RECENT_MODIFICATION_SECONDS = 10
COMPACTION_DROP_RATIO = 0.5

# Adaptive learning ignores drops from peaks below this
MIN_COMPACTION_TOKENS = 50_000
