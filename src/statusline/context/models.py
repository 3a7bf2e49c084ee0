"""Data models for context tracking."""

from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional


@dataclass
class TokenBreakdown:
    """Token counts from one assistant message's usage block."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    def total(self) -> int:
        """Total tokens (input + output + both cache kinds)."""
        return (
            self.input_tokens
            + self.output_tokens
            + self.cache_read_tokens
            + self.cache_creation_tokens
        )

    @classmethod
    def from_usage(cls, usage: dict) -> "TokenBreakdown":
        """Build from a transcript ``usage`` dictionary.

        Missing, null or negative counts are treated as zero.
        """

        def count(key: str) -> int:
            value = usage.get(key)
            if isinstance(value, bool) or not isinstance(value, (int, float)):
                return 0
            return max(0, int(value))

        return cls(
            input_tokens=count("input_tokens"),
            output_tokens=count("output_tokens"),
            cache_read_tokens=count("cache_read_input_tokens"),
            cache_creation_tokens=count("cache_creation_input_tokens"),
        )


class CompactionState(Enum):
    """Where the transcript is in the compaction cycle."""

    NORMAL = "normal"
    IN_PROGRESS = "in_progress"
    RECENTLY_COMPLETED = "recently_completed"


@dataclass
class ContextUsage:
    """Context window usage for one invocation."""

    percentage: float  # Bounded 0-100
    approaching_limit: bool
    tokens_remaining: int  # Left in the working window
    compaction_state: CompactionState = CompactionState.NORMAL
    total_tokens: int = 0
    window_size: int = 0  # Window the percentage was computed against

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "percentage": self.percentage,
            "approaching_limit": self.approaching_limit,
            "tokens_remaining": self.tokens_remaining,
            "compaction_state": self.compaction_state.value,
            "total_tokens": self.total_tokens,
            "window_size": self.window_size,
        }


@dataclass
class LearnedWindow:
    """A model's learned compaction point."""

    model_name: str
    compaction_point: int
    observation_count: int
    confidence: float
    last_updated: Optional[str] = None
