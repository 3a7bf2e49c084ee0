"""Context tracking module for the statusline.

This module provides context window estimation with:
- Peak token extraction from transcript tails
- Compaction state detection
- Model-aware window resolution with optional adaptive learning
- Bounded percentage calculations (0-100%)
"""

from .compaction import detect_compaction_state
from .constants import DEFAULT_CONTEXT_WINDOW
from .formatting import burn_rate, format_duration, format_token_count, sanitize_for_terminal
from .learning import ContextLearner
from .models import CompactionState, ContextUsage, LearnedWindow, TokenBreakdown
from .service import ContextService
from .transcript import get_token_breakdown, parse_duration
from .windows import effective_window

__all__ = [
    "CompactionState",
    "ContextLearner",
    "ContextService",
    "ContextUsage",
    "DEFAULT_CONTEXT_WINDOW",
    "LearnedWindow",
    "TokenBreakdown",
    "burn_rate",
    "detect_compaction_state",
    "effective_window",
    "format_duration",
    "format_token_count",
    "get_token_breakdown",
    "parse_duration",
    "sanitize_for_terminal",
]
