"""Compaction state detection.

Classifies a transcript as normal, mid-compaction or just compacted from
a handful of signals. The function is pure: callers fetch the previous
high-water mark from the stats store and persist the new one themselves.
"""

import logging
from typing import Optional

from ..core.hook_state import HookState
from .constants import COMPACTION_DROP_RATIO
from .models import CompactionState

logger = logging.getLogger(__name__)


def token_drop_ratio(last_known_tokens: Optional[int], current_tokens: int) -> float:
    """Fraction of the previous token count that has disappeared (0 if none)."""
    if not last_known_tokens or last_known_tokens <= 0:
        return 0.0
    return max(0, last_known_tokens - current_tokens) / last_known_tokens


def detect_compaction_state(
    current_tokens: int,
    last_known_tokens: Optional[int],
    recently_modified: bool,
    hook_state: Optional[HookState] = None,
) -> CompactionState:
    """Classify the compaction state of a transcript.

    Rules, first match wins:
    1. A fresh hook state reporting "compacting" -> IN_PROGRESS.
    2. Token count dropped by more than half -> IN_PROGRESS if the transcript
       was just written, RECENTLY_COMPLETED otherwise.
    3. Transcript just written and the previous count is more than double the
       current one -> IN_PROGRESS.
    4. Otherwise, or with no previous count, NORMAL.

    Args:
        current_tokens: Token total seen in this invocation.
        last_known_tokens: Session high-water mark, or None if unseen.
        recently_modified: Whether the transcript changed in the last few seconds.
        hook_state: Fresh hook state for the session, if any.

    Returns:
        The detected CompactionState.
    """
    if hook_state is not None and hook_state.is_compacting:
        logger.debug(f"Compaction detected via hook (trigger: {hook_state.trigger})")
        return CompactionState.IN_PROGRESS

    if last_known_tokens is None:
        return CompactionState.NORMAL

    drop = token_drop_ratio(last_known_tokens, current_tokens)
    if drop > COMPACTION_DROP_RATIO:
        if recently_modified:
            logger.debug(
                f"Compaction in progress: tokens {last_known_tokens} -> {current_tokens} "
                f"({drop * 100:.1f}% drop), transcript just modified"
            )
            return CompactionState.IN_PROGRESS
        logger.debug(
            f"Compaction recently completed: tokens {last_known_tokens} -> {current_tokens} "
            f"({drop * 100:.1f}% drop)"
        )
        return CompactionState.RECENTLY_COMPLETED

    if recently_modified and last_known_tokens > current_tokens * 2:
        return CompactionState.IN_PROGRESS

    return CompactionState.NORMAL
