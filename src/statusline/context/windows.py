"""Context window resolution for a model.

Resolution order:
1. Exact match in ``context.model_windows``
2. Learned compaction point (adaptive learning, confident enough)
3. Family/version heuristic on the model name
4. ``context.window_size``
"""

import logging
import re
from dataclasses import dataclass
from typing import TYPE_CHECKING, Optional, Tuple

from ..core.config import Config, ContextConfig
from ..core.errors import StatuslineError
from .constants import (
    KNOWN_FAMILIES,
    LEGACY_CONTEXT_WINDOW,
    MODERN_CONTEXT_WINDOW,
    VERSIONED_FAMILIES,
)

if TYPE_CHECKING:
    from .learning import ContextLearner

logger = logging.getLogger(__name__)

# A single-digit major version, optionally ".N" or "-N" minor, not part of a
# longer number (so the "20241022" date suffix never matches).
_VERSION_RE = re.compile(r"(?<![\d.])(\d)(?:[.\-](\d)(?!\d))?(?![\d])")


@dataclass(frozen=True)
class ModelInfo:
    """Family and version parsed from a model name."""

    family: str
    major: int
    minor: int = 0


def parse_model_name(name: Optional[str]) -> Optional[ModelInfo]:
    """Parse a model display name or identifier.

    Handles "Claude 3.5 Sonnet", "Opus 4.1", "claude-3-5-sonnet-20241022"
    and "claude-sonnet-4-5-20250929".

    Returns:
        ModelInfo, or None if no known family is named.
    """
    if not name:
        return None
    lowered = name.lower()
    family = next((f for f in KNOWN_FAMILIES if f.lower() in lowered), None)
    if family is None:
        return None

    match = _VERSION_RE.search(lowered)
    if match is None:
        return ModelInfo(family=family, major=0)
    return ModelInfo(
        family=family,
        major=int(match.group(1)),
        minor=int(match.group(2)) if match.group(2) else 0,
    )


def heuristic_window(model_name: Optional[str], context: ContextConfig) -> int:
    """Get the window implied by a model's family and version.

    Sonnet and Opus 3.5 and later get 200K, older versions 160K. Haiku and
    unknown families use the configured default.
    """
    info = parse_model_name(model_name)
    if info is None or info.family not in VERSIONED_FAMILIES:
        return context.window_size
    if info.major >= 4 or (info.major == 3 and info.minor >= 5):
        return MODERN_CONTEXT_WINDOW
    return LEGACY_CONTEXT_WINDOW


def effective_window(
    model_name: Optional[str],
    config: Config,
    learner: Optional["ContextLearner"] = None,
) -> int:
    """Get the context window for a model.

    With adaptive learning enabled the returned value is the working window
    (where compaction triggers); otherwise it is the advertised full window.
    See split_window().

    Args:
        model_name: Model display name, if known.
        config: Loaded configuration.
        learner: Adaptive learner; consulted only when learning is enabled.

    Returns:
        Window size in tokens.
    """
    context = config.context
    if not model_name:
        return context.window_size

    if model_name in context.model_windows:
        return context.model_windows[model_name]

    if context.adaptive_learning and learner is not None:
        try:
            learned = learner.get_learned_window(
                model_name, context.learning_confidence_threshold
            )
        except StatuslineError as e:
            logger.warning(f"Learned window lookup failed for {model_name}: {e}")
            learned = None
        if learned is not None:
            return learned

    return heuristic_window(model_name, context)


def split_window(base_window: int, context: ContextConfig) -> Tuple[int, int]:
    """Split a resolved window into (full, working) sizes.

    With adaptive learning the base is the learned compaction point, so the
    full window adds the response buffer. Without it the base is the
    advertised window and the working window subtracts the buffer.
    """
    if context.adaptive_learning:
        return base_window + context.buffer_size, base_window
    return base_window, max(0, base_window - context.buffer_size)
