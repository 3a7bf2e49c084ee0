"""Context usage estimation service."""

import logging
from datetime import datetime
from pathlib import Path
from typing import Optional, Tuple

from ..core import hook_state
from ..core.config import Config
from ..core.errors import StatuslineError
from .compaction import detect_compaction_state
from .learning import ContextLearner
from .models import CompactionState, ContextUsage
from .transcript import PathLike, get_token_breakdown, is_recently_modified
from .windows import effective_window, split_window

logger = logging.getLogger(__name__)


class ContextService:
    """Estimates how much of a model's context window a transcript uses.

    Combines the transcript's peak token count, the session's previous
    high-water mark (from the stats store), hook state and the resolved
    window size into one ContextUsage per invocation.

    Example:
        service = ContextService(config, store=store)
        usage = service.calculate_usage(
            "/path/to/transcript.jsonl",
            model_name="Claude Sonnet 4.5",
            session_id="abc",
        )
        if usage:
            print(f"{usage.percentage:.0f}%")
    """

    def __init__(
        self,
        config: Config,
        store=None,
        learner: Optional[ContextLearner] = None,
        hook_state_dir: Optional[Path] = None,
    ):
        """Initialize the service.

        Args:
            config: Loaded configuration.
            store: StatsStore used for the session high-water mark. Without
                one, compaction detection sees no history.
            learner: Adaptive learner. Defaults to one backed by ``store``
                when adaptive learning is enabled.
            hook_state_dir: Directory of hook state files. Defaults to the
                data dir.
        """
        self._config = config
        self._store = store
        if learner is None and store is not None and config.context.adaptive_learning:
            learner = store.learner()
        self._learner = learner
        self._hook_state_dir = hook_state_dir

    def get_context_window(self, model_name: Optional[str]) -> int:
        """Get the resolved (base) window for a model."""
        return effective_window(model_name, self._config, self._learner)

    def _session_history(self, session_id: Optional[str]) -> Tuple[Optional[int], Optional[int]]:
        """Get (high-water mark, peak since last compaction) for a session."""
        if not session_id or self._store is None:
            return None, None
        try:
            session = self._store.get_session(session_id)
        except StatuslineError as e:
            logger.warning(f"Cannot read token history for {session_id}: {e}")
            return None, None
        if session is None:
            return None, None
        return session.max_tokens_observed, session.cycle_peak_tokens

    def detect_compaction(
        self,
        transcript_path: PathLike,
        current_tokens: int,
        session_id: Optional[str],
        last_known_tokens: Optional[int],
        now: Optional[datetime] = None,
    ) -> CompactionState:
        """Classify compaction state from hook state, history and file recency."""
        state = None
        if session_id:
            state = hook_state.read_state(session_id, state_dir=self._hook_state_dir, now=now)
        recent = is_recently_modified(
            transcript_path, now=now.timestamp() if now is not None else None
        )
        return detect_compaction_state(current_tokens, last_known_tokens, recent, state)

    def calculate_usage(
        self,
        transcript_path: PathLike,
        model_name: Optional[str] = None,
        session_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Optional[ContextUsage]:
        """Calculate context usage for the current invocation.

        Args:
            transcript_path: Transcript (.jsonl) path.
            model_name: Model display name, if known.
            session_id: Session key for history and hook state.
            now: Current time (for tests).

        Returns:
            ContextUsage, or None when the transcript has no usable data.
        """
        context = self._config.context
        breakdown = get_token_breakdown(transcript_path, self._config.transcript.buffer_lines)
        if breakdown is None:
            return None
        total_tokens = breakdown.total()

        last_known, cycle_peak = self._session_history(session_id)
        compaction_state = self.detect_compaction(
            transcript_path, total_tokens, session_id, last_known, now
        )

        # Each compaction is judged against the peak of its own cycle
        if self._learner is not None and context.adaptive_learning and session_id and model_name:
            try:
                self._learner.observe(model_name, session_id, cycle_peak, total_tokens)
            except StatuslineError as e:
                logger.warning(f"Adaptive learning update failed: {e}")

        base_window = self.get_context_window(model_name)
        full_window, working_window = split_window(base_window, context)
        window = working_window if context.percentage_mode == "working" else full_window

        if window > 0:
            raw_pct = total_tokens / window * 100
        else:
            raw_pct = 100.0 if total_tokens > 0 else 0.0

        logger.debug(
            f"Context calculation: mode={context.percentage_mode}, tokens={total_tokens}, "
            f"base_window={base_window}, full_window={full_window}, "
            f"working_window={working_window}, buffer={context.buffer_size}, "
            f"adaptive_learning={context.adaptive_learning}, pct={raw_pct:.2f}"
        )

        return ContextUsage(
            percentage=max(0.0, min(100.0, raw_pct)),
            approaching_limit=raw_pct >= context.effective_threshold(),
            tokens_remaining=max(0, working_window - total_tokens),
            compaction_state=compaction_state,
            total_tokens=total_tokens,
            window_size=window,
        )
