"""Adaptive context window learning.

Vendors' advertised window sizes are approximate and automatic compaction
fires somewhat below them. When adaptive learning is enabled, every
compaction-sized token drop records the peak reached just before it; the
mean of those peaks becomes the model's learned working window once enough
independent observations back it up.
"""

import logging
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Optional

from .compaction import token_drop_ratio
from .constants import COMPACTION_DROP_RATIO, MIN_COMPACTION_TOKENS
from .models import LearnedWindow

if TYPE_CHECKING:
    from ..stats.database import StatsDatabase
    from ..stats.store import StatsStore

logger = logging.getLogger(__name__)


def confidence_for(observations: int) -> float:
    """Confidence in a learned window after ``observations`` compactions.

    Linear in the observation count and clamped to [0, 1]: 0.1 after one,
    0.4 after three, 0.7 after five, 1.0 from seven on.
    """
    return round(max(0.0, min(1.0, 0.15 * observations - 0.05)), 4)


class ContextLearner:
    """Learns per-model compaction points from the stats database.

    Example:
        learner = ContextLearner(store)
        learner.observe("Claude Sonnet 4.5", session_id, previous_max=156_000,
                        current_tokens=42_000)
        window = learner.get_learned_window("Claude Sonnet 4.5", threshold=0.7)
    """

    def __init__(self, store: "StatsStore"):
        self._store = store

    def observe(
        self,
        model_name: str,
        session_id: str,
        previous_max: Optional[int],
        current_tokens: int,
    ) -> bool:
        """Record a compaction if the token count just collapsed.

        A drop of more than half from a peak of at least MIN_COMPACTION_TOKENS
        counts as one observation. The same session/peak pair is only counted
        once, however many invocations see it.

        Returns:
            True if a new observation was recorded.

        Raises:
            DatabaseError: If the database cannot be updated.
        """
        if not model_name or not previous_max or previous_max < MIN_COMPACTION_TOKENS:
            return False
        if token_drop_ratio(previous_max, current_tokens) <= COMPACTION_DROP_RATIO:
            return False

        now_iso = datetime.now(timezone.utc).isoformat(timespec="seconds")

        def record(db: "StatsDatabase") -> bool:
            with db.transaction() as conn:
                inserted = conn.execute(
                    "INSERT OR IGNORE INTO compaction_observations "
                    "(model_name, session_id, peak_tokens, observed_at) VALUES (?, ?, ?, ?)",
                    (model_name, session_id, previous_max, now_iso),
                ).rowcount
                if not inserted:
                    return False
                row = conn.execute(
                    "SELECT COUNT(*) AS n, AVG(peak_tokens) AS mean FROM compaction_observations "
                    "WHERE model_name = ?",
                    (model_name,),
                ).fetchone()
                count = row["n"]
                conn.execute(
                    "INSERT INTO learned_context_windows (model_name, compaction_point, "
                    "observation_count, confidence, first_seen, last_updated) "
                    "VALUES (?, ?, ?, ?, ?, ?) ON CONFLICT(model_name) DO UPDATE SET "
                    "compaction_point = excluded.compaction_point, "
                    "observation_count = excluded.observation_count, "
                    "confidence = excluded.confidence, last_updated = excluded.last_updated",
                    (model_name, int(round(row["mean"])), count, confidence_for(count), now_iso, now_iso),
                )
                return True

        recorded = self._store.run_db(f"learn compaction for {model_name}", record)
        if recorded:
            logger.debug(
                f"Learned compaction for {model_name}: peak {previous_max} -> {current_tokens}"
            )
        return recorded

    def get_learned(self, model_name: str) -> Optional[LearnedWindow]:
        """Get a model's learned window regardless of confidence."""

        def fetch(db: "StatsDatabase") -> Optional[LearnedWindow]:
            row = db.conn.execute(
                "SELECT * FROM learned_context_windows WHERE model_name = ?", (model_name,)
            ).fetchone()
            if row is None:
                return None
            return LearnedWindow(
                model_name=row["model_name"],
                compaction_point=row["compaction_point"],
                observation_count=row["observation_count"],
                confidence=row["confidence"],
                last_updated=row["last_updated"],
            )

        return self._store.run_db(f"read learned window for {model_name}", fetch)

    def get_learned_window(self, model_name: str, threshold: float) -> Optional[int]:
        """Get a model's learned compaction point if confidence >= threshold."""
        learned = self.get_learned(model_name)
        if learned is None or learned.confidence < threshold:
            return None
        return learned.compaction_point

    def reset(self, model_name: Optional[str] = None) -> int:
        """Forget learned data for one model, or for all models.

        Returns:
            Number of learned windows removed.
        """

        def clear(db: "StatsDatabase") -> int:
            with db.transaction() as conn:
                if model_name is None:
                    conn.execute("DELETE FROM compaction_observations")
                    return conn.execute("DELETE FROM learned_context_windows").rowcount
                conn.execute("DELETE FROM compaction_observations WHERE model_name = ?", (model_name,))
                return conn.execute(
                    "DELETE FROM learned_context_windows WHERE model_name = ?", (model_name,)
                ).rowcount

        return self._store.run_db("reset learned windows", clear)
