"""Data models for the stats ledger."""

from dataclasses import dataclass, field
from typing import List, Optional


@dataclass
class SessionRecord:
    """Latest absolute values reported for one session."""

    session_id: str
    start_time: str
    last_updated: str
    cost: float = 0.0
    lines_added: int = 0
    lines_removed: int = 0
    max_tokens_observed: int = 0
    model_name: Optional[str] = None
    # Peak since the most recent compaction; resets when tokens drop by half
    cycle_peak_tokens: int = 0


@dataclass
class PeriodStats:
    """Totals for one calendar day ("2025-08-25") or month ("2025-08")."""

    period: str
    total_cost: float = 0.0
    total_lines_added: int = 0
    total_lines_removed: int = 0
    session_ids: List[str] = field(default_factory=list)

    @property
    def session_count(self) -> int:
        return len(self.session_ids)


@dataclass
class AllTimeStats:
    """Totals across every session ever recorded."""

    total_cost: float = 0.0
    session_count: int = 0
    since: Optional[str] = None


@dataclass
class RecordResult:
    """What a record() call changed."""

    session_id: str
    is_new_session: bool
    cost_delta: float
    lines_added_delta: int
    lines_removed_delta: int


@dataclass
class PruneResult:
    """Rows removed by retention pruning."""

    sessions: int = 0
    daily: int = 0
    monthly: int = 0

    @property
    def total(self) -> int:
        return self.sessions + self.daily + self.monthly
