"""Durable usage statistics.

    - database: SQLite ledger (primary)
    - json_store: JSON mirror (backup)
    - migrations: Schema migrations ledger
    - store: Dual-sink store with retries and corruption recovery
"""

from .database import StatsDatabase
from .json_store import JsonStatsMirror
from .models import AllTimeStats, PeriodStats, PruneResult, RecordResult, SessionRecord
from .store import StatsStore

__all__ = [
    "AllTimeStats",
    "JsonStatsMirror",
    "PeriodStats",
    "PruneResult",
    "RecordResult",
    "SessionRecord",
    "StatsDatabase",
    "StatsStore",
]
