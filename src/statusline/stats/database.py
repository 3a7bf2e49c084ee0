"""SQLite ledger for session, daily, monthly and all-time statistics.

Every statusline invocation is a separate short-lived process, often several
at once (one per terminal pane). The database runs in WAL mode with a busy
timeout, and each write happens in one ``BEGIN IMMEDIATE`` transaction so
other processes only ever see fully applied deltas.

Methods raise raw ``sqlite3`` errors; StatsStore decides what is retried,
what triggers corruption recovery, and what is reported.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, Optional

from ..core.paths import ensure_directory
from .migrations import apply_migrations, current_version
from .models import AllTimeStats, PeriodStats, PruneResult, RecordResult, SessionRecord

logger = logging.getLogger(__name__)


def utc_iso(timestamp: datetime) -> str:
    """Normalize a timestamp to a UTC ISO 8601 string (naive means local time)."""
    return timestamp.astimezone(timezone.utc).isoformat(timespec="seconds")


def day_key(timestamp: datetime) -> str:
    return timestamp.strftime("%Y-%m-%d")


def month_key(timestamp: datetime) -> str:
    return timestamp.strftime("%Y-%m")


def is_corruption_error(error: BaseException) -> bool:
    """Check whether an sqlite3 error means the file itself is unusable.

    OperationalError (locked, busy, I/O) is transient and excluded.
    """
    if isinstance(error, sqlite3.OperationalError):
        return False
    if not isinstance(error, sqlite3.DatabaseError):
        return False
    message = str(error).lower()
    return "not a database" in message or "malformed" in message or "corrupt" in message


def remove_database_files(path: Path) -> None:
    """Delete a database file along with its WAL and shared-memory files."""
    for suffix in ("", "-wal", "-shm"):
        try:
            Path(f"{path}{suffix}").unlink()
        except FileNotFoundError:
            pass


def coerce_float(value: Any, default: float = 0.0) -> float:
    """Read a number from an untrusted document; anything else is ``default``."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return float(value)


def coerce_int(value: Any, default: int = 0) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return int(value)


def coerce_str(value: Any) -> Optional[str]:
    return value if isinstance(value, str) else None


# New cycle peak for a token reading: unchanged for no reading, restarted
# after a more-than-half drop, otherwise the running maximum.
_CYCLE_PEAK_SQL = (
    "CASE WHEN ? <= 0 THEN cycle_peak_tokens "
    "WHEN ? * 2 < cycle_peak_tokens THEN ? "
    "ELSE MAX(cycle_peak_tokens, ?) END"
)


def _take_tombstone(conn: sqlite3.Connection, session_id: str) -> Optional[sqlite3.Row]:
    """Remove and return a pruned session's remembered absolutes, if any."""
    row = conn.execute(
        "SELECT * FROM known_sessions WHERE session_id = ?", (session_id,)
    ).fetchone()
    if row is not None:
        conn.execute("DELETE FROM known_sessions WHERE session_id = ?", (session_id,))
    return row


class StatsDatabase:
    """Connection to the stats ledger.

    Example:
        with StatsDatabase(path) as db:
            db.record("abc", cost=1.25, lines_added=10, lines_removed=2,
                      timestamp=datetime.now().astimezone())
            print(db.get_all_time().total_cost)
    """

    def __init__(self, path: Path, busy_timeout_ms: int = 10_000):
        """Open (creating if needed) and migrate the database.

        Args:
            path: Database file path.
            busy_timeout_ms: How long a blocked writer waits for the lock.
        """
        self.path = Path(path)
        self.busy_timeout_ms = busy_timeout_ms
        self.conn: Optional[sqlite3.Connection] = None
        self._open()

    def _open(self) -> None:
        ensure_directory(self.path.parent)
        conn = sqlite3.connect(
            str(self.path),
            timeout=self.busy_timeout_ms / 1000.0,
            isolation_level=None,
        )
        try:
            conn.row_factory = sqlite3.Row
            conn.execute(f"PRAGMA busy_timeout = {int(self.busy_timeout_ms)}")
            conn.execute("PRAGMA journal_mode = WAL")
            conn.execute("PRAGMA synchronous = NORMAL")
            apply_migrations(conn)
        except Exception:
            conn.close()
            raise
        self.conn = conn

    def close(self) -> None:
        if self.conn is not None:
            self.conn.close()
            self.conn = None

    def __enter__(self) -> "StatsDatabase":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def recreate(self) -> None:
        """Discard the database file (and WAL/SHM) and start a fresh one."""
        self.close()
        remove_database_files(self.path)
        logger.warning(f"Recreated stats database at {self.path}")
        self._open()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Run a block inside ``BEGIN IMMEDIATE`` ... ``COMMIT``.

        The write lock is taken up front, so a blocked writer waits for the
        busy timeout instead of failing on a lock upgrade mid-transaction.
        """
        if self.conn is None:
            raise sqlite3.ProgrammingError("Database is closed")
        self.conn.execute("BEGIN IMMEDIATE")
        try:
            yield self.conn
        except BaseException:
            if self.conn.in_transaction:
                self.conn.execute("ROLLBACK")
            raise
        else:
            self.conn.execute("COMMIT")

    def _query_one(self, sql: str, params: tuple = ()) -> Optional[sqlite3.Row]:
        if self.conn is None:
            raise sqlite3.ProgrammingError("Database is closed")
        return self.conn.execute(sql, params).fetchone()

    def record(
        self,
        session_id: str,
        cost: float,
        lines_added: int,
        lines_removed: int,
        timestamp: datetime,
        max_tokens: Optional[int] = None,
        model_name: Optional[str] = None,
    ) -> RecordResult:
        """Record a session's latest absolute values.

        The session row takes the new absolutes. Daily, monthly and all-time
        totals receive only the change since the previously stored values, so
        re-reporting the same cumulative numbers never double counts. A
        session whose row was pruned is resumed from its remembered
        absolutes rather than counted again.

        Args:
            session_id: Session key.
            cost: Session cost so far (USD).
            lines_added: Lines added so far in the session.
            lines_removed: Lines removed so far in the session.
            timestamp: When the values were reported; picks the day/month bucket.
            max_tokens: Token total seen now; the stored high-water mark keeps
                the maximum.
            model_name: Model in use, if known.

        Returns:
            RecordResult with the applied deltas.
        """
        now_iso = utc_iso(timestamp)
        day = day_key(timestamp)
        month = month_key(timestamp)
        tokens = max(0, max_tokens or 0)

        with self.transaction() as conn:
            row = conn.execute(
                "SELECT cost, lines_added, lines_removed FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
            tombstone = _take_tombstone(conn, session_id) if row is None else None
            previous = row if row is not None else tombstone
            is_new = previous is None
            prev_cost = previous["cost"] if previous else 0.0
            prev_added = previous["lines_added"] if previous else 0
            prev_removed = previous["lines_removed"] if previous else 0

            cost_delta = cost - prev_cost
            added_delta = lines_added - prev_added
            removed_delta = lines_removed - prev_removed

            if row is None:
                start_time = (tombstone["start_time"] if tombstone else None) or now_iso
                max_seen = max(tokens, tombstone["max_tokens_observed"] if tombstone else 0)
                conn.execute(
                    "INSERT INTO sessions (session_id, start_time, last_updated, cost, "
                    "lines_added, lines_removed, max_tokens_observed, model_name, "
                    "cycle_peak_tokens) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session_id, start_time, now_iso, cost, lines_added, lines_removed,
                        max_seen, model_name, tokens,
                    ),
                )
            else:
                conn.execute(
                    "UPDATE sessions SET last_updated = ?, cost = ?, lines_added = ?, "
                    "lines_removed = ?, max_tokens_observed = MAX(max_tokens_observed, ?), "
                    f"cycle_peak_tokens = {_CYCLE_PEAK_SQL}, "
                    "model_name = COALESCE(?, model_name) WHERE session_id = ?",
                    (now_iso, cost, lines_added, lines_removed, tokens)
                    + (tokens,) * 4
                    + (model_name, session_id),
                )

            for table, sessions_table, column, key in (
                ("daily_stats", "daily_sessions", "date", day),
                ("monthly_stats", "monthly_sessions", "month", month),
            ):
                conn.execute(
                    f"INSERT INTO {table} ({column}, total_cost, total_lines_added, total_lines_removed) "
                    f"VALUES (?, ?, ?, ?) ON CONFLICT({column}) DO UPDATE SET "
                    "total_cost = total_cost + excluded.total_cost, "
                    "total_lines_added = total_lines_added + excluded.total_lines_added, "
                    "total_lines_removed = total_lines_removed + excluded.total_lines_removed",
                    (key, cost_delta, added_delta, removed_delta),
                )
                conn.execute(
                    f"INSERT OR IGNORE INTO {sessions_table} ({column}, session_id) VALUES (?, ?)",
                    (key, session_id),
                )

            conn.execute(
                "UPDATE all_time_stats SET total_cost = total_cost + ?, "
                "session_count = session_count + ?, since = COALESCE(since, ?) WHERE id = 1",
                (cost_delta, 1 if is_new else 0, now_iso),
            )

        return RecordResult(
            session_id=session_id,
            is_new_session=is_new,
            cost_delta=cost_delta,
            lines_added_delta=added_delta,
            lines_removed_delta=removed_delta,
        )

    def update_max_tokens(
        self,
        session_id: str,
        tokens: int,
        timestamp: datetime,
        model_name: Optional[str] = None,
    ) -> int:
        """Raise a session's token high-water mark without touching costs.

        An unseen session is created with zero absolutes and counted once in
        the all-time session count; a pruned one is restored from its
        remembered absolutes without being counted again.

        Returns:
            The stored high-water mark after the update.
        """
        now_iso = utc_iso(timestamp)
        tokens = max(0, tokens)
        with self.transaction() as conn:
            exists = conn.execute(
                "SELECT 1 FROM sessions WHERE session_id = ?", (session_id,)
            ).fetchone()
            if exists is None:
                tombstone = _take_tombstone(conn, session_id)
                conn.execute(
                    "INSERT INTO sessions (session_id, start_time, last_updated, cost, "
                    "lines_added, lines_removed, max_tokens_observed, model_name, "
                    "cycle_peak_tokens) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        session_id,
                        (tombstone["start_time"] if tombstone else None) or now_iso,
                        now_iso,
                        tombstone["cost"] if tombstone else 0.0,
                        tombstone["lines_added"] if tombstone else 0,
                        tombstone["lines_removed"] if tombstone else 0,
                        max(tokens, tombstone["max_tokens_observed"] if tombstone else 0),
                        model_name,
                        tokens,
                    ),
                )
                if tombstone is None:
                    conn.execute(
                        "UPDATE all_time_stats SET session_count = session_count + 1, "
                        "since = COALESCE(since, ?) WHERE id = 1",
                        (now_iso,),
                    )
            else:
                conn.execute(
                    "UPDATE sessions SET max_tokens_observed = MAX(max_tokens_observed, ?), "
                    f"cycle_peak_tokens = {_CYCLE_PEAK_SQL}, "
                    "model_name = COALESCE(?, model_name) WHERE session_id = ?",
                    (tokens,) + (tokens,) * 4 + (model_name, session_id),
                )
            row = conn.execute(
                "SELECT max_tokens_observed FROM sessions WHERE session_id = ?",
                (session_id,),
            ).fetchone()
        return row["max_tokens_observed"]

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        row = self._query_one("SELECT * FROM sessions WHERE session_id = ?", (session_id,))
        if row is None:
            return None
        return SessionRecord(
            session_id=row["session_id"],
            start_time=row["start_time"],
            last_updated=row["last_updated"],
            cost=row["cost"],
            lines_added=row["lines_added"],
            lines_removed=row["lines_removed"],
            max_tokens_observed=row["max_tokens_observed"],
            model_name=row["model_name"],
            cycle_peak_tokens=row["cycle_peak_tokens"],
        )

    def get_session_max_tokens(self, session_id: str) -> Optional[int]:
        """Get a session's token high-water mark, or None if none is on record."""
        row = self._query_one(
            "SELECT max_tokens_observed FROM sessions WHERE session_id = ?", (session_id,)
        )
        if row is None or not row["max_tokens_observed"]:
            return None
        return row["max_tokens_observed"]

    def get_session_duration(self, session_id: str) -> Optional[int]:
        """Get seconds between a session's first and latest record."""
        session = self.get_session(session_id)
        if session is None:
            return None
        try:
            start = datetime.fromisoformat(session.start_time)
            end = datetime.fromisoformat(session.last_updated)
        except ValueError:
            return None
        return max(0, int((end - start).total_seconds()))

    def _get_period(self, table: str, sessions_table: str, column: str, key: str) -> Optional[PeriodStats]:
        row = self._query_one(f"SELECT * FROM {table} WHERE {column} = ?", (key,))
        if row is None:
            return None
        session_ids = [
            r["session_id"]
            for r in self.conn.execute(
                f"SELECT session_id FROM {sessions_table} WHERE {column} = ? ORDER BY session_id",
                (key,),
            )
        ]
        return PeriodStats(
            period=key,
            total_cost=row["total_cost"],
            total_lines_added=row["total_lines_added"],
            total_lines_removed=row["total_lines_removed"],
            session_ids=session_ids,
        )

    def get_daily(self, date: str) -> Optional[PeriodStats]:
        """Get totals for a "YYYY-MM-DD" day."""
        return self._get_period("daily_stats", "daily_sessions", "date", date)

    def get_monthly(self, month: str) -> Optional[PeriodStats]:
        """Get totals for a "YYYY-MM" month."""
        return self._get_period("monthly_stats", "monthly_sessions", "month", month)

    def get_all_time(self) -> AllTimeStats:
        row = self._query_one("SELECT total_cost, session_count, since FROM all_time_stats WHERE id = 1")
        if row is None:
            return AllTimeStats()
        return AllTimeStats(
            total_cost=row["total_cost"],
            session_count=row["session_count"],
            since=row["since"],
        )

    def count_sessions(self) -> int:
        """Count session rows currently stored (after any pruning)."""
        return self._query_one("SELECT COUNT(*) FROM sessions")[0]

    def schema_version(self) -> int:
        if self.conn is None:
            raise sqlite3.ProgrammingError("Database is closed")
        return current_version(self.conn)

    def integrity_check(self) -> bool:
        row = self._query_one("PRAGMA integrity_check")
        return row is not None and row[0] == "ok"

    def prune(self, retention: Dict[str, int], now: Optional[datetime] = None) -> PruneResult:
        """Delete rows older than the retention horizons.

        Args:
            retention: Days to keep for "sessions", "daily" and "monthly";
                0 (or a missing key) keeps everything.
            now: Reference time. Defaults to the current local time.

        Returns:
            PruneResult with the number of rows deleted per kind.
        """
        now = now or datetime.now().astimezone()
        result = PruneResult()
        with self.transaction() as conn:
            days = retention.get("sessions", 0)
            if days > 0:
                cutoff = utc_iso(now - timedelta(days=days))
                conn.execute(
                    "INSERT OR REPLACE INTO known_sessions (session_id, start_time, cost, "
                    "lines_added, lines_removed, max_tokens_observed, pruned_at) "
                    "SELECT session_id, start_time, cost, lines_added, lines_removed, "
                    "max_tokens_observed, ? FROM sessions WHERE last_updated < ?",
                    (utc_iso(now), cutoff),
                )
                result.sessions = conn.execute(
                    "DELETE FROM sessions WHERE last_updated < ?", (cutoff,)
                ).rowcount

            days = retention.get("daily", 0)
            if days > 0:
                cutoff = day_key(now - timedelta(days=days))
                result.daily = conn.execute("DELETE FROM daily_stats WHERE date < ?", (cutoff,)).rowcount
                conn.execute("DELETE FROM daily_sessions WHERE date < ?", (cutoff,))

            days = retention.get("monthly", 0)
            if days > 0:
                cutoff = month_key(now - timedelta(days=days))
                result.monthly = conn.execute(
                    "DELETE FROM monthly_stats WHERE month < ?", (cutoff,)
                ).rowcount
                conn.execute("DELETE FROM monthly_sessions WHERE month < ?", (cutoff,))

        if result.total:
            logger.debug(
                f"Pruned {result.sessions} session(s), {result.daily} day(s), {result.monthly} month(s)"
            )
        return result

    def is_empty(self) -> bool:
        """Check whether no sessions have ever been recorded."""
        return self.get_all_time().session_count == 0 and self.count_sessions() == 0

    def import_json_document(self, document: Dict[str, Any]) -> int:
        """Seed an empty database from a JSON mirror document.

        Used once, when a database is created next to an existing stats.json
        (for example after corruption recovery). The document is untrusted:
        entries that are not mappings are skipped and non-numeric fields
        read as zero.

        Returns:
            Number of sessions imported.
        """
        sessions = _mapping(document.get("sessions"))
        pruned = _mapping(document.get("pruned_sessions"))
        all_time = _mapping(document.get("all_time"))
        imported = 0

        with self.transaction() as conn:
            for session_id, data in sessions.items():
                if not isinstance(data, dict):
                    logger.warning(f"Skipping malformed mirror session {session_id!r}")
                    continue
                last_updated = coerce_str(data.get("last_updated")) or ""
                max_tokens = coerce_int(data.get("max_tokens_observed"))
                conn.execute(
                    "INSERT OR IGNORE INTO sessions (session_id, start_time, last_updated, cost, "
                    "lines_added, lines_removed, max_tokens_observed, model_name, "
                    "cycle_peak_tokens) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                    (
                        str(session_id),
                        coerce_str(data.get("start_time")) or last_updated,
                        last_updated,
                        coerce_float(data.get("cost")),
                        coerce_int(data.get("lines_added")),
                        coerce_int(data.get("lines_removed")),
                        max_tokens,
                        coerce_str(data.get("model_name")),
                        max_tokens,
                    ),
                )
                imported += 1

            for session_id, data in pruned.items():
                if not isinstance(data, dict):
                    continue
                conn.execute(
                    "INSERT OR IGNORE INTO known_sessions (session_id, start_time, cost, "
                    "lines_added, lines_removed, max_tokens_observed, pruned_at) "
                    "VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        str(session_id),
                        coerce_str(data.get("start_time")),
                        coerce_float(data.get("cost")),
                        coerce_int(data.get("lines_added")),
                        coerce_int(data.get("lines_removed")),
                        coerce_int(data.get("max_tokens_observed")),
                        coerce_str(data.get("pruned_at")) or "",
                    ),
                )

            for table, sessions_table, column, section in (
                ("daily_stats", "daily_sessions", "date", "daily"),
                ("monthly_stats", "monthly_sessions", "month", "monthly"),
            ):
                for key, data in _mapping(document.get(section)).items():
                    if not isinstance(data, dict):
                        logger.warning(f"Skipping malformed mirror {section} bucket {key!r}")
                        continue
                    conn.execute(
                        f"INSERT OR IGNORE INTO {table} ({column}, total_cost, total_lines_added, "
                        "total_lines_removed) VALUES (?, ?, ?, ?)",
                        (
                            str(key),
                            coerce_float(data.get("total_cost")),
                            coerce_int(data.get("lines_added")),
                            coerce_int(data.get("lines_removed")),
                        ),
                    )
                    # Older mirrors stored only a count here
                    session_ids = data.get("sessions")
                    if isinstance(session_ids, list):
                        conn.executemany(
                            f"INSERT OR IGNORE INTO {sessions_table} ({column}, session_id) VALUES (?, ?)",
                            [(str(key), str(sid)) for sid in session_ids],
                        )

            conn.execute(
                "UPDATE all_time_stats SET total_cost = ?, session_count = ?, since = ? WHERE id = 1",
                (
                    coerce_float(all_time.get("total_cost")),
                    coerce_int(all_time.get("sessions"), imported + len(pruned)),
                    coerce_str(all_time.get("since")),
                ),
            )
        logger.info(f"Imported {imported} session(s) from JSON mirror")
        return imported


def _mapping(value: Any) -> Dict[str, Any]:
    return value if isinstance(value, dict) else {}
