"""Schema migrations for the stats database.

Each migration is applied once, inside its own transaction, and recorded in
``schema_migrations`` with a checksum of its statements so that edits to an
already-applied migration are noticed.
"""

import hashlib
import logging
import sqlite3
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import List, Tuple

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Migration:
    """One schema step."""

    version: int
    description: str
    statements: Tuple[str, ...]

    @property
    def checksum(self) -> str:
        digest = hashlib.sha256()
        for statement in self.statements:
            digest.update(statement.strip().encode("utf-8"))
            digest.update(b"\n")
        return digest.hexdigest()


LEDGER_DDL = """
CREATE TABLE IF NOT EXISTS schema_migrations (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL,
    checksum TEXT NOT NULL,
    description TEXT,
    execution_time_ms INTEGER
)
"""

MIGRATIONS: List[Migration] = [
    Migration(
        version=1,
        description="Initial sessions, daily, monthly and all-time tables",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS sessions (
                session_id TEXT PRIMARY KEY,
                start_time TEXT NOT NULL,
                last_updated TEXT NOT NULL,
                cost REAL NOT NULL DEFAULT 0.0,
                lines_added INTEGER NOT NULL DEFAULT 0,
                lines_removed INTEGER NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS daily_stats (
                date TEXT PRIMARY KEY,
                total_cost REAL NOT NULL DEFAULT 0.0,
                total_lines_added INTEGER NOT NULL DEFAULT 0,
                total_lines_removed INTEGER NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS daily_sessions (
                date TEXT NOT NULL,
                session_id TEXT NOT NULL,
                PRIMARY KEY (date, session_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS monthly_stats (
                month TEXT PRIMARY KEY,
                total_cost REAL NOT NULL DEFAULT 0.0,
                total_lines_added INTEGER NOT NULL DEFAULT 0,
                total_lines_removed INTEGER NOT NULL DEFAULT 0
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS monthly_sessions (
                month TEXT NOT NULL,
                session_id TEXT NOT NULL,
                PRIMARY KEY (month, session_id)
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS all_time_stats (
                id INTEGER PRIMARY KEY CHECK (id = 1),
                total_cost REAL NOT NULL DEFAULT 0.0,
                session_count INTEGER NOT NULL DEFAULT 0,
                since TEXT
            )
            """,
            "INSERT OR IGNORE INTO all_time_stats (id, total_cost, session_count) VALUES (1, 0.0, 0)",
            "CREATE INDEX IF NOT EXISTS idx_sessions_last_updated ON sessions(last_updated)",
        ),
    ),
    Migration(
        version=2,
        description="Track per-session token high-water mark and model",
        statements=(
            "ALTER TABLE sessions ADD COLUMN max_tokens_observed INTEGER NOT NULL DEFAULT 0",
            "ALTER TABLE sessions ADD COLUMN model_name TEXT",
        ),
    ),
    Migration(
        version=3,
        description="Adaptive context window learning",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS learned_context_windows (
                model_name TEXT PRIMARY KEY,
                compaction_point INTEGER NOT NULL,
                observation_count INTEGER NOT NULL DEFAULT 0,
                confidence REAL NOT NULL DEFAULT 0.0,
                first_seen TEXT NOT NULL,
                last_updated TEXT NOT NULL
            )
            """,
            """
            CREATE TABLE IF NOT EXISTS compaction_observations (
                model_name TEXT NOT NULL,
                session_id TEXT NOT NULL,
                peak_tokens INTEGER NOT NULL,
                observed_at TEXT NOT NULL,
                PRIMARY KEY (model_name, session_id, peak_tokens)
            )
            """,
        ),
    ),
    Migration(
        version=4,
        description="Remember pruned sessions; track the peak since the last compaction",
        statements=(
            """
            CREATE TABLE IF NOT EXISTS known_sessions (
                session_id TEXT PRIMARY KEY,
                start_time TEXT,
                cost REAL NOT NULL DEFAULT 0.0,
                lines_added INTEGER NOT NULL DEFAULT 0,
                lines_removed INTEGER NOT NULL DEFAULT 0,
                max_tokens_observed INTEGER NOT NULL DEFAULT 0,
                pruned_at TEXT NOT NULL
            )
            """,
            "ALTER TABLE sessions ADD COLUMN cycle_peak_tokens INTEGER NOT NULL DEFAULT 0",
            "UPDATE sessions SET cycle_peak_tokens = max_tokens_observed",
        ),
    ),
]

LATEST_VERSION = MIGRATIONS[-1].version


def current_version(conn: sqlite3.Connection) -> int:
    """Get the highest applied migration version (0 if none)."""
    row = conn.execute("SELECT MAX(version) FROM schema_migrations").fetchone()
    return row[0] or 0


def _verify_checksums(conn: sqlite3.Connection) -> None:
    known = {m.version: m for m in MIGRATIONS}
    for version, checksum in conn.execute("SELECT version, checksum FROM schema_migrations"):
        migration = known.get(version)
        if migration is None:
            logger.warning(f"Database has unknown migration version {version}")
        elif migration.checksum != checksum:
            logger.warning(f"Checksum mismatch for applied migration {version}")


def apply_migrations(conn: sqlite3.Connection) -> int:
    """Bring the schema up to date.

    The connection must be in autocommit mode (``isolation_level=None``).
    Each pending migration runs in a ``BEGIN IMMEDIATE`` transaction and the
    version is re-checked after the lock is taken, so concurrent processes
    racing on a fresh database apply every step exactly once.

    Returns:
        Number of migrations applied.
    """
    conn.execute(LEDGER_DDL)
    _verify_checksums(conn)

    applied = 0
    for migration in MIGRATIONS:
        if migration.version <= current_version(conn):
            continue
        started = time.monotonic()
        conn.execute("BEGIN IMMEDIATE")
        try:
            if migration.version <= current_version(conn):
                conn.execute("ROLLBACK")
                continue
            for statement in migration.statements:
                conn.execute(statement)
            conn.execute(
                "INSERT INTO schema_migrations "
                "(version, applied_at, checksum, description, execution_time_ms) "
                "VALUES (?, ?, ?, ?, ?)",
                (
                    migration.version,
                    datetime.now(timezone.utc).isoformat(),
                    migration.checksum,
                    migration.description,
                    int((time.monotonic() - started) * 1000),
                ),
            )
            conn.execute("COMMIT")
        except Exception:
            if conn.in_transaction:
                conn.execute("ROLLBACK")
            raise
        logger.debug(f"Applied migration {migration.version}: {migration.description}")
        applied += 1
    return applied
