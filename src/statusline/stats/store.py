"""Stats store: SQLite ledger plus JSON mirror.

The two sinks are written one after the other with independent failure
handling. A mirror failure is logged and otherwise ignored; a database
failure is raised to the caller as DatabaseError, but only after the mirror
has had its turn, so one broken sink never blocks the other.
"""

import logging
import sqlite3
import time
from datetime import datetime
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, TypeVar

from ..core.config import Config
from ..core.errors import DatabaseError, StatsIOError
from ..core.paths import get_data_dir, get_stats_db_path, get_stats_json_path
from ..core.retry import retry_call
from .database import StatsDatabase, day_key, is_corruption_error, month_key, remove_database_files
from .json_store import JsonStatsMirror
from .models import PruneResult, RecordResult

if TYPE_CHECKING:
    from ..context.learning import ContextLearner

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StatsStore:
    """Durable session, daily, monthly and all-time statistics.

    Example:
        store = StatsStore(config)
        store.record("abc", cost=2.5, lines_added=40, lines_removed=3)
        print(store.health()["all_time_total"])

    The database is opened lazily on first use.
    """

    def __init__(
        self,
        config: Config,
        data_dir: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        """Initialize the store.

        Args:
            config: Loaded configuration (database, retention and retry settings).
            data_dir: Data directory. Defaults to get_data_dir().
            sleep: Sleep function used between retries (injectable for tests).
        """
        self.config = config
        self.data_dir = data_dir or get_data_dir()
        self.db_path = get_stats_db_path(config, self.data_dir)
        self.json_path = get_stats_json_path(self.data_dir)
        self.mirror = JsonStatsMirror(self.json_path)
        self._sleep = sleep
        self._db: Optional[StatsDatabase] = None

    def close(self) -> None:
        if self._db is not None:
            self._db.close()
            self._db = None

    def __enter__(self) -> "StatsStore":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def _open_database(self) -> StatsDatabase:
        timeout = self.config.database.busy_timeout_ms
        try:
            database = StatsDatabase(self.db_path, busy_timeout_ms=timeout)
        except sqlite3.DatabaseError as e:
            if not is_corruption_error(e):
                raise
            logger.warning(f"Stats database {self.db_path} is corrupt ({e}); recreating")
            remove_database_files(self.db_path)
            database = StatsDatabase(self.db_path, busy_timeout_ms=timeout)

        try:
            if database.is_empty():
                self._seed_from_mirror(database)
        except Exception:
            database.close()
            raise
        return database

    def _seed_from_mirror(self, database: StatsDatabase) -> None:
        try:
            document = self.mirror.load()
        except StatsIOError as e:
            logger.warning(f"Cannot read JSON mirror for import: {e}")
            return
        if not document or not document.get("sessions"):
            return
        try:
            database.import_json_document(document)
        except (ValueError, TypeError, AttributeError) as e:
            logger.warning(f"Skipping import of malformed JSON mirror {self.json_path}: {e}")

    @property
    def database(self) -> StatsDatabase:
        """The open database, opening (with retries) if necessary.

        Raises:
            DatabaseError: If the database cannot be opened.
        """
        if self._db is None:
            try:
                self._db = retry_call(
                    self._open_database,
                    self.config.retry.db_ops,
                    retry_on=(sqlite3.OperationalError,),
                    description=f"open {self.db_path}",
                    sleep=self._sleep,
                )
            except (sqlite3.Error, OSError) as e:
                raise DatabaseError(f"Cannot open stats database {self.db_path}: {e}") from e
        return self._db

    def run_db(self, description: str, operation: Callable[[StatsDatabase], T]) -> T:
        """Run a database operation under the db retry policy.

        Lock contention is retried. Corruption discovered mid-operation
        recreates the database once and tries again.
        """
        recreated = False
        while True:
            database = self.database
            try:
                return retry_call(
                    lambda: operation(database),
                    self.config.retry.db_ops,
                    retry_on=(sqlite3.OperationalError,),
                    description=description,
                    sleep=self._sleep,
                )
            except sqlite3.DatabaseError as e:
                if is_corruption_error(e) and not recreated:
                    logger.warning(f"Stats database corrupt during {description} ({e}); recreating")
                    recreated = True
                    try:
                        database.recreate()
                    except sqlite3.Error as recreate_error:
                        self._db = None
                        raise DatabaseError(
                            f"Cannot recreate stats database {self.db_path}: {recreate_error}"
                        ) from recreate_error
                    continue
                raise DatabaseError(f"{description} failed: {e}") from e
            except sqlite3.Error as e:
                raise DatabaseError(f"{description} failed: {e}") from e

    def record(
        self,
        session_id: str,
        cost: float,
        lines_added: int,
        lines_removed: int,
        timestamp: Optional[datetime] = None,
        max_tokens: Optional[int] = None,
        model_name: Optional[str] = None,
    ) -> Optional[RecordResult]:
        """Record a session's latest absolute cost and line counts.

        Writes the database, then (if enabled) the JSON mirror.

        Args:
            session_id: Session key.
            cost: Session cost so far (USD), absolute.
            lines_added: Lines added so far, absolute.
            lines_removed: Lines removed so far, absolute.
            timestamp: Report time. Defaults to now (local time).
            max_tokens: Current token total for the high-water mark.
            model_name: Model in use.

        Returns:
            The database RecordResult.

        Raises:
            DatabaseError: If the database write failed after retries. The
                mirror has still been attempted.
        """
        timestamp = timestamp or datetime.now().astimezone()
        db_error: Optional[DatabaseError] = None
        result: Optional[RecordResult] = None

        try:
            result = self.run_db(
                f"record session {session_id}",
                lambda db: db.record(
                    session_id, cost, lines_added, lines_removed, timestamp, max_tokens, model_name
                ),
            )
        except DatabaseError as e:
            logger.warning(f"Stats database write failed: {e}")
            db_error = e

        if self.config.database.json_backup:
            try:
                retry_call(
                    lambda: self.mirror.record(
                        session_id, cost, lines_added, lines_removed, timestamp, max_tokens, model_name
                    ),
                    self.config.retry.file_ops,
                    retry_on=(StatsIOError,),
                    description=f"write {self.json_path}",
                    sleep=self._sleep,
                )
            except StatsIOError as e:
                logger.warning(f"JSON stats mirror write failed: {e}")
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                logger.warning(f"JSON stats mirror update skipped, unexpected content: {e!r}")

        if db_error is not None:
            raise db_error
        return result

    def update_max_tokens(
        self,
        session_id: str,
        tokens: int,
        timestamp: Optional[datetime] = None,
        model_name: Optional[str] = None,
    ) -> int:
        """Raise a session's token high-water mark (database only)."""
        timestamp = timestamp or datetime.now().astimezone()
        return self.run_db(
            f"update max tokens for {session_id}",
            lambda db: db.update_max_tokens(session_id, tokens, timestamp, model_name),
        )

    def get_session_duration(self, session_id: str) -> Optional[int]:
        """Get seconds between a session's first and latest record, or None."""
        return self.run_db(
            f"read duration for {session_id}",
            lambda db: db.get_session_duration(session_id),
        )

    def get_session(self, session_id: str):
        return self.run_db(f"read session {session_id}", lambda db: db.get_session(session_id))

    def get_daily_total(self, now: Optional[datetime] = None) -> float:
        """Get the total cost recorded for the day containing ``now``."""
        now = now or datetime.now().astimezone()

        def fetch(db: StatsDatabase) -> float:
            daily = db.get_daily(day_key(now))
            return daily.total_cost if daily else 0.0

        return self.run_db("read daily total", fetch)

    def learner(self) -> "ContextLearner":
        """Get an adaptive window learner backed by this store."""
        from ..context.learning import ContextLearner

        return ContextLearner(self)

    def health(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Collect diagnostics for ``statusline health``.

        Raises:
            DatabaseError: If the database cannot be read.
        """
        now = now or datetime.now().astimezone()

        def collect(db: StatsDatabase) -> Dict[str, Any]:
            all_time = db.get_all_time()
            today = db.get_daily(day_key(now))
            month = db.get_monthly(month_key(now))
            return {
                "session_count": all_time.session_count,
                "all_time_total": all_time.total_cost,
                "since": all_time.since,
                "stored_sessions": db.count_sessions(),
                "today_total": today.total_cost if today else 0.0,
                "month_total": month.total_cost if month else 0.0,
                "schema_version": db.schema_version(),
            }

        report = self.run_db("collect health", collect)
        report.update(
            {
                "database_path": str(self.db_path),
                "database_exists": self.db_path.exists(),
                "json_path": str(self.json_path),
                "json_exists": self.json_path.exists(),
                "json_backup": self.config.database.json_backup,
            }
        )
        return report

    def prune(self, now: Optional[datetime] = None) -> PruneResult:
        """Apply the configured retention horizons to the database and mirror.

        The mirror is pruned on a best-effort basis; its failures are logged.
        """
        now = now or datetime.now().astimezone()
        retention = self.config.database.retention()
        result = self.run_db("prune", lambda db: db.prune(retention, now))
        if self.config.database.json_backup:
            try:
                mirrored = self.mirror.prune(retention, now)
            except StatsIOError as e:
                logger.warning(f"JSON stats mirror prune failed: {e}")
            except (ValueError, TypeError, AttributeError, KeyError) as e:
                logger.warning(f"JSON stats mirror prune skipped, unexpected content: {e!r}")
            else:
                logger.debug(f"Pruned {mirrored.total} entries from {self.json_path}")
        return result

    def maintenance(self, now: Optional[datetime] = None) -> Dict[str, Any]:
        """Prune old rows and check database integrity.

        Returns:
            {"pruned": {...}, "integrity_ok": bool}
        """
        pruned = self.prune(now)
        integrity_ok = self.run_db("integrity check", lambda db: db.integrity_check())
        if not integrity_ok:
            logger.warning(f"Integrity check failed for {self.db_path}")
        return {
            "pruned": {
                "sessions": pruned.sessions,
                "daily": pruned.daily,
                "monthly": pruned.monthly,
            },
            "integrity_ok": integrity_ok,
        }
