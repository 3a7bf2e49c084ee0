"""Tests for the stats ledger, JSON mirror and dual-sink store."""

import json
import sqlite3
from datetime import datetime, timedelta, timezone

import pytest

from statusline.core.errors import DatabaseError, StatsIOError
from statusline.stats import JsonStatsMirror, StatsDatabase, StatsStore
from statusline.stats.database import utc_iso
from statusline.stats.migrations import LATEST_VERSION


DAY1 = datetime(2025, 8, 25, 10, 0, 0, tzinfo=timezone.utc)
DAY2 = datetime(2025, 8, 26, 9, 0, 0, tzinfo=timezone.utc)


@pytest.fixture
def db(tmp_path):
    with StatsDatabase(tmp_path / "stats.db") as database:
        yield database


class TestMigrations:
    """Tests for schema creation."""

    def test_fresh_database_at_latest_version(self, db):
        assert db.schema_version() == LATEST_VERSION == 4

    def test_reopen_is_idempotent(self, tmp_path):
        path = tmp_path / "stats.db"
        StatsDatabase(path).close()
        with StatsDatabase(path) as database:
            assert database.schema_version() == 4
            rows = database.conn.execute("SELECT COUNT(*) FROM schema_migrations").fetchone()[0]
            assert rows == 4

    def test_wal_mode(self, db):
        assert db.conn.execute("PRAGMA journal_mode").fetchone()[0].lower() == "wal"


class TestStatsDatabaseRecord:
    """Tests for delta-based aggregation."""

    def test_first_report(self, db):
        result = db.record("s1", 5.0, 100, 20, DAY1)
        assert result.is_new_session
        assert result.cost_delta == 5.0
        assert db.get_all_time().total_cost == 5.0
        assert db.get_all_time().session_count == 1
        assert db.get_daily("2025-08-25").total_cost == 5.0
        assert db.get_monthly("2025-08").session_count == 1

    def test_session_row_replaced_not_summed(self, db):
        """The session row holds the latest absolutes."""
        db.record("s1", 5.0, 100, 20, DAY1)
        db.record("s1", 7.5, 150, 30, DAY1)
        session = db.get_session("s1")
        assert (session.cost, session.lines_added, session.lines_removed) == (7.5, 150, 30)

    def test_repeated_report_adds_nothing(self, db):
        db.record("s1", 5.0, 100, 20, DAY1)
        result = db.record("s1", 5.0, 100, 20, DAY1)
        assert result.cost_delta == 0
        assert db.get_all_time().total_cost == 5.0
        assert db.get_daily("2025-08-25").total_lines_added == 100

    def test_lines_delta(self, db):
        """Line totals grow by the change between reports."""
        db.record("s1", 1.0, 40, 0, DAY1)
        db.record("s1", 1.0, 250, 0, DAY1)
        daily = db.get_daily("2025-08-25")
        assert daily.total_lines_added == 250
        result = db.record("s1", 1.0, 460, 0, DAY1)
        assert result.lines_added_delta == 210

    def test_multi_day_session_counted_once(self, db):
        """A session spanning days appears in each day, once in all-time."""
        db.record("s1", 2.0, 10, 0, DAY1)
        db.record("s1", 5.0, 30, 0, DAY2)
        assert db.get_daily("2025-08-25").total_cost == 2.0
        assert db.get_daily("2025-08-26").total_cost == 3.0
        assert db.get_daily("2025-08-26").session_count == 1
        assert db.get_monthly("2025-08").total_cost == 5.0
        assert db.get_monthly("2025-08").session_count == 1
        assert db.get_all_time().session_count == 1

    def test_all_time_across_sessions(self, db):
        db.record("s1", 10.0, 0, 0, DAY1)
        db.record("s2", 2.0, 0, 0, DAY1)
        db.record("s2", 5.0, 0, 0, DAY2)
        all_time = db.get_all_time()
        assert all_time.total_cost == 15.0
        assert all_time.session_count == 2
        assert all_time.since is not None

    def test_max_tokens_kept(self, db):
        db.record("s1", 1.0, 0, 0, DAY1, max_tokens=150_000)
        db.record("s1", 1.5, 0, 0, DAY1, max_tokens=40_000)
        assert db.get_session_max_tokens("s1") == 150_000

    def test_update_max_tokens_creates_session(self, db):
        assert db.update_max_tokens("s1", 80_000, DAY1) == 80_000
        assert db.update_max_tokens("s1", 20_000, DAY1) == 80_000
        assert db.get_all_time().session_count == 1
        assert db.get_session("s1").cost == 0.0
        assert db.get_session_max_tokens("unknown") is None

    def test_session_duration(self, db):
        db.record("s1", 1.0, 0, 0, DAY1)
        db.record("s1", 2.0, 0, 0, DAY1 + timedelta(minutes=90))
        assert db.get_session_duration("s1") == 5400

    def test_cost_correction_downward(self, db):
        """A lower absolute cost subtracts from the day it is reported on."""
        db.record("s1", 10.0, 0, 0, DAY1)
        result = db.record("s1", 6.0, 0, 0, DAY1)
        assert result.cost_delta == -4.0
        assert not result.is_new_session
        assert db.get_daily("2025-08-25").total_cost == 6.0
        assert db.get_monthly("2025-08").total_cost == 6.0
        assert db.get_all_time().total_cost == 6.0

    def test_cycle_peak_restarts_after_compaction(self, db):
        """The cycle peak follows each compaction; the high-water mark does not."""
        db.update_max_tokens("s1", 156_000, DAY1)
        assert db.get_session("s1").cycle_peak_tokens == 156_000
        db.update_max_tokens("s1", 40_000, DAY1)
        assert db.get_session("s1").cycle_peak_tokens == 40_000
        db.record("s1", 1.0, 0, 0, DAY1, max_tokens=150_000)
        session = db.get_session("s1")
        assert session.cycle_peak_tokens == 150_000
        assert session.max_tokens_observed == 156_000

    def test_cycle_peak_unchanged_without_reading(self, db):
        db.record("s1", 1.0, 0, 0, DAY1, max_tokens=120_000)
        db.record("s1", 2.0, 0, 0, DAY1)
        db.update_max_tokens("s1", 90_000, DAY1)
        assert db.get_session("s1").cycle_peak_tokens == 120_000


class TestPrune:
    """Tests for retention pruning."""

    def test_prunes_old_rows(self, db):
        db.record("old", 1.0, 0, 0, DAY1)
        db.record("new", 2.0, 0, 0, DAY1 + timedelta(days=100))
        now = DAY1 + timedelta(days=100)
        result = db.prune({"sessions": 90, "daily": 30, "monthly": 0}, now=now)
        assert result.sessions == 1
        assert result.daily == 1
        assert result.monthly == 0
        assert db.get_session("old") is None
        assert db.get_daily("2025-08-25") is None
        assert db.get_monthly("2025-08") is not None

    def test_all_time_unchanged_by_pruning(self, db):
        db.record("old", 1.0, 0, 0, DAY1)
        db.prune({"sessions": 1, "daily": 1, "monthly": 1}, now=DAY1 + timedelta(days=400))
        assert db.get_all_time().total_cost == 1.0
        assert db.get_all_time().session_count == 1

    def test_zero_keeps_everything(self, db):
        db.record("old", 1.0, 0, 0, DAY1)
        result = db.prune({"sessions": 0, "daily": 0, "monthly": 0}, now=DAY1 + timedelta(days=1000))
        assert result.total == 0

    def test_resumed_session_not_double_counted(self, db):
        """A session reporting again after its row was pruned adds only its growth."""
        db.record("s1", 10.0, 100, 5, DAY1)
        db.prune({"sessions": 90, "daily": 0, "monthly": 0}, now=DAY1 + timedelta(days=100))
        assert db.get_session("s1") is None

        result = db.record("s1", 12.0, 120, 5, DAY1 + timedelta(days=101))
        assert not result.is_new_session
        assert result.cost_delta == 2.0
        assert result.lines_added_delta == 20
        all_time = db.get_all_time()
        assert all_time.total_cost == 12.0
        assert all_time.session_count == 1
        assert db.get_session("s1").start_time == utc_iso(DAY1)

    def test_resumed_by_token_update_not_counted(self, db):
        db.record("s1", 10.0, 0, 0, DAY1, max_tokens=90_000)
        db.prune({"sessions": 90, "daily": 0, "monthly": 0}, now=DAY1 + timedelta(days=100))
        assert db.update_max_tokens("s1", 50_000, DAY1 + timedelta(days=101)) == 90_000
        assert db.get_all_time().session_count == 1
        assert db.get_session("s1").cost == 10.0

        db.record("s1", 10.5, 0, 0, DAY1 + timedelta(days=101))
        assert db.get_all_time().total_cost == 10.5

    def test_repeated_pruning_keeps_remembered_session(self, db):
        db.record("s1", 10.0, 0, 0, DAY1)
        for days in (100, 200):
            db.prune({"sessions": 90, "daily": 0, "monthly": 0}, now=DAY1 + timedelta(days=days))
        db.record("s1", 10.0, 0, 0, DAY1 + timedelta(days=201))
        assert db.get_all_time().total_cost == 10.0
        assert db.get_all_time().session_count == 1


class TestJsonStatsMirror:
    """Tests for the JSON mirror."""

    def test_same_delta_semantics(self, tmp_path):
        mirror = JsonStatsMirror(tmp_path / "stats.json")
        mirror.record("s1", 2.0, 10, 1, DAY1)
        mirror.record("s1", 5.0, 30, 2, DAY2)
        document = mirror.load()
        assert document["sessions"]["s1"]["cost"] == 5.0
        assert document["daily"]["2025-08-26"]["total_cost"] == 3.0
        assert document["monthly"]["2025-08"]["sessions"] == ["s1"]
        assert document["all_time"] == {
            "total_cost": 5.0,
            "sessions": 1,
            "since": document["all_time"]["since"],
        }

    def test_corrupt_file_replaced(self, tmp_path):
        path = tmp_path / "stats.json"
        path.write_text("{garbage")
        mirror = JsonStatsMirror(path)
        assert mirror.load() is None
        mirror.record("s1", 1.0, 0, 0, DAY1)
        assert json.loads(path.read_text())["all_time"]["sessions"] == 1

    @pytest.mark.parametrize(
        "document",
        [
            {"sessions": {"old": "oops"}},
            {"sessions": []},
            {"sessions": {}, "daily": {"2025-08-25": 3}},
            {"sessions": {}, "all_time": [1, 2]},
            [1, 2, 3],
        ],
    )
    def test_malformed_structure_replaced(self, tmp_path, document):
        path = tmp_path / "stats.json"
        path.write_text(json.dumps(document))
        mirror = JsonStatsMirror(path)
        assert mirror.load() is None
        mirror.record("s1", 1.0, 0, 0, DAY1)
        assert json.loads(path.read_text())["all_time"]["total_cost"] == 1.0

    def test_bad_values_read_as_zero(self, tmp_path):
        """Null or non-numeric fields do not break the arithmetic."""
        path = tmp_path / "stats.json"
        path.write_text(
            json.dumps(
                {
                    "sessions": {"s1": {"cost": "lots", "lines_added": None}},
                    "daily": {"2025-08-25": {"total_cost": None, "sessions": 7}},
                    "all_time": {"total_cost": None, "sessions": "many"},
                }
            )
        )
        mirror = JsonStatsMirror(path)
        mirror.record("s1", 2.0, 10, 0, DAY1)
        document = mirror.load()
        assert document["daily"]["2025-08-25"]["total_cost"] == 2.0
        assert document["daily"]["2025-08-25"]["sessions"] == ["s1"]
        assert document["all_time"]["total_cost"] == 2.0
        assert document["all_time"]["sessions"] == 0

    def test_prune_remembers_sessions(self, tmp_path):
        mirror = JsonStatsMirror(tmp_path / "stats.json")
        mirror.record("s1", 10.0, 0, 0, DAY1)
        now = DAY1 + timedelta(days=100)
        result = mirror.prune({"sessions": 90, "daily": 30, "monthly": 0}, now)
        assert (result.sessions, result.daily, result.monthly) == (1, 1, 0)
        document = mirror.load()
        assert "s1" not in document["sessions"]
        assert document["pruned_sessions"]["s1"]["cost"] == 10.0
        assert "2025-08-25" not in document["daily"]
        assert "2025-08" in document["monthly"]

        mirror.record("s1", 12.0, 0, 0, now + timedelta(days=1))
        document = mirror.load()
        assert document["all_time"]["total_cost"] == 12.0
        assert document["all_time"]["sessions"] == 1
        assert "s1" not in document["pruned_sessions"]

    def test_prune_missing_file(self, tmp_path):
        mirror = JsonStatsMirror(tmp_path / "stats.json")
        assert mirror.prune({"sessions": 1, "daily": 1, "monthly": 1}, DAY1).total == 0
        assert not mirror.path.exists()


class TestStatsStore:
    """Tests for the dual-sink store."""

    def test_record_writes_both_sinks(self, store):
        store.record("s1", 2.5, 40, 3, timestamp=DAY1)
        assert store.db_path.exists()
        assert store.get_session("s1").cost == 2.5
        assert store.mirror.load()["sessions"]["s1"]["cost"] == 2.5

    def test_json_backup_disabled(self, store, config):
        config.database.json_backup = False
        store.record("s1", 2.5, 40, 3, timestamp=DAY1)
        assert not store.json_path.exists()

    def test_mirror_failure_does_not_fail_database(self, store, monkeypatch):
        def broken(*args, **kwargs):
            raise StatsIOError("disk full")

        monkeypatch.setattr(store.mirror, "record", broken)
        result = store.record("s1", 2.5, 40, 3, timestamp=DAY1)
        assert result.is_new_session
        assert store.get_session("s1").cost == 2.5

    def test_database_failure_still_writes_mirror(self, store, monkeypatch):
        def broken(description, operation):
            raise DatabaseError("locked")

        monkeypatch.setattr(store, "run_db", broken)
        with pytest.raises(DatabaseError):
            store.record("s1", 2.5, 40, 3, timestamp=DAY1)
        assert store.mirror.load()["sessions"]["s1"]["cost"] == 2.5

    def test_lock_contention_retried(self, store):
        calls = []

        def contended(db):
            calls.append(1)
            if len(calls) < 3:
                raise sqlite3.OperationalError("database is locked")
            return "done"

        assert store.run_db("contended", contended) == "done"
        assert len(calls) == 3

    def test_exhausted_retries_raise_database_error(self, store):
        def locked(db):
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(DatabaseError, match="locked"):
            store.run_db("locked", locked)

    def test_corrupt_database_recreated(self, config, isolated_dirs):
        """A corrupt file is replaced and reseeded from the JSON mirror."""
        with StatsStore(config, data_dir=isolated_dirs, sleep=lambda _: None) as first:
            first.record("s1", 4.0, 10, 0, timestamp=DAY1)
        db_path = first.db_path
        for suffix in ("-wal", "-shm"):
            path = db_path.with_name(db_path.name + suffix)
            if path.exists():
                path.unlink()
        db_path.write_bytes(b"this is not a sqlite database" * 200)

        with StatsStore(config, data_dir=isolated_dirs, sleep=lambda _: None) as second:
            assert second.get_session("s1").cost == 4.0
            assert second.health()["schema_version"] == 4

    def test_health(self, store):
        now = datetime.now().astimezone()
        store.record("s1", 3.0, 0, 0, timestamp=now)
        report = store.health(now=now)
        assert report["session_count"] == 1
        assert report["all_time_total"] == 3.0
        assert report["today_total"] == 3.0
        assert report["month_total"] == 3.0
        assert report["database_exists"]

    def test_maintenance(self, store):
        store.record("old", 1.0, 0, 0, timestamp=DAY1)
        result = store.maintenance(now=DAY1 + timedelta(days=400))
        assert result["pruned"]["sessions"] == 1
        assert result["integrity_ok"] is True

    def test_maintenance_prunes_mirror(self, store):
        store.record("old", 1.0, 0, 0, timestamp=DAY1)
        store.maintenance(now=DAY1 + timedelta(days=400))
        document = store.mirror.load()
        assert document["sessions"] == {}
        assert "old" in document["pruned_sessions"]

    def test_mirror_prune_failure_logged(self, store, monkeypatch, caplog):
        def broken(*args, **kwargs):
            raise StatsIOError("read-only")

        store.record("old", 1.0, 0, 0, timestamp=DAY1)
        monkeypatch.setattr(store.mirror, "prune", broken)
        result = store.maintenance(now=DAY1 + timedelta(days=400))
        assert result["pruned"]["sessions"] == 1
        assert "mirror prune failed" in caplog.text

    def test_mirror_unexpected_content_does_not_fail_record(self, store, monkeypatch):
        def broken(*args, **kwargs):
            raise TypeError("unsupported operand")

        monkeypatch.setattr(store.mirror, "record", broken)
        assert store.record("s1", 2.5, 0, 0, timestamp=DAY1).is_new_session

    def test_malformed_mirror_not_imported(self, config, isolated_dirs):
        """A mirror with the wrong shape leaves a fresh, usable database."""
        isolated_dirs.mkdir(parents=True, exist_ok=True)
        (isolated_dirs / "stats.json").write_text(json.dumps({"sessions": {"old": "oops"}}))
        with StatsStore(config, data_dir=isolated_dirs, sleep=lambda _: None) as store:
            assert store.health()["session_count"] == 0
            store.record("s1", 1.0, 0, 0, timestamp=DAY1)
            assert store.mirror.load()["all_time"]["total_cost"] == 1.0

    def test_daily_total(self, store):
        store.record("s1", 2.0, 0, 0, timestamp=DAY1)
        store.record("s2", 3.0, 0, 0, timestamp=DAY1)
        assert store.get_daily_total(now=DAY1) == 5.0
        assert store.get_daily_total(now=DAY2) == 0.0


class TestImportJsonDocument:
    """Tests for seeding a database from a mirror document."""

    def test_imports_sessions_and_totals(self, db):
        imported = db.import_json_document(
            {
                "sessions": {"s1": {"start_time": "a", "last_updated": "b", "cost": 4.0}},
                "daily": {"2025-08-25": {"total_cost": 4.0, "sessions": ["s1"]}},
                "all_time": {"total_cost": 4.0, "sessions": 1, "since": "a"},
            }
        )
        assert imported == 1
        assert db.get_session("s1").cost == 4.0
        assert db.get_daily("2025-08-25").session_ids == ["s1"]
        assert db.get_all_time().session_count == 1

    def test_malformed_entries_skipped(self, db):
        imported = db.import_json_document(
            {
                "sessions": {"bad": "oops", "s1": {"cost": None, "lines_added": "x"}},
                "daily": {"2025-08-25": 3},
                "all_time": {"total_cost": None},
            }
        )
        assert imported == 1
        session = db.get_session("s1")
        assert (session.cost, session.lines_added) == (0.0, 0)
        assert db.get_daily("2025-08-25") is None
        assert db.get_all_time().total_cost == 0.0
        assert db.get_all_time().session_count == 1

    def test_pruned_sessions_remembered(self, db):
        db.import_json_document(
            {
                "sessions": {},
                "pruned_sessions": {"s1": {"cost": 10.0, "pruned_at": "x"}},
                "all_time": {"total_cost": 10.0, "sessions": 1},
            }
        )
        db.record("s1", 11.0, 0, 0, DAY2)
        assert db.get_all_time().total_cost == 11.0
        assert db.get_all_time().session_count == 1
