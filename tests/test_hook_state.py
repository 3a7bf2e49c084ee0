"""Tests for hook-written compaction state."""

import json
from datetime import datetime, timedelta, timezone

import pytest

from statusline.core import hook_state
from statusline.core.errors import StatsIOError
from statusline.core.paths import get_hook_state_dir


NOW = datetime(2025, 10, 19, 12, 0, 0, tzinfo=timezone.utc)


class TestHookState:
    """Tests for read_state/write_state/clear_state."""

    def test_write_then_read(self, tmp_path):
        """A fresh state file is read back."""
        hook_state.write_state("abc-123", trigger="manual", state_dir=tmp_path, now=NOW)
        state = hook_state.read_state("abc-123", state_dir=tmp_path, now=NOW + timedelta(seconds=30))
        assert state is not None
        assert state.is_compacting
        assert state.trigger == "manual"

    def test_default_location_is_data_dir(self, isolated_dirs):
        """Without state_dir, files live under <data>/state."""
        path = hook_state.write_state("abc", now=NOW)
        assert path == get_hook_state_dir() / "abc.json"
        assert path.parent == isolated_dirs.resolve() / "state"

    def test_missing_file_is_none(self, tmp_path):
        assert hook_state.read_state("nobody", state_dir=tmp_path) is None

    def test_stale_state_ignored_and_removed(self, tmp_path):
        """State older than the freshness limit is discarded."""
        path = hook_state.write_state("abc", state_dir=tmp_path, now=NOW)
        state = hook_state.read_state("abc", state_dir=tmp_path, now=NOW + timedelta(seconds=301))
        assert state is None
        assert not path.exists()

    def test_corrupt_file_ignored(self, tmp_path):
        """Unparseable state files read as None."""
        (tmp_path / "abc.json").write_text("{not json")
        assert hook_state.read_state("abc", state_dir=tmp_path, now=NOW) is None

    def test_non_compacting_state(self, tmp_path):
        """Other states are returned but not compacting."""
        (tmp_path / "abc.json").write_text(
            json.dumps({"state": "idle", "started_at": NOW.isoformat()})
        )
        state = hook_state.read_state("abc", state_dir=tmp_path, now=NOW)
        assert state is not None
        assert not state.is_compacting

    def test_unsafe_session_id_rejected(self, tmp_path):
        """Session IDs that could escape the directory are refused."""
        assert hook_state.read_state("../etc/passwd", state_dir=tmp_path) is None
        with pytest.raises(StatsIOError):
            hook_state.write_state("../evil", state_dir=tmp_path)

    def test_clear_state(self, tmp_path):
        """clear_state removes the file and reports whether it existed."""
        hook_state.write_state("abc", state_dir=tmp_path, now=NOW)
        assert hook_state.clear_state("abc", state_dir=tmp_path) is True
        assert hook_state.clear_state("abc", state_dir=tmp_path) is False
