"""Hook-written compaction state.

The assistant's PreCompact hook runs ``statusline hook precompact``, which
drops a small JSON file per session; the Stop hook clears it. The statusline
treats a fresh "compacting" file as the strongest compaction signal.

File format (<data dir>/state/<session_id>.json):

    {"state": "compacting", "trigger": "auto", "session_id": "...",
     "started_at": "2025-10-19T12:00:00+00:00"}
"""

import json
import logging
import os
import re
from dataclasses import dataclass, asdict
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from .errors import StatsIOError
from .paths import ensure_directory, get_hook_state_dir

logger = logging.getLogger(__name__)

# Hook state older than this is left over from a crashed or interrupted run
DEFAULT_MAX_AGE_SECONDS = 300

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


@dataclass
class HookState:
    """A session's hook-reported state."""

    state: str
    trigger: str
    session_id: str
    started_at: str

    @property
    def is_compacting(self) -> bool:
        return self.state == "compacting"

    def age_seconds(self, now: Optional[datetime] = None) -> Optional[float]:
        """Seconds since the hook wrote this state, or None if unparseable."""
        try:
            started = datetime.fromisoformat(self.started_at.replace("Z", "+00:00"))
        except ValueError:
            return None
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        now = now or datetime.now(timezone.utc)
        return (now - started).total_seconds()


def is_valid_session_id(session_id: str) -> bool:
    """Check that a session ID is safe to use as a file name."""
    return bool(session_id) and _SESSION_ID_RE.match(session_id) is not None


def _state_path(session_id: str, state_dir: Optional[Path]) -> Path:
    return (state_dir or get_hook_state_dir()) / f"{session_id}.json"


def read_state(
    session_id: str,
    state_dir: Optional[Path] = None,
    max_age_seconds: float = DEFAULT_MAX_AGE_SECONDS,
    now: Optional[datetime] = None,
) -> Optional[HookState]:
    """Read a session's hook state if present and fresh.

    Stale files are removed on a best-effort basis.

    Args:
        session_id: Session to look up.
        state_dir: Directory holding state files. Defaults to the data dir.
        max_age_seconds: Freshness limit.
        now: Current time (for tests).

    Returns:
        HookState, or None if missing, invalid, or stale.
    """
    if not is_valid_session_id(session_id):
        return None

    path = _state_path(session_id, state_dir)
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
        state = HookState(
            state=str(data["state"]),
            trigger=str(data.get("trigger", "unknown")),
            session_id=str(data.get("session_id", session_id)),
            started_at=str(data["started_at"]),
        )
    except FileNotFoundError:
        return None
    except (OSError, ValueError, KeyError, TypeError) as e:
        logger.debug(f"Ignoring unreadable hook state {path}: {e}")
        return None

    age = state.age_seconds(now)
    if age is None or age > max_age_seconds:
        logger.debug(f"Hook state for {session_id} is stale (age={age})")
        try:
            path.unlink()
        except OSError:
            pass
        return None
    return state


def write_state(
    session_id: str,
    state: str = "compacting",
    trigger: str = "auto",
    state_dir: Optional[Path] = None,
    now: Optional[datetime] = None,
) -> Path:
    """Write a session's hook state atomically.

    Raises:
        StatsIOError: If the session ID is unsafe or the file cannot be written.
    """
    if not is_valid_session_id(session_id):
        raise StatsIOError(f"Invalid session id for hook state: {session_id!r}")

    hook_state = HookState(
        state=state,
        trigger=trigger,
        session_id=session_id,
        started_at=(now or datetime.now(timezone.utc)).isoformat(),
    )
    path = _state_path(session_id, state_dir)
    tmp_path = path.with_suffix(".json.tmp")
    try:
        ensure_directory(path.parent)
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(asdict(hook_state), f)
        os.replace(tmp_path, path)
    except OSError as e:
        raise StatsIOError(f"Failed to write hook state {path}: {e}") from e
    return path


def clear_state(session_id: str, state_dir: Optional[Path] = None) -> bool:
    """Remove a session's hook state.

    Returns:
        True if a file was removed.
    """
    if not is_valid_session_id(session_id):
        return False
    try:
        _state_path(session_id, state_dir).unlink()
        return True
    except FileNotFoundError:
        return False
    except OSError as e:
        raise StatsIOError(f"Failed to clear hook state for {session_id}: {e}") from e
