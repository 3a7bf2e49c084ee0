"""JSON mirror of the stats ledger.

A redundant copy kept next to the SQLite database for recovery. It applies
the same delta rules against its own contents and is never consulted to
settle conflicts with the database. A missing or corrupt file is replaced.

Document shape:

    {
      "version": "1.0",
      "created": "...", "last_updated": "...",
      "sessions": {"<id>": {"start_time", "last_updated", "cost",
                            "lines_added", "lines_removed", "max_tokens_observed"}},
      "daily":   {"2025-08-25": {"total_cost", "lines_added", "lines_removed", "sessions": [...]}},
      "monthly": {"2025-08":    {"total_cost", "lines_added", "lines_removed", "sessions": [...]}},
      "all_time": {"total_cost", "sessions", "since"},
      "pruned_sessions": {"<id>": {"start_time", "cost", "lines_added",
                                   "lines_removed", "max_tokens_observed", "pruned_at"}}
    }
"""

import json
import logging
import os
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Optional

from ..core.errors import StatsIOError
from ..core.paths import ensure_directory
from .database import coerce_float, coerce_int, coerce_str, day_key, month_key, utc_iso
from .models import PruneResult

logger = logging.getLogger(__name__)

DOCUMENT_VERSION = "1.0"


def empty_document(now_iso: str) -> Dict[str, Any]:
    return {
        "version": DOCUMENT_VERSION,
        "created": now_iso,
        "last_updated": now_iso,
        "sessions": {},
        "daily": {},
        "monthly": {},
        "all_time": {"total_cost": 0.0, "sessions": 0, "since": now_iso},
    }


class JsonStatsMirror:
    """Read-modify-write access to stats.json."""

    def __init__(self, path: Path):
        self.path = Path(path)

    def load(self) -> Optional[Dict[str, Any]]:
        """Load the document.

        Returns:
            The parsed document, or None if the file is missing or corrupt.

        Raises:
            StatsIOError: If the file exists but cannot be read.
        """
        try:
            with open(self.path, "r", encoding="utf-8") as f:
                document = json.load(f)
        except FileNotFoundError:
            return None
        except ValueError as e:
            logger.warning(f"Ignoring corrupt JSON stats mirror {self.path}: {e}")
            return None
        except OSError as e:
            raise StatsIOError(f"Failed to read {self.path}: {e}") from e
        if not _is_well_formed(document):
            logger.warning(f"Ignoring malformed JSON stats mirror {self.path}")
            return None
        return document

    def save(self, document: Dict[str, Any]) -> None:
        """Write the document atomically (temp file + rename).

        Raises:
            StatsIOError: If the file cannot be written.
        """
        try:
            ensure_directory(self.path.parent)
            fd, tmp_name = tempfile.mkstemp(prefix=".stats-", suffix=".json", dir=self.path.parent)
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as f:
                    json.dump(document, f, indent=2)
                    f.write("\n")
                os.replace(tmp_name, self.path)
            except BaseException:
                try:
                    os.unlink(tmp_name)
                except OSError:
                    pass
                raise
        except OSError as e:
            raise StatsIOError(f"Failed to write {self.path}: {e}") from e


    def record(
        self,
        session_id: str,
        cost: float,
        lines_added: int,
        lines_removed: int,
        timestamp: datetime,
        max_tokens: Optional[int] = None,
        model_name: Optional[str] = None,
    ) -> None:
        """Apply one report to the mirror; same semantics as StatsDatabase.record()."""
        now_iso = utc_iso(timestamp)
        document = self.load() or empty_document(now_iso)
        sessions = document.setdefault("sessions", {})

        previous = sessions.get(session_id)
        if previous is None:
            previous = document.setdefault("pruned_sessions", {}).pop(session_id, None)
        is_new = previous is None
        previous = previous or {}
        cost_delta = cost - coerce_float(previous.get("cost"))
        added_delta = lines_added - coerce_int(previous.get("lines_added"))
        removed_delta = lines_removed - coerce_int(previous.get("lines_removed"))

        sessions[session_id] = {
            "start_time": coerce_str(previous.get("start_time")) or now_iso,
            "last_updated": now_iso,
            "cost": cost,
            "lines_added": lines_added,
            "lines_removed": lines_removed,
            "max_tokens_observed": max(coerce_int(previous.get("max_tokens_observed")), max_tokens or 0),
            "model_name": model_name or coerce_str(previous.get("model_name")),
        }

        for section, key in (("daily", day_key(timestamp)), ("monthly", month_key(timestamp))):
            bucket = document.setdefault(section, {}).setdefault(
                key, {"total_cost": 0.0, "lines_added": 0, "lines_removed": 0, "sessions": []}
            )
            bucket["total_cost"] = coerce_float(bucket.get("total_cost")) + cost_delta
            bucket["lines_added"] = coerce_int(bucket.get("lines_added")) + added_delta
            bucket["lines_removed"] = coerce_int(bucket.get("lines_removed")) + removed_delta
            if not isinstance(bucket.get("sessions"), list):
                bucket["sessions"] = []
            if session_id not in bucket["sessions"]:
                bucket["sessions"].append(session_id)

        all_time = document.setdefault("all_time", {"total_cost": 0.0, "sessions": 0, "since": now_iso})
        all_time["total_cost"] = coerce_float(all_time.get("total_cost")) + cost_delta
        all_time["sessions"] = coerce_int(all_time.get("sessions")) + (1 if is_new else 0)
        all_time["since"] = coerce_str(all_time.get("since")) or now_iso

        document["last_updated"] = now_iso
        self.save(document)

    def prune(self, retention: Dict[str, int], now: datetime) -> PruneResult:
        """Apply retention horizons to the mirror, as StatsDatabase.prune() does.

        Pruned sessions keep their absolutes under ``pruned_sessions`` so a
        resumed session is not counted twice.
        """
        result = PruneResult()
        document = self.load()
        if document is None:
            return result

        days = retention.get("sessions", 0)
        if days > 0:
            cutoff = utc_iso(now - timedelta(days=days))
            pruned = document.setdefault("pruned_sessions", {})
            for session_id, data in list(document["sessions"].items()):
                if str(data.get("last_updated", "")) < cutoff:
                    del document["sessions"][session_id]
                    pruned[session_id] = {
                        "start_time": data.get("start_time"),
                        "cost": coerce_float(data.get("cost")),
                        "lines_added": coerce_int(data.get("lines_added")),
                        "lines_removed": coerce_int(data.get("lines_removed")),
                        "max_tokens_observed": coerce_int(data.get("max_tokens_observed")),
                        "pruned_at": utc_iso(now),
                    }
                    result.sessions += 1

        for section, days, key_for in (
            ("daily", retention.get("daily", 0), day_key),
            ("monthly", retention.get("monthly", 0), month_key),
        ):
            if days <= 0:
                continue
            cutoff = key_for(now - timedelta(days=days))
            buckets = document.get(section, {})
            for key in [k for k in buckets if k < cutoff]:
                del buckets[key]
                if section == "daily":
                    result.daily += 1
                else:
                    result.monthly += 1

        if result.total:
            self.save(document)
        return result


def _is_well_formed(document: Any) -> bool:
    """Check the document's structure: every section a mapping of mappings."""
    if not isinstance(document, dict) or not isinstance(document.get("sessions"), dict):
        return False
    for section in ("sessions", "pruned_sessions", "daily", "monthly"):
        entries = document.get(section, {})
        if not isinstance(entries, dict):
            return False
        if not all(isinstance(entry, dict) for entry in entries.values()):
            return False
    return isinstance(document.get("all_time", {}), dict)
