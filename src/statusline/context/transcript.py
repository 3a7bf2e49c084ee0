"""Transcript reading: token usage, durations and modification recency.

Transcripts are newline-delimited JSON written by the assistant, one record
per message:

    {"message": {"role": "assistant", "usage": {"input_tokens": 12, ...}},
     "timestamp": "2025-08-25T10:05:00.000Z"}

Only a trailing window of lines is examined so large transcripts stay cheap.
"""

import json
import logging
import os
import time
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional, Union

from ..core.errors import InvalidPathError
from .constants import (
    MIN_TAIL_BYTES,
    RECENT_MODIFICATION_SECONDS,
    SMALL_FILE_BYTES,
    TAIL_BYTES_PER_LINE,
)
from .models import TokenBreakdown

logger = logging.getLogger(__name__)

PathLike = Union[str, os.PathLike]


def validate_transcript_path(path: PathLike) -> Path:
    """Validate and canonicalize a transcript path.

    Args:
        path: Path as given by the caller.

    Returns:
        The resolved path (symlinks and relative segments removed).

    Raises:
        InvalidPathError: If the path contains null bytes, cannot be resolved,
            is not a regular file, or does not have a .jsonl extension.
    """
    raw = os.fspath(path)
    if "\0" in raw:
        raise InvalidPathError("Path contains null bytes")
    if not raw.strip():
        raise InvalidPathError("Path is empty")

    try:
        resolved = Path(raw).resolve(strict=True)
    except (OSError, RuntimeError) as e:
        raise InvalidPathError(f"Cannot canonicalize path: {raw}") from e

    if not resolved.is_file():
        raise InvalidPathError(f"Path is not a file: {raw}")

    if resolved.suffix.lower() != ".jsonl":
        raise InvalidPathError("Only .jsonl files are allowed for transcripts")

    return resolved


def read_tail_lines(path: Path, buffer_lines: int) -> List[str]:
    """Read up to ``buffer_lines`` trailing lines of a file.

    Small files are streamed through a bounded deque. Large files are read
    from an estimated offset near the end; the first line read is dropped
    because it is probably cut in half.
    """
    buffer_lines = max(1, buffer_lines)
    file_size = path.stat().st_size

    with open(path, "rb") as f:
        if file_size < SMALL_FILE_BYTES:
            window: deque = deque(maxlen=buffer_lines)
            for raw_line in f:
                window.append(raw_line)
            raw_lines = list(window)
        else:
            read_size = max(buffer_lines * TAIL_BYTES_PER_LINE, MIN_TAIL_BYTES)
            start = max(0, file_size - read_size)
            f.seek(start)
            raw_lines = f.read().splitlines()
            if start > 0 and raw_lines:
                raw_lines = raw_lines[1:]
            raw_lines = raw_lines[-buffer_lines:]

    return [line.decode("utf-8", errors="replace").rstrip("\r\n") for line in raw_lines]


def _usage_from_line(line: str) -> Optional[TokenBreakdown]:
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    if not isinstance(entry, dict):
        return None
    message = entry.get("message")
    if not isinstance(message, dict) or message.get("role") != "assistant":
        return None
    usage = message.get("usage")
    if not isinstance(usage, dict):
        return None
    return TokenBreakdown.from_usage(usage)


def get_token_breakdown(path: PathLike, buffer_lines: int = 50) -> Optional[TokenBreakdown]:
    """Get the peak token breakdown from a transcript's trailing lines.

    Picks the assistant message with the highest total rather than the last
    one, since transcripts can contain duplicated or reordered entries.

    Args:
        path: Transcript file path.
        buffer_lines: Number of trailing lines to scan.

    Returns:
        The breakdown with the highest total, or None if the path is invalid
        or no assistant message carries a positive token count.
    """
    try:
        safe_path = validate_transcript_path(path)
        lines = read_tail_lines(safe_path, buffer_lines)
    except InvalidPathError as e:
        logger.debug(f"Transcript rejected: {e}")
        return None
    except OSError as e:
        logger.debug(f"Transcript unreadable: {e}")
        return None

    best: Optional[TokenBreakdown] = None
    for line in lines:
        breakdown = _usage_from_line(line)
        if breakdown is None:
            continue
        if breakdown.total() > (best.total() if best else 0):
            best = breakdown
    return best


def get_token_count(path: PathLike, buffer_lines: int = 50) -> Optional[int]:
    """Get the peak total token count from a transcript, or None."""
    breakdown = get_token_breakdown(path, buffer_lines)
    return breakdown.total() if breakdown else None


def parse_iso8601(timestamp: str) -> Optional[datetime]:
    """Parse an ISO 8601 timestamp into an aware datetime.

    Accepts "Z" and explicit offsets; naive timestamps are taken as UTC.
    A date without the "T" separator is rejected.
    """
    if not isinstance(timestamp, str) or "T" not in timestamp:
        return None
    try:
        parsed = datetime.fromisoformat(timestamp.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _timestamp_from_line(line: str) -> Optional[datetime]:
    try:
        entry = json.loads(line)
    except ValueError:
        return None
    if not isinstance(entry, dict):
        return None
    return parse_iso8601(entry.get("timestamp"))


def parse_duration(path: PathLike) -> Optional[int]:
    """Get the elapsed seconds between a transcript's first and last entries.

    Returns:
        Whole seconds, or None if the path is invalid, either timestamp is
        missing, or the last timestamp is not after the first.
    """
    try:
        safe_path = validate_transcript_path(path)
    except InvalidPathError as e:
        logger.debug(f"Transcript rejected: {e}")
        return None

    first: Optional[datetime] = None
    last: Optional[datetime] = None
    seen_first_line = False
    try:
        with open(safe_path, "r", encoding="utf-8", errors="replace") as f:
            for line in f:
                timestamp = _timestamp_from_line(line)
                if not seen_first_line:
                    seen_first_line = True
                    first = timestamp
                if timestamp is not None:
                    last = timestamp
    except OSError as e:
        logger.debug(f"Transcript unreadable: {e}")
        return None

    if first is None or last is None or last <= first:
        return None
    return int((last - first).total_seconds())


def is_recently_modified(
    path: PathLike,
    window_seconds: float = RECENT_MODIFICATION_SECONDS,
    now: Optional[float] = None,
) -> bool:
    """Check whether a transcript was written within the last ``window_seconds``.

    Invalid or unreadable paths count as not recent.
    """
    try:
        safe_path = validate_transcript_path(path)
        modified = safe_path.stat().st_mtime
    except (InvalidPathError, OSError):
        return False
    elapsed = (time.time() if now is None else now) - modified
    return 0 <= elapsed < window_seconds
