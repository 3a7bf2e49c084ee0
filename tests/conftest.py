"""Shared fixtures for statusline tests.

Every test runs against its own data and config directories so nothing
touches the real user stats database.
"""

import json
from pathlib import Path
from typing import Any, Dict, Iterable, Optional

import pytest

from statusline.core.config import Config
from statusline.core.retry import RetrySettings
from statusline.stats import StatsStore


def no_delay(max_attempts: int = 3) -> RetrySettings:
    """Retry settings that never sleep."""
    return RetrySettings(max_attempts=max_attempts, initial_delay_ms=0, max_delay_ms=0)


def assistant_entry(
    input_tokens: int = 0,
    output_tokens: int = 0,
    cache_read: int = 0,
    cache_creation: int = 0,
    timestamp: Optional[str] = None,
) -> Dict[str, Any]:
    """Build one assistant transcript record."""
    entry: Dict[str, Any] = {
        "type": "assistant",
        "message": {
            "role": "assistant",
            "usage": {
                "input_tokens": input_tokens,
                "output_tokens": output_tokens,
                "cache_read_input_tokens": cache_read,
                "cache_creation_input_tokens": cache_creation,
            },
        },
    }
    if timestamp:
        entry["timestamp"] = timestamp
    return entry


def write_transcript(path: Path, entries: Iterable[Any]) -> Path:
    """Write entries as JSONL; strings are written verbatim."""
    with open(path, "w", encoding="utf-8") as f:
        for entry in entries:
            f.write(entry if isinstance(entry, str) else json.dumps(entry))
            f.write("\n")
    return path


@pytest.fixture(autouse=True)
def isolated_dirs(tmp_path, monkeypatch):
    """Point the data and config directories at a temporary location."""
    data_dir = tmp_path / "data"
    config_dir = tmp_path / "config"
    monkeypatch.setenv("STATUSLINE_DATA_DIR", str(data_dir))
    monkeypatch.setenv("STATUSLINE_CONFIG_DIR", str(config_dir))
    for name in ("STATUSLINE_CONFIG", "STATUSLINE_JSON_BACKUP", "STATUSLINE_LOG_LEVEL"):
        monkeypatch.delenv(name, raising=False)
    return data_dir


@pytest.fixture
def config():
    """Default configuration with zero-delay retries."""
    cfg = Config()
    cfg.retry.db_ops = no_delay(3)
    cfg.retry.file_ops = no_delay(3)
    return cfg


@pytest.fixture
def store(config, isolated_dirs):
    """StatsStore in the isolated data directory."""
    with StatsStore(config, data_dir=isolated_dirs, sleep=lambda _: None) as s:
        yield s


@pytest.fixture
def transcript(tmp_path):
    """Factory writing a transcript file under tmp_path."""

    def make(entries: Iterable[Any], name: str = "session.jsonl") -> Path:
        return write_transcript(tmp_path / name, entries)

    return make
