"""XDG-compliant path resolution for the statusline.

This module provides standardized paths for statusline data following the XDG
Base Directory Specification via platformdirs.

Directory structure:
    ~/.local/share/statusline/       # STATUSLINE_DATA_DIR
    ├── stats.db                     # SQLite ledger (primary)
    ├── stats.json                   # JSON mirror (backup)
    └── state/                       # Hook state, one file per session
        └── {session_id}.json

    ~/.config/statusline/            # STATUSLINE_CONFIG_DIR
    └── config.yaml
"""

import os
from pathlib import Path
from typing import TYPE_CHECKING

import platformdirs

if TYPE_CHECKING:
    from .config import Config

APP_NAME = "statusline"


def get_data_dir() -> Path:
    """Get the statusline data directory.

    Uses XDG standard paths via platformdirs:
    - Linux: ~/.local/share/statusline
    - macOS: ~/Library/Application Support/statusline
    - Windows: ~/AppData/Local/statusline

    Can be overridden with STATUSLINE_DATA_DIR environment variable.

    Returns:
        Path to the data directory.
    """
    env_dir = os.environ.get("STATUSLINE_DATA_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path(platformdirs.user_data_dir(APP_NAME, appauthor=False))


def get_config_dir() -> Path:
    """Get the statusline config directory.

    Can be overridden with STATUSLINE_CONFIG_DIR environment variable.
    """
    env_dir = os.environ.get("STATUSLINE_CONFIG_DIR")
    if env_dir:
        return Path(env_dir).expanduser().resolve()
    return Path(platformdirs.user_config_dir(APP_NAME, appauthor=False))


def get_config_file() -> Path:
    """Get the path to the default config file.

    Returns:
        Path to config.yaml.
    """
    return get_config_dir() / "config.yaml"


def get_stats_db_path(config: "Config", data_dir: Path | None = None) -> Path:
    """Get the path to the SQLite stats database.

    Relative ``database.path`` values are resolved against the data directory.

    Args:
        config: Loaded configuration.
        data_dir: Data directory override. Defaults to get_data_dir().

    Returns:
        Path to the database file.
    """
    db_path = Path(config.database.path).expanduser()
    if db_path.is_absolute():
        return db_path
    return (data_dir or get_data_dir()) / db_path


def get_stats_json_path(data_dir: Path | None = None) -> Path:
    """Get the path to the JSON stats mirror."""
    return (data_dir or get_data_dir()) / "stats.json"


def get_hook_state_dir(data_dir: Path | None = None) -> Path:
    """Get the directory holding per-session hook state files."""
    return (data_dir or get_data_dir()) / "state"


def ensure_directory(path: Path) -> Path:
    """Ensure a directory exists, creating it if necessary.

    Args:
        path: Path to the directory.

    Returns:
        The path (for chaining).
    """
    path.mkdir(parents=True, exist_ok=True)
    return path
