"""Configuration for the statusline engine.

The configuration is stored as YAML (default: ~/.config/statusline/config.yaml).
It is loaded once per process by the CLI and passed explicitly into every
component that needs it.

Example config.yaml:

    context:
      window_size: 200000
      adaptive_learning: true
      percentage_mode: working
      model_windows:
        "Claude Sonnet 4.5": 1000000
    database:
      json_backup: false
      retention_days_sessions: 30
    retry:
      db_ops:
        max_attempts: 8
"""

import os
from dataclasses import dataclass, field, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError
from .paths import ensure_directory, get_config_file
from .retry import RetrySettings

PERCENTAGE_MODES = ("full", "working")

# Thresholds shipped by earlier releases; either one means "not customized".
LEGACY_DEFAULT_THRESHOLDS = (75.0, 80.0)
FULL_MODE_THRESHOLD = 75.0
WORKING_MODE_THRESHOLD = 94.0

DEFAULT_RETENTION_DAYS_SESSIONS = 90
DEFAULT_RETENTION_DAYS_DAILY = 365
DEFAULT_RETENTION_DAYS_MONTHLY = 0


def _check_type(section: str, key: str, value: Any, expected: tuple) -> Any:
    # bool is an int subclass; don't let `true` pass as a number
    if isinstance(value, bool) and bool not in expected:
        raise ConfigError(f"{section}.{key}: expected a number, got {value!r}")
    if not isinstance(value, expected):
        names = "/".join(t.__name__ for t in expected)
        raise ConfigError(f"{section}.{key}: expected {names}, got {value!r}")
    return value


def _section(data: Dict[str, Any], name: str) -> Dict[str, Any]:
    value = data.get(name) or {}
    if not isinstance(value, dict):
        raise ConfigError(f"{name}: expected a mapping, got {value!r}")
    return value


@dataclass
class ContextConfig:
    """Context window estimation settings."""

    # Fallback window for unknown models (Haiku included)
    window_size: int = 200_000

    # Exact model-name overrides, highest priority
    model_windows: Dict[str, int] = field(default_factory=dict)

    # Learn real compaction points from observed token drops (experimental)
    adaptive_learning: bool = False
    learning_confidence_threshold: float = 0.7

    # Tokens reserved for responses; full window = working window + buffer
    buffer_size: int = 40_000

    auto_compact_threshold: float = FULL_MODE_THRESHOLD

    # "full" or "working"
    percentage_mode: str = "full"

    def effective_threshold(self) -> float:
        """Get the approaching-limit threshold for the configured mode.

        A user-set threshold (anything other than 75 or 80) is respected as-is.
        Otherwise "full" mode warns at 75% and "working" mode at 94%, which is
        the same absolute token count (150K of 200K vs 150K of 160K).
        """
        is_custom = all(
            abs(self.auto_compact_threshold - legacy) > 0.1
            for legacy in LEGACY_DEFAULT_THRESHOLDS
        )
        if is_custom:
            return self.auto_compact_threshold
        if self.percentage_mode == "working":
            return WORKING_MODE_THRESHOLD
        return FULL_MODE_THRESHOLD

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ContextConfig":
        """Create context config from a dictionary, validating types."""
        config = cls()
        for key in ("window_size", "buffer_size"):
            if key in data:
                value = _check_type("context", key, data[key], (int,))
                if value < 0:
                    raise ConfigError(f"context.{key}: must be >= 0, got {value}")
                setattr(config, key, value)
        for key in ("learning_confidence_threshold", "auto_compact_threshold"):
            if key in data:
                setattr(config, key, float(_check_type("context", key, data[key], (int, float))))
        if "adaptive_learning" in data:
            config.adaptive_learning = _check_type(
                "context", "adaptive_learning", data["adaptive_learning"], (bool,)
            )
        if "percentage_mode" in data:
            mode = _check_type("context", "percentage_mode", data["percentage_mode"], (str,))
            if mode not in PERCENTAGE_MODES:
                raise ConfigError(
                    f"context.percentage_mode: must be one of {list(PERCENTAGE_MODES)}, got {mode!r}"
                )
            config.percentage_mode = mode
        windows = data.get("model_windows") or {}
        if not isinstance(windows, dict):
            raise ConfigError(f"context.model_windows: expected a mapping, got {windows!r}")
        for model, size in windows.items():
            _check_type("context.model_windows", str(model), size, (int,))
        config.model_windows = {str(k): v for k, v in windows.items()}
        return config


@dataclass
class DatabaseConfig:
    """SQLite ledger and JSON mirror settings."""

    # Relative paths resolve against the data directory
    path: str = "stats.db"
    busy_timeout_ms: int = 10_000
    json_backup: bool = True

    # Retention horizons in days; None uses the defaults, 0 keeps forever
    retention_days_sessions: Optional[int] = None
    retention_days_daily: Optional[int] = None
    retention_days_monthly: Optional[int] = None

    def retention(self) -> Dict[str, int]:
        """Get the effective retention horizons keyed by table kind."""
        return {
            "sessions": _or_default(self.retention_days_sessions, DEFAULT_RETENTION_DAYS_SESSIONS),
            "daily": _or_default(self.retention_days_daily, DEFAULT_RETENTION_DAYS_DAILY),
            "monthly": _or_default(self.retention_days_monthly, DEFAULT_RETENTION_DAYS_MONTHLY),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DatabaseConfig":
        """Create database config from a dictionary, validating types."""
        config = cls()
        if "path" in data:
            config.path = _check_type("database", "path", data["path"], (str,))
        if "busy_timeout_ms" in data:
            config.busy_timeout_ms = _check_type(
                "database", "busy_timeout_ms", data["busy_timeout_ms"], (int,)
            )
        if "json_backup" in data:
            config.json_backup = _check_type("database", "json_backup", data["json_backup"], (bool,))
        for key in ("retention_days_sessions", "retention_days_daily", "retention_days_monthly"):
            value = data.get(key)
            if value is not None:
                _check_type("database", key, value, (int,))
                if value < 0:
                    raise ConfigError(f"database.{key}: must be >= 0, got {value}")
            setattr(config, key, value)
        return config


def _or_default(value: Optional[int], default: int) -> int:
    return default if value is None else value


@dataclass
class RetryConfig:
    """Retry settings per operation category."""

    file_ops: RetrySettings = field(
        default_factory=lambda: RetrySettings(3, 100, 5000, 2.0)
    )
    db_ops: RetrySettings = field(
        default_factory=lambda: RetrySettings(5, 50, 2000, 1.5)
    )
    git_ops: RetrySettings = field(
        default_factory=lambda: RetrySettings(3, 100, 3000, 2.0)
    )
    network_ops: RetrySettings = field(
        default_factory=lambda: RetrySettings(2, 200, 1000, 2.0)
    )

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RetryConfig":
        """Create retry config from a dictionary; unspecified keys keep defaults."""
        config = cls()
        for category in ("file_ops", "db_ops", "git_ops", "network_ops"):
            section = _section(data, category)
            settings = getattr(config, category)
            for f in fields(RetrySettings):
                if f.name not in section:
                    continue
                value = section[f.name]
                if f.name == "backoff_factor":
                    value = float(_check_type(f"retry.{category}", f.name, value, (int, float)))
                else:
                    _check_type(f"retry.{category}", f.name, value, (int,))
                if value < 0:
                    raise ConfigError(f"retry.{category}.{f.name}: must be >= 0, got {value}")
                setattr(settings, f.name, value)
        return config


@dataclass
class TranscriptConfig:
    """Transcript reading settings."""

    # Number of trailing lines scanned for usage data
    buffer_lines: int = 50

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TranscriptConfig":
        config = cls()
        if "buffer_lines" in data:
            value = _check_type("transcript", "buffer_lines", data["buffer_lines"], (int,))
            if value < 1:
                raise ConfigError(f"transcript.buffer_lines: must be >= 1, got {value}")
            config.buffer_lines = value
        return config


@dataclass
class Config:
    """Complete statusline configuration."""

    context: ContextConfig = field(default_factory=ContextConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)
    retry: RetryConfig = field(default_factory=RetryConfig)
    transcript: TranscriptConfig = field(default_factory=TranscriptConfig)

    @classmethod
    def find_config_file(cls) -> Optional[Path]:
        """Find the config file in standard locations.

        Checks, in order:
        1. STATUSLINE_CONFIG environment variable
        2. <config dir>/config.yaml

        Returns:
            Path to an existing config file, or None.
        """
        env_path = os.environ.get("STATUSLINE_CONFIG")
        if env_path:
            path = Path(env_path).expanduser()
            if path.exists():
                return path

        path = get_config_file()
        if path.exists():
            return path
        return None

    @classmethod
    def load(cls, path: Optional[Path] = None) -> "Config":
        """Load configuration from file, or use defaults.

        Args:
            path: Path to config file. Defaults to find_config_file().

        Returns:
            Config instance (defaults when no file exists).

        Raises:
            ConfigError: If the file cannot be read or contains invalid values.
        """
        if path is None:
            path = cls.find_config_file()

        if path is None or not path.exists():
            config = cls()
        else:
            try:
                with open(path, "r", encoding="utf-8") as f:
                    data = yaml.safe_load(f)
            except OSError as e:
                raise ConfigError(f"Failed to read config file {path}: {e}") from e
            except yaml.YAMLError as e:
                raise ConfigError(f"Failed to parse config file {path}: {e}") from e
            config = cls.from_dict(data or {})

        config.apply_env_overrides()
        return config

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Config":
        """Create config from dictionary.

        Args:
            data: Dictionary with config sections.

        Returns:
            Config instance.

        Raises:
            ConfigError: If a section or value has the wrong type.
        """
        if not isinstance(data, dict):
            raise ConfigError(f"Config root must be a mapping, got {type(data).__name__}")
        return cls(
            context=ContextConfig.from_dict(_section(data, "context")),
            database=DatabaseConfig.from_dict(_section(data, "database")),
            retry=RetryConfig.from_dict(_section(data, "retry")),
            transcript=TranscriptConfig.from_dict(_section(data, "transcript")),
        )

    def apply_env_overrides(self) -> None:
        """Apply environment variable overrides (STATUSLINE_JSON_BACKUP)."""
        value = os.environ.get("STATUSLINE_JSON_BACKUP")
        if value is not None:
            self.database.json_backup = value.strip().lower() in ("true", "1")

    def to_dict(self) -> Dict[str, Any]:
        """Convert config to dictionary.

        Returns:
            Dictionary representation.
        """
        return asdict(self)

    def save(self, path: Optional[Path] = None) -> None:
        """Save configuration to file.

        Args:
            path: Path to config file. Defaults to standard location.
        """
        if path is None:
            path = get_config_file()

        ensure_directory(path.parent)

        with open(path, "w", encoding="utf-8") as f:
            yaml.safe_dump(self.to_dict(), f, sort_keys=False)
