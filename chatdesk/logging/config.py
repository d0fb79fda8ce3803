"""
Logging Configuration for chatdesk.

Defines the log directory, rotation settings and per-stream log levels.
"""

import os
from dataclasses import dataclass, field
from pathlib import Path


@dataclass
class LogConfig:
    """Configuration for the chatdesk structured logs."""

    log_dir: Path = field(default_factory=lambda: Path.home() / ".chatdesk" / "logs")

    # Rotation
    max_file_size_bytes: int = 10 * 1024 * 1024  # 10MB
    backup_count: int = 5

    # Log levels: DEBUG, INFO, WARNING, ERROR
    session_level: str = "INFO"
    permission_level: str = "INFO"
    turn_level: str = "INFO"
    activity_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "LogConfig":
        """Load config from environment variables with defaults."""
        config = cls()

        if level := os.environ.get("CHATDESK_LOG_LEVEL"):
            config.session_level = level
            config.permission_level = level
            config.turn_level = level
            config.activity_level = level

        if log_dir := os.environ.get("CHATDESK_LOG_DIR"):
            config.log_dir = Path(log_dir)

        # Max file size in MB; ignore garbage
        if max_size := os.environ.get("CHATDESK_LOG_MAX_SIZE_MB"):
            try:
                config.max_file_size_bytes = int(max_size) * 1024 * 1024
            except ValueError:
                pass

        return config

    def ensure_log_dir(self) -> None:
        """Create log directory if it doesn't exist."""
        self.log_dir.mkdir(parents=True, exist_ok=True)

    @property
    def session_log_path(self) -> Path:
        """Session lifecycle log."""
        return self.log_dir / "session.jsonl"

    @property
    def permission_log_path(self) -> Path:
        """Permission request/decision log."""
        return self.log_dir / "permission.jsonl"

    @property
    def turn_log_path(self) -> Path:
        """Per-turn result log (cost, tokens, duration)."""
        return self.log_dir / "turn.jsonl"

    @property
    def activity_log_path(self) -> Path:
        """Time-tracking segment log."""
        return self.log_dir / "activity.jsonl"


_config: LogConfig | None = None


def get_config() -> LogConfig:
    """Get the global log config, initializing from env if needed."""
    global _config
    if _config is None:
        _config = LogConfig.from_env()
        _config.ensure_log_dir()
    return _config


def set_config(config: LogConfig) -> None:
    """Set a custom log config (useful for testing)."""
    global _config
    _config = config
    _config.ensure_log_dir()
