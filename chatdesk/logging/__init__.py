"""
Chatdesk Logging System.

Provides structured JSONL logging for:
- Session lifecycle (start, status changes, queueing, interrupt, close)
- Permission requests and decisions
- Turn results (cost, tokens, duration)
- Time-tracking segments

Usage:
    from chatdesk.logging import session_logger, SessionLogEntry, now_iso

    entry = SessionLogEntry(
        timestamp=now_iso(),
        session_id="chat-123",
        event_type="start",
    )
    session_logger.info(entry.to_json())

Logs are written to ~/.chatdesk/logs/ (override with CHATDESK_LOG_DIR):
    - session.jsonl
    - permission.jsonl
    - turn.jsonl
    - activity.jsonl
"""

import logging
import threading
from contextvars import ContextVar
from typing import Any

from .config import LogConfig, get_config, set_config
from .entries import (
    ActivityLogEntry,
    PermissionLogEntry,
    SessionLogEntry,
    TurnLogEntry,
    now_iso,
)
from .handlers import create_jsonl_logger

# Per-task correlation context; sessions share one event loop.
_session_id: ContextVar[str] = ContextVar("chatdesk_session_id", default="unknown")
_project_id: ContextVar[str] = ContextVar("chatdesk_project_id", default="")


def set_session_id(session_id: str) -> None:
    """Set the current session ID for log correlation."""
    _session_id.set(session_id)


def get_session_id() -> str:
    """Get the current session ID, or 'unknown' if not set."""
    return _session_id.get()


def set_project_id(project_id: str) -> None:
    """Set the current project id for log context."""
    _project_id.set(project_id)


def get_project_id() -> str:
    """Get the current project id, or empty string if not set."""
    return _project_id.get()


_STREAMS = ("session", "permission", "turn", "activity")
_loggers: dict[str, logging.Logger] = {}
_init_lock = threading.Lock()


def _ensure_loggers() -> None:
    """Initialize loggers on first use."""
    if _loggers:
        return

    with _init_lock:
        if _loggers:
            return

        config = get_config()
        for stream in _STREAMS:
            _loggers[stream] = create_jsonl_logger(
                f"chatdesk.logs.{stream}",
                getattr(config, f"{stream}_log_path"),
                level=getattr(config, f"{stream}_level"),
                max_bytes=config.max_file_size_bytes,
                backup_count=config.backup_count,
            )


def reset_loggers() -> None:
    """Close the structured loggers so the next use picks up a new config."""
    with _init_lock:
        for logger in _loggers.values():
            for handler in list(logger.handlers):
                logger.removeHandler(handler)
                handler.close()
        _loggers.clear()


class _LazyLogger:
    """Lazy wrapper that initializes the actual logger on first use."""

    def __init__(self, name: str):
        self._name = name

    def _get_logger(self) -> logging.Logger:
        _ensure_loggers()
        return _loggers[self._name]

    def debug(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().debug(msg, *args, **kwargs)

    def info(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().info(msg, *args, **kwargs)

    def warning(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().warning(msg, *args, **kwargs)

    def error(self, msg: str, *args: Any, **kwargs: Any) -> None:
        self._get_logger().error(msg, *args, **kwargs)


session_logger = _LazyLogger("session")
permission_logger = _LazyLogger("permission")
turn_logger = _LazyLogger("turn")
activity_logger = _LazyLogger("activity")


__all__ = [
    "session_logger",
    "permission_logger",
    "turn_logger",
    "activity_logger",
    "SessionLogEntry",
    "PermissionLogEntry",
    "TurnLogEntry",
    "ActivityLogEntry",
    "now_iso",
    "get_session_id",
    "set_session_id",
    "get_project_id",
    "set_project_id",
    "reset_loggers",
    "LogConfig",
    "get_config",
    "set_config",
]
