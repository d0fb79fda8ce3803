"""
Log Entry Data Structures for chatdesk.

Structured entries for session lifecycle, permission decisions, turn
results and time-tracking segments.
"""

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Any


class _JsonEntry:
    """Shared serialization for log entry dataclasses."""

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(asdict(self), default=str)  # type: ignore[call-overload]

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return asdict(self)  # type: ignore[call-overload]

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Any:
        """Create from dictionary, ignoring unknown keys."""
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})  # type: ignore[attr-defined]


@dataclass
class SessionLogEntry(_JsonEntry):
    """Log entry for session lifecycle events."""

    timestamp: str  # ISO 8601
    session_id: str
    event_type: str  # "start", "status", "send", "queued", "interrupt", "close", "error"

    from_state: str | None = None
    to_state: str | None = None
    cwd: str = ""
    project_id: str = ""
    model: str = ""
    permission_mode: str = ""
    resume_id: str | None = None
    fork_anchor: str | None = None
    prompt_chars: int = 0
    queue_length: int = 0

    # Session end metrics (populated on "close")
    total_cost_usd: float = 0.0
    total_tokens: int = 0
    discarded_prompts: int = 0

    error: str | None = None
    error_type: str | None = None


@dataclass
class PermissionLogEntry(_JsonEntry):
    """Log entry for permission requests and their resolution."""

    timestamp: str
    session_id: str
    request_id: str
    event_type: str  # "registered", "resolved", "auto", "cancelled"
    tool_name: str = ""
    behavior: str | None = None  # "allow" / "deny"
    mode_update: str | None = None
    latency_ms: int = 0
    message: str | None = None


@dataclass
class TurnLogEntry(_JsonEntry):
    """Log entry written for every result event."""

    timestamp: str
    session_id: str
    subtype: str
    is_error: bool = False
    aborted: bool = False
    model: str = ""
    cost_usd: float = 0.0
    total_tokens: int = 0
    duration_ms: int = 0
    num_turns: int = 0
    tool_calls: int = 0
    error: str | None = None


@dataclass
class ActivityLogEntry(_JsonEntry):
    """Log entry for persisted time-tracking segments and load cleanup."""

    timestamp: str
    event_type: str  # "segment", "sanitized"
    project_id: str | None = None  # None for the global counter
    reason: str = ""  # "idle", "sleep", "midnight", "exit", "stop", "pause"
    start: str | None = None
    end: str | None = None
    duration_ms: int = 0
    dropped: dict[str, int] | None = None


def now_iso() -> str:
    """Get current time as ISO 8601 string."""
    return datetime.now().isoformat()
