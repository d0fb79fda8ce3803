"""
Chatdesk - Exception Hierarchy

All chatdesk-specific exceptions inherit from ChatDeskError. Most of them
are raised inside a component and caught at its boundary, where they are
logged and turned into an artifact instead of tearing the session down.
"""

from typing import Any


class ChatDeskError(Exception):
    """Base exception for all chatdesk errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


# Configuration Errors
class ConfigError(ChatDeskError):
    """Raised when configuration is invalid or missing."""

    pass


class ProjectNotFoundError(ConfigError):
    """Raised when a project is not found in the projects file."""

    pass


# Session Errors
class SessionError(ChatDeskError):
    """Base exception for session lifecycle errors."""

    pass


class SessionStartFailed(SessionError):
    """Raised when the agent refuses the initial request of a session."""

    def __init__(self, message: str, session_id: str, cause: str | None = None):
        super().__init__(message, {"session_id": session_id, "cause": cause})
        self.session_id = session_id
        self.cause = cause


class SessionSendFailed(SessionError):
    """Raised when a prompt could not be delivered to an open session.

    The session stays open; the caller may retry.
    """

    def __init__(self, message: str, session_id: str, cause: str | None = None):
        super().__init__(message, {"session_id": session_id, "cause": cause})
        self.session_id = session_id
        self.cause = cause


class SessionNotFoundError(SessionError):
    """Raised when a session id is not in the registry."""

    pass


class DuplicateSessionError(SessionError):
    """Raised when a session id is registered twice in one process."""

    pass


class SessionClosedError(SessionError):
    """Raised when an operation targets a session that was already closed."""

    pass


# Stream Errors
class StreamError(ChatDeskError):
    """An error event arrived on the agent stream."""

    def __init__(self, message: str, session_id: str | None = None):
        super().__init__(message, {"session_id": session_id} if session_id else None)
        self.session_id = session_id


RESULT_SUBTYPE_MESSAGES = {
    "error_max_turns": "Maximum number of turns reached",
    "error_max_budget_usd": "Maximum budget reached",
    "error_during_execution": "An error occurred during execution",
}


class ResultError(ChatDeskError):
    """A result event reported is_error or a non-success subtype."""

    def __init__(self, subtype: str, errors: list[str] | None = None):
        self.subtype = subtype or "error"
        self.errors = [str(e) for e in (errors or []) if e]
        super().__init__(self.user_message(), {"subtype": self.subtype})

    def user_message(self) -> str:
        """Message shown in the error artifact."""
        if self.subtype in RESULT_SUBTYPE_MESSAGES:
            return RESULT_SUBTYPE_MESSAGES[self.subtype]
        if self.errors:
            return "\n".join(self.errors)
        return self.subtype


class PartialJSONParseFailed(ChatDeskError):
    """A streamed tool-use input did not parse as JSON."""

    def __init__(self, message: str, index: int, raw: str):
        super().__init__(message, {"index": index, "raw_length": len(raw)})
        self.index = index
        self.raw = raw


class TranscriptReadFailed(ChatDeskError):
    """A stored transcript could not be read for resume or fork."""

    def __init__(self, message: str, path: str):
        super().__init__(message, {"path": path})
        self.path = path


class SanitizerDropped(ChatDeskError):
    """Time-tracking entries were dropped or clamped while loading."""

    def __init__(self, message: str, counts: dict[str, int]):
        super().__init__(message, {"counts": counts})
        self.counts = counts


# State Errors
class StateTransitionError(ChatDeskError):
    """Raised when an invalid status transition is attempted.

    Includes the current state and the attempted target state for debugging.
    """

    def __init__(self, message: str, from_state: str, to_state: str):
        super().__init__(message, {"from_state": from_state, "to_state": to_state})
        self.from_state = from_state
        self.to_state = to_state
