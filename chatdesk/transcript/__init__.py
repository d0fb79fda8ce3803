"""Stored transcript replay and session listing."""

from chatdesk.transcript.reader import (
    HistoryEvent,
    HistoryKind,
    StoredSession,
    TranscriptReader,
    encode_project_path,
    list_stored_sessions,
)

__all__ = [
    "HistoryEvent",
    "HistoryKind",
    "StoredSession",
    "TranscriptReader",
    "encode_project_path",
    "list_stored_sessions",
]
