"""
Chatdesk - interactive agent chat runtime.

Drives streaming conversations with a tool-using Claude agent: renders
partial output as it arrives, brokers tool permissions with the user,
queues follow-up prompts, and tracks per-project activity time.
"""

__version__ = "0.1.0"

from chatdesk.exceptions import (
    ChatDeskError,
    ConfigError,
    SessionError,
    SessionSendFailed,
    SessionStartFailed,
    StreamError,
)

__all__ = [
    "__version__",
    "ChatDeskError",
    "ConfigError",
    "SessionError",
    "SessionSendFailed",
    "SessionStartFailed",
    "StreamError",
]
