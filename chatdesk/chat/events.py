"""
Chatdesk - UI Event Bus

Push channel from the chat core to whatever renders it. Subscribers
either listen to one session or to all of them and filter themselves.
"""

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

logger = logging.getLogger(__name__)


class ChatEventType(Enum):
    ARTIFACT_ADDED = "artifact_added"
    ARTIFACT_UPDATED = "artifact_updated"
    ARTIFACT_REMOVED = "artifact_removed"
    STATUS = "status"
    STATS = "stats"
    MESSAGE = "message"
    ERROR = "error"
    PERMISSION_REQUEST = "permission_request"
    DONE = "done"
    IDLE = "idle"


@dataclass
class ChatEvent:
    session_id: str
    type: ChatEventType
    artifact: Any = None
    payload: dict[str, Any] = field(default_factory=dict)


Listener = Callable[[ChatEvent], None]


class ChatEventBus:
    """Synchronous fan-out of ChatEvents in publish order."""

    def __init__(self) -> None:
        self._listeners: list[tuple[str | None, Listener]] = []

    def subscribe(self, listener: Listener, session_id: str | None = None) -> Callable[[], None]:
        """
        Register a listener, optionally for one session only.

        Returns:
            A callable that removes the subscription
        """
        entry = (session_id, listener)
        self._listeners.append(entry)

        def unsubscribe() -> None:
            if entry in self._listeners:
                self._listeners.remove(entry)

        return unsubscribe

    def publish(self, event: ChatEvent) -> None:
        for session_id, listener in list(self._listeners):
            if session_id is not None and session_id != event.session_id:
                continue
            try:
                listener(event)
            except Exception as e:
                # A broken view must not stall the session.
                logger.error(f"Chat event listener failed on {event.type.value}: {e}")

    def clear(self) -> None:
        self._listeners.clear()
