"""
Chatdesk - Session Registry

Process-wide directory of live sessions. Inbound agent messages carry a
session id and are routed here to the owning controller.
"""

import asyncio
import logging
from collections.abc import Iterator
from typing import TYPE_CHECKING, Any

from chatdesk.exceptions import DuplicateSessionError, SessionNotFoundError

if TYPE_CHECKING:
    from chatdesk.chat.controller import SessionController

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Map of session id to controller.

    An id can be registered once per process, even after its session has
    been closed and unregistered.
    """

    def __init__(self) -> None:
        self._sessions: dict[str, "SessionController"] = {}
        self._seen: set[str] = set()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._sessions

    def __iter__(self) -> Iterator["SessionController"]:
        return iter(list(self._sessions.values()))

    def register(self, controller: "SessionController") -> None:
        """
        Raises:
            DuplicateSessionError: If the id was registered before
        """
        session_id = controller.session_id
        if session_id in self._seen:
            raise DuplicateSessionError(
                f"Session '{session_id}' is already registered",
                {"live": session_id in self._sessions},
            )
        self._seen.add(session_id)
        self._sessions[session_id] = controller
        logger.debug(f"Registered session {session_id} ({len(self._sessions)} live)")

    def unregister(self, session_id: str) -> None:
        if self._sessions.pop(session_id, None) is not None:
            logger.debug(f"Unregistered session {session_id}")

    def get(self, session_id: str) -> "SessionController":
        """
        Raises:
            SessionNotFoundError: If no live session has that id
        """
        try:
            return self._sessions[session_id]
        except KeyError:
            raise SessionNotFoundError(f"Session '{session_id}' not found") from None

    def dispatch(self, message: dict[str, Any]) -> None:
        """Route one agent message to its session; messages for unknown sessions are dropped."""
        if not isinstance(message, dict):
            logger.warning(f"Dropping non-object message {message!r}")
            return
        session_id = message.get("session_id")
        controller = self._sessions.get(session_id) if session_id else None
        if controller is None:
            logger.warning(f"Dropping {message.get('type')} for unknown session {session_id!r}")
            return
        controller.handle_message(message)

    async def close_all(self) -> None:
        """Close every live session."""
        controllers = list(self._sessions.values())
        if not controllers:
            return
        logger.info(f"Closing {len(controllers)} session(s)")
        results = await asyncio.gather(*(c.close() for c in controllers), return_exceptions=True)
        for controller, result in zip(controllers, results):
            if isinstance(result, Exception):
                logger.error(f"Error closing session {controller.session_id}: {result}")
        self._sessions.clear()


class SlashCommandCache:
    """Slash commands reported by the agent, shared by every session."""

    def __init__(self) -> None:
        self._commands: list[str] = []

    def update(self, commands: list[str]) -> None:
        normalised = sorted({c if c.startswith("/") else f"/{c}" for c in commands if c})
        if normalised != self._commands:
            self._commands = normalised
            logger.debug(f"Slash commands updated: {len(normalised)}")

    @property
    def commands(self) -> list[str]:
        return list(self._commands)

    def matching(self, prefix: str) -> list[str]:
        return [c for c in self._commands if c.startswith(prefix)]

    def clear(self) -> None:
        self._commands = []
