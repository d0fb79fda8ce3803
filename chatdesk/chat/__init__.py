"""Chat sessions: controller, turn state, permissions and the session registry."""

from chatdesk.chat.broker import PermissionBroker, PermissionDecision, PermissionRequest
from chatdesk.chat.controller import PermissionMode, SessionController, SessionInfo
from chatdesk.chat.events import ChatEvent, ChatEventBus, ChatEventType
from chatdesk.chat.registry import SessionRegistry, SlashCommandCache
from chatdesk.chat.turn import TurnStateMachine

__all__ = [
    "ChatEvent",
    "ChatEventBus",
    "ChatEventType",
    "PermissionBroker",
    "PermissionDecision",
    "PermissionMode",
    "PermissionRequest",
    "SessionController",
    "SessionInfo",
    "SessionRegistry",
    "SlashCommandCache",
    "TurnStateMachine",
]
