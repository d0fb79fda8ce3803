"""Agent stream decoding and the SDK-backed transport."""

from chatdesk.agent.decoder import StreamDecoder
from chatdesk.agent.protocol import EventKind, ImageAttachment, Mention, TurnEvent, UserTurn
from chatdesk.agent.transport import (
    AgentTransport,
    PermissionReply,
    SdkTransport,
    SessionOptions,
)

__all__ = [
    "AgentTransport",
    "EventKind",
    "ImageAttachment",
    "Mention",
    "PermissionReply",
    "SdkTransport",
    "SessionOptions",
    "StreamDecoder",
    "TurnEvent",
    "UserTurn",
]
