"""
Chatdesk - Agent Wire Protocol

Wire message shapes exchanged with the agent transport, the decoded
turn-level events the stream decoder produces, and the user-turn payload
sent back to the agent.
"""

import random
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

# Top-level wire message types
MSG_STREAM_EVENT = "stream_event"
MSG_SYSTEM = "system"
MSG_ASSISTANT = "assistant"
MSG_TOOL_RESULT = "tool_result"
MSG_RESULT = "result"
MSG_PERMISSION_REQUEST = "permission_request"
MSG_ERROR = "error"
MSG_DONE = "done"
MSG_IDLE = "idle"

WIRE_TYPES = frozenset(
    {
        MSG_STREAM_EVENT,
        MSG_SYSTEM,
        MSG_ASSISTANT,
        MSG_TOOL_RESULT,
        MSG_RESULT,
        MSG_PERMISSION_REQUEST,
        MSG_ERROR,
        MSG_DONE,
        MSG_IDLE,
    }
)


def mint_id(prefix: str) -> str:
    """Mint an opaque id of the form <prefix>-<ms>-<rand>."""
    rand = "".join(random.choices("abcdefghijklmnopqrstuvwxyz0123456789", k=6))
    return f"{prefix}-{int(time.time() * 1000)}-{rand}"


class EventKind(Enum):
    """Turn-level events emitted by the stream decoder."""

    MESSAGE_START = "message_start"
    BLOCK_START = "content_block_start"
    BLOCK_DELTA = "content_block_delta"
    BLOCK_STOP = "content_block_stop"
    MESSAGE_DELTA = "message_delta"
    MESSAGE_STOP = "message_stop"
    SYSTEM_INIT = "system_init"
    COMPACT_BOUNDARY = "system_compact_boundary"
    ASSISTANT_FULL = "assistant_full"
    TOOL_RESULT = "tool_result"
    RESULT = "result"
    PERMISSION_REQUEST = "permission_request"
    ERROR = "error"
    DONE = "done"
    IDLE = "idle"


class BlockType(Enum):
    """Content block types inside an assistant message."""

    TEXT = "text"
    THINKING = "thinking"
    TOOL_USE = "tool_use"


class DeltaType(Enum):
    TEXT = "text_delta"
    THINKING = "thinking_delta"
    INPUT_JSON = "input_json_delta"


@dataclass
class TurnEvent:
    """
    One decoded event, in the order it was received.

    Only the fields relevant to the kind are populated; `data` keeps the
    original wire payload for consumers that need more.
    """

    kind: EventKind
    session_id: str | None = None
    parent_tool_use_id: str | None = None

    # Content block events
    index: int | None = None
    block_type: BlockType | None = None
    delta_type: DeltaType | None = None
    text: str = ""
    tool_use_id: str | None = None
    tool_name: str | None = None
    tool_input: dict[str, Any] | None = None
    raw_input: str = ""
    parse_failed: bool = False

    # Result / tool result
    is_error: bool = False
    subtype: str = ""

    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_subagent(self) -> bool:
        return self.parent_tool_use_id is not None


@dataclass
class ImageAttachment:
    """An image attached to a prompt."""

    base64: str
    media_type: str = "image/png"

    def to_block(self) -> dict[str, Any]:
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": self.media_type, "data": self.base64},
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ImageAttachment":
        return cls(
            base64=data.get("base64") or data.get("data", ""),
            media_type=data.get("media_type") or data.get("mediaType", "image/png"),
        )


@dataclass
class Mention:
    """Context resolved from an @mention, inlined ahead of the prompt."""

    label: str
    content: str


@dataclass
class UserTurn:
    """A prompt as delivered to the agent."""

    text: str
    images: list[ImageAttachment] = field(default_factory=list)
    mentions: list[Mention] = field(default_factory=list)

    @property
    def prompt_text(self) -> str:
        """The prompt with mention contents prepended."""
        if not self.mentions:
            return self.text
        parts = [f"[{m.label}]\n{m.content}" for m in self.mentions]
        parts.append(self.text)
        return "\n\n".join(parts)

    def to_content(self) -> str | list[dict[str, Any]]:
        """Plain text, or content blocks when images are attached."""
        if not self.images:
            return self.prompt_text
        blocks = [img.to_block() for img in self.images]
        if self.prompt_text:
            blocks.append({"type": "text", "text": self.prompt_text})
        return blocks

    def to_message(self) -> dict[str, Any]:
        """SDK streaming-input user message."""
        return {
            "type": "user",
            "message": {"role": "user", "content": self.to_content()},
            "parent_tool_use_id": None,
        }
