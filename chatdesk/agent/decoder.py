"""
Chatdesk - Stream Decoder

Turns the agent's wire messages into an ordered sequence of TurnEvents.
Tool-use inputs arrive as partial-JSON fragments per content block; the
decoder buffers them between content_block_start and content_block_stop
and parses once the block closes.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any

from chatdesk.agent.protocol import (
    MSG_ASSISTANT,
    MSG_DONE,
    MSG_ERROR,
    MSG_IDLE,
    MSG_PERMISSION_REQUEST,
    MSG_RESULT,
    MSG_STREAM_EVENT,
    MSG_SYSTEM,
    MSG_TOOL_RESULT,
    BlockType,
    DeltaType,
    EventKind,
    TurnEvent,
)
from chatdesk.exceptions import PartialJSONParseFailed

logger = logging.getLogger(__name__)

# A block is addressed by (parent_tool_use_id, index): sub-agents number
# their blocks independently of the top-level message.
BlockKey = tuple[str | None, int]

_DELTA_TYPES = {d.value for d in DeltaType}
_BLOCK_TYPES = {b.value for b in BlockType}


@dataclass
class _OpenBlock:
    """A content block between start and stop."""

    block_type: BlockType
    tool_use_id: str | None = None
    tool_name: str | None = None
    fragments: list[str] = field(default_factory=list)

    @property
    def raw(self) -> str:
        return "".join(self.fragments)


class StreamDecoder:
    """
    Decoder for one session's message stream.

    Never reorders and never raises on bad input: a malformed message is
    logged and dropped, and decoding continues with the next one.
    """

    def __init__(self, session_id: str | None = None):
        self.session_id = session_id
        self._open: dict[BlockKey, _OpenBlock] = {}
        self._last_index: dict[str | None, int] = {}
        self._parse_failures = 0

    @property
    def open_buffers(self) -> int:
        """Number of tool-use input buffers currently held."""
        return sum(1 for b in self._open.values() if b.block_type == BlockType.TOOL_USE)

    def has_buffer(self, index: int, parent_tool_use_id: str | None = None) -> bool:
        block = self._open.get((parent_tool_use_id, index))
        return block is not None and block.block_type == BlockType.TOOL_USE

    def reset(self) -> None:
        """Forget every open block."""
        if self._open:
            logger.debug(f"Discarding {len(self._open)} open block(s)")
        self._open.clear()
        self._last_index.clear()

    def decode(self, message: Any) -> list[TurnEvent]:
        """
        Decode one wire message.

        Returns:
            Zero or more TurnEvents, in order
        """
        if not isinstance(message, dict):
            logger.warning(f"Dropping non-object message: {type(message).__name__}")
            return []
        msg_type = message.get("type")
        try:
            if msg_type == MSG_STREAM_EVENT:
                return self._decode_stream_event(message)
            if msg_type == MSG_SYSTEM:
                return self._decode_system(message)
            if msg_type == MSG_ASSISTANT:
                return self._decode_assistant(message)
            if msg_type == MSG_TOOL_RESULT:
                return [self._decode_tool_result(message)]
            if msg_type == MSG_RESULT:
                return [self._decode_result(message)]
            if msg_type == MSG_PERMISSION_REQUEST:
                return [self._decode_permission(message)]
            if msg_type == MSG_ERROR:
                error = message.get("error") or message.get("message") or "Unknown error"
                return [self._event(EventKind.ERROR, message, text=str(error))]
            if msg_type == MSG_DONE:
                return [self._event(EventKind.DONE, message)]
            if msg_type == MSG_IDLE:
                return [self._event(EventKind.IDLE, message)]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            logger.warning(f"Dropping malformed {msg_type} message: {e}")
            return []
        logger.debug(f"Ignoring message of unknown type {msg_type!r}")
        return []

    def _event(self, kind: EventKind, message: dict[str, Any], **kwargs: Any) -> TurnEvent:
        return TurnEvent(
            kind=kind,
            session_id=message.get("session_id", self.session_id),
            parent_tool_use_id=message.get("parent_tool_use_id"),
            data=message,
            **kwargs,
        )

    def _decode_stream_event(self, message: dict[str, Any]) -> list[TurnEvent]:
        event = message.get("event")
        if not isinstance(event, dict):
            raise ValueError("stream_event without event payload")
        parent = message.get("parent_tool_use_id")
        event_type = event.get("type")

        if event_type == "message_start":
            self._drop_scope(parent)
            return [self._event(EventKind.MESSAGE_START, message)]

        if event_type == "content_block_start":
            block = event["content_block"]
            index = int(event["index"])
            if block.get("type") not in _BLOCK_TYPES:
                logger.debug(f"Ignoring {block.get('type')!r} block at index {index}")
                return []
            block_type = BlockType(block["type"])
            key = (parent, index)
            if key in self._open:
                logger.debug(f"Block {key} restarted before stop")
            opened = _OpenBlock(block_type=block_type)
            if block_type == BlockType.TOOL_USE:
                opened.tool_use_id = block.get("id")
                opened.tool_name = block.get("name")
            self._open[key] = opened
            self._last_index[parent] = index
            return [
                self._event(
                    EventKind.BLOCK_START,
                    message,
                    index=index,
                    block_type=block_type,
                    tool_use_id=opened.tool_use_id,
                    tool_name=opened.tool_name,
                    text=block.get("text", "") if block_type == BlockType.TEXT else "",
                )
            ]

        if event_type == "content_block_delta":
            return self._decode_delta(message, event, parent)

        if event_type == "content_block_stop":
            return self._decode_stop(message, event, parent)

        if event_type == "message_delta":
            return [self._event(EventKind.MESSAGE_DELTA, message)]

        if event_type == "message_stop":
            return [self._event(EventKind.MESSAGE_STOP, message)]

        logger.debug(f"Ignoring stream event {event_type!r}")
        return []

    def _resolve_index(self, event: dict[str, Any], parent: str | None) -> int | None:
        if "index" in event and event["index"] is not None:
            return int(event["index"])
        return self._last_index.get(parent)

    def _decode_delta(
        self, message: dict[str, Any], event: dict[str, Any], parent: str | None
    ) -> list[TurnEvent]:
        delta = event["delta"]
        if delta.get("type") not in _DELTA_TYPES:
            # signature_delta and friends carry nothing to render
            logger.debug(f"Ignoring delta {delta.get('type')!r}")
            return []
        delta_type = DeltaType(delta["type"])
        index = self._resolve_index(event, parent)

        if delta_type == DeltaType.INPUT_JSON:
            block = self._open.get((parent, index)) if index is not None else None
            if block is None or block.block_type != BlockType.TOOL_USE:
                logger.debug(f"input_json_delta for unknown block {index}")
                return []
            fragment = delta.get("partial_json", "")
            block.fragments.append(fragment)
            return [
                self._event(
                    EventKind.BLOCK_DELTA,
                    message,
                    index=index,
                    block_type=BlockType.TOOL_USE,
                    delta_type=delta_type,
                    text=fragment,
                    tool_use_id=block.tool_use_id,
                )
            ]

        text = delta.get("text", "") if delta_type == DeltaType.TEXT else delta.get("thinking", "")
        block_type = BlockType.TEXT if delta_type == DeltaType.TEXT else BlockType.THINKING
        return [
            self._event(
                EventKind.BLOCK_DELTA,
                message,
                index=index,
                block_type=block_type,
                delta_type=delta_type,
                text=text,
            )
        ]

    def _decode_stop(
        self, message: dict[str, Any], event: dict[str, Any], parent: str | None
    ) -> list[TurnEvent]:
        index = self._resolve_index(event, parent)
        block = self._open.pop((parent, index), None) if index is not None else None
        if block is None:
            # Seen around compact boundaries; nothing to close.
            logger.debug(f"content_block_stop without start (index={index})")
            return []

        stop = self._event(
            EventKind.BLOCK_STOP,
            message,
            index=index,
            block_type=block.block_type,
            tool_use_id=block.tool_use_id,
            tool_name=block.tool_name,
        )
        if block.block_type == BlockType.TOOL_USE:
            raw = block.raw
            stop.raw_input = raw
            try:
                stop.tool_input = self._parse_input(index, raw)
            except PartialJSONParseFailed as e:
                stop.parse_failed = True
                self._parse_failures += 1
                if self._parse_failures == 1:
                    logger.warning(f"{e} (tool={block.tool_name})")
                else:
                    logger.debug(f"{e} (tool={block.tool_name})")
        return [stop]

    @staticmethod
    def _parse_input(index: int, raw: str) -> dict[str, Any]:
        if not raw.strip():
            return {}
        try:
            parsed = json.loads(raw)
        except json.JSONDecodeError as e:
            raise PartialJSONParseFailed(
                f"Tool input for block {index} is not valid JSON: {e.msg}", index, raw
            )
        if not isinstance(parsed, dict):
            raise PartialJSONParseFailed(f"Tool input for block {index} is not an object", index, raw)
        return parsed

    def _drop_scope(self, parent: str | None) -> None:
        stale = [key for key in self._open if key[0] == parent]
        if stale:
            logger.debug(f"Dropping {len(stale)} unterminated block(s) at message_start")
        for key in stale:
            del self._open[key]
        self._last_index.pop(parent, None)

    def _decode_system(self, message: dict[str, Any]) -> list[TurnEvent]:
        subtype = message.get("subtype")
        if subtype == "init":
            return [self._event(EventKind.SYSTEM_INIT, message, subtype="init")]
        if subtype == "compact_boundary":
            return [self._event(EventKind.COMPACT_BOUNDARY, message, subtype="compact_boundary")]
        logger.debug(f"Ignoring system message subtype {subtype!r}")
        return []

    def _decode_assistant(self, message: dict[str, Any]) -> list[TurnEvent]:
        body = message.get("message") or {}
        content = body.get("content") or []
        if not isinstance(content, list):
            raise ValueError("assistant content is not a list")
        return [self._event(EventKind.ASSISTANT_FULL, message)]

    def _decode_tool_result(self, message: dict[str, Any]) -> TurnEvent:
        return self._event(
            EventKind.TOOL_RESULT,
            message,
            tool_use_id=message["tool_use_id"],
            is_error=bool(message.get("is_error", False)),
        )

    def _decode_result(self, message: dict[str, Any]) -> TurnEvent:
        subtype = message.get("subtype") or "success"
        is_error = bool(message.get("is_error")) or subtype != "success"
        if message.get("parent_tool_use_id") is None:
            # Turn is over; nothing buffered can complete any more.
            self.reset()
        else:
            self._drop_scope(message.get("parent_tool_use_id"))
        return self._event(EventKind.RESULT, message, subtype=subtype, is_error=is_error)

    def _decode_permission(self, message: dict[str, Any]) -> TurnEvent:
        if not message["request_id"]:
            raise ValueError("permission_request without request_id")
        return self._event(
            EventKind.PERMISSION_REQUEST,
            message,
            tool_name=message["tool_name"],
            tool_use_id=message.get("tool_use_id"),
            tool_input=message.get("input") or {},
        )
