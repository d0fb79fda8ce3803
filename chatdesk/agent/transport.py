"""
Chatdesk - Agent Transport

The session controller talks to the agent through AgentTransport. The
default implementation drives a Claude Agent SDK client and translates
its typed messages into the plain wire dicts the stream decoder reads.
Permission checks from the SDK are turned into permission_request
messages and suspended until the controller answers them.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator, Callable
from dataclasses import dataclass, field
from typing import Any

from claude_agent_sdk import ClaudeAgentOptions, ClaudeSDKClient
from claude_agent_sdk.types import (
    AssistantMessage,
    PermissionResultAllow,
    PermissionResultDeny,
    PermissionRuleValue,
    PermissionUpdate,
    ResultMessage,
    StreamEvent,
    SystemMessage,
    TextBlock,
    ThinkingBlock,
    ToolPermissionContext,
    ToolResultBlock,
    ToolUseBlock,
    UserMessage,
)

from chatdesk.agent.protocol import (
    MSG_ASSISTANT,
    MSG_DONE,
    MSG_ERROR,
    MSG_PERMISSION_REQUEST,
    MSG_RESULT,
    MSG_STREAM_EVENT,
    MSG_SYSTEM,
    MSG_TOOL_RESULT,
    UserTurn,
    mint_id,
)

logger = logging.getLogger(__name__)

MessageSink = Callable[[dict[str, Any]], None]


@dataclass
class SessionOptions:
    """Everything the agent needs to open a session."""

    session_id: str
    cwd: str
    permission_mode: str = "default"  # SDK value
    model: str | None = None
    resume_id: str | None = None
    fork_anchor: str | None = None
    max_turns: int = 100
    setting_sources: list[str] = field(default_factory=lambda: ["user", "project", "local"])


@dataclass
class PermissionReply:
    """Decision handed back to the agent for one permission request."""

    behavior: str  # "allow" or "deny"
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[dict[str, Any]] | None = None
    message: str = ""


class AgentTransport(ABC):
    """Bidirectional channel to one agent conversation."""

    @abstractmethod
    async def open(self, options: SessionOptions, first_turn: UserTurn, sink: MessageSink) -> None:
        """Open the conversation and submit the first prompt.

        Every message the agent produces afterwards is passed to sink,
        already stamped with options.session_id.
        """

    @abstractmethod
    async def send(self, turn: UserTurn) -> None:
        """Submit a follow-up prompt."""

    @abstractmethod
    async def interrupt(self) -> None:
        """Ask the agent to stop the current turn."""

    @abstractmethod
    def respond_permission(self, request_id: str, reply: PermissionReply) -> None:
        """Answer a permission_request previously emitted to the sink."""

    @abstractmethod
    async def close(self) -> None:
        """Release the conversation. Safe to call more than once."""


def block_to_dict(block: Any) -> dict[str, Any] | None:
    """Convert an SDK content block to its wire form."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        return {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
            "is_error": bool(block.is_error),
        }
    return None


def sdk_message_to_wire(message: Any, session_id: str) -> list[dict[str, Any]]:
    """
    Translate one SDK message into zero or more wire messages.

    The SDK's own conversation id is kept as sdk_session_id; session_id
    always carries the chatdesk session the message belongs to.
    """
    if isinstance(message, StreamEvent):
        return [
            {
                "type": MSG_STREAM_EVENT,
                "session_id": session_id,
                "event": message.event,
                "parent_tool_use_id": message.parent_tool_use_id,
            }
        ]

    if isinstance(message, SystemMessage):
        data = dict(message.data or {})
        sdk_session_id = data.pop("session_id", None)
        data.pop("type", None)
        return [
            {
                **data,
                "type": MSG_SYSTEM,
                "subtype": message.subtype,
                "session_id": session_id,
                "sdk_session_id": sdk_session_id,
            }
        ]

    if isinstance(message, AssistantMessage):
        content = [d for d in (block_to_dict(b) for b in message.content) if d is not None]
        return [
            {
                "type": MSG_ASSISTANT,
                "session_id": session_id,
                "message": {"model": message.model, "content": content},
                "parent_tool_use_id": message.parent_tool_use_id,
            }
        ]

    if isinstance(message, UserMessage):
        # Only tool results matter; echoed prompts are already on screen.
        if isinstance(message.content, str):
            return []
        results = []
        for block in message.content:
            if isinstance(block, ToolResultBlock):
                results.append(
                    {
                        "type": MSG_TOOL_RESULT,
                        "session_id": session_id,
                        "tool_use_id": block.tool_use_id,
                        "content": block.content,
                        "is_error": bool(block.is_error),
                        "parent_tool_use_id": message.parent_tool_use_id,
                    }
                )
        return results

    if isinstance(message, ResultMessage):
        return [
            {
                "type": MSG_RESULT,
                "session_id": session_id,
                "sdk_session_id": message.session_id,
                "subtype": message.subtype,
                "is_error": message.is_error,
                "errors": list(getattr(message, "errors", None) or []),
                "total_cost_usd": message.total_cost_usd,
                "usage": message.usage or {},
                "result": message.result,
                "duration_ms": message.duration_ms,
                "num_turns": message.num_turns,
            }
        ]

    logger.debug(f"Unhandled SDK message type {type(message).__name__}")
    return []


def suggestion_to_dict(suggestion: Any) -> dict[str, Any]:
    """Normalise a permission suggestion (SDK object or dict) to a dict."""
    if isinstance(suggestion, dict):
        return dict(suggestion)
    if hasattr(suggestion, "to_dict"):
        return suggestion.to_dict()
    return {"type": getattr(suggestion, "type", "unknown")}


def dict_to_permission_update(data: dict[str, Any]) -> PermissionUpdate:
    """Build an SDK PermissionUpdate from its wire form."""
    rules = None
    if data.get("rules"):
        rules = [
            PermissionRuleValue(
                tool_name=r.get("toolName") or r.get("tool_name", ""),
                rule_content=r.get("ruleContent") or r.get("rule_content"),
            )
            for r in data["rules"]
        ]
    return PermissionUpdate(
        type=data["type"],
        rules=rules,
        behavior=data.get("behavior"),
        mode=data.get("mode"),
        directories=data.get("directories"),
        destination=data.get("destination"),
    )


async def _single_message(turn: UserTurn) -> AsyncIterator[dict[str, Any]]:
    yield turn.to_message()


class SdkTransport(AgentTransport):
    """
    Transport backed by claude_agent_sdk.ClaudeSDKClient.

    A background reader task forwards every SDK message to the sink and
    reports the end of the stream with a done (or error) message.
    """

    def __init__(self, client_factory: Callable[[ClaudeAgentOptions], Any] = ClaudeSDKClient):
        self._client_factory = client_factory
        self._client: Any = None
        self._sink: MessageSink | None = None
        self._session_id = ""
        self._reader: asyncio.Task[None] | None = None
        self._pending: dict[str, asyncio.Future[PermissionReply]] = {}
        self._closing = False

    def build_options(self, options: SessionOptions) -> ClaudeAgentOptions:
        extra_args: dict[str, str | None] = {}
        if options.resume_id and options.fork_anchor:
            extra_args["resume-session-at"] = options.fork_anchor
        return ClaudeAgentOptions(
            cwd=options.cwd,
            permission_mode=options.permission_mode,
            model=options.model or None,
            resume=options.resume_id,
            fork_session=bool(options.resume_id and options.fork_anchor),
            include_partial_messages=True,
            can_use_tool=self._can_use_tool,
            max_turns=options.max_turns,
            setting_sources=options.setting_sources,
            system_prompt={"type": "preset", "preset": "claude_code"},
            stderr=self._on_stderr,
            extra_args=extra_args,
        )

    async def open(self, options: SessionOptions, first_turn: UserTurn, sink: MessageSink) -> None:
        self._sink = sink
        self._session_id = options.session_id
        self._client = self._client_factory(self.build_options(options))
        await self._client.connect()
        await self._client.query(_single_message(first_turn))
        self._reader = asyncio.create_task(self._read_loop(), name=f"agent-reader-{options.session_id}")

    async def send(self, turn: UserTurn) -> None:
        if self._client is None or self._closing:
            raise RuntimeError("transport is not open")
        await self._client.query(_single_message(turn))

    async def interrupt(self) -> None:
        if self._client is not None and not self._closing:
            await self._client.interrupt()

    def respond_permission(self, request_id: str, reply: PermissionReply) -> None:
        future = self._pending.pop(request_id, None)
        if future is None or future.done():
            logger.debug(f"No pending permission future for {request_id}")
            return
        future.set_result(reply)

    async def close(self) -> None:
        if self._closing:
            return
        self._closing = True
        for request_id in list(self._pending):
            self.respond_permission(request_id, PermissionReply("deny", message="Session closed"))
        if self._reader is not None:
            self._reader.cancel()
            try:
                await self._reader
            except asyncio.CancelledError:
                pass
        if self._client is not None:
            try:
                await self._client.disconnect()
            except Exception as e:
                logger.warning(f"Error disconnecting agent client: {e}")
        self._client = None

    def _emit(self, message: dict[str, Any]) -> None:
        if self._sink is not None:
            self._sink(message)

    async def _read_loop(self) -> None:
        try:
            async for message in self._client.receive_messages():
                for wire in sdk_message_to_wire(message, self._session_id):
                    self._emit(wire)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if not self._closing:
                logger.error(f"Agent stream failed: {e}")
                self._emit({"type": MSG_ERROR, "session_id": self._session_id, "error": str(e)})
        if not self._closing:
            self._emit({"type": MSG_DONE, "session_id": self._session_id})

    async def _can_use_tool(
        self,
        tool_name: str,
        tool_input: dict[str, Any],
        context: ToolPermissionContext,
    ) -> PermissionResultAllow | PermissionResultDeny:
        if self._closing:
            return PermissionResultDeny(message="Session closed")

        request_id = mint_id("perm")
        future: asyncio.Future[PermissionReply] = asyncio.get_running_loop().create_future()
        self._pending[request_id] = future
        self._emit(
            {
                "type": MSG_PERMISSION_REQUEST,
                "session_id": self._session_id,
                "request_id": request_id,
                "tool_name": tool_name,
                "input": tool_input,
                "tool_use_id": getattr(context, "tool_use_id", None),
                "decision_reason": getattr(context, "decision_reason", None),
                "suggestions": [suggestion_to_dict(s) for s in (context.suggestions or [])],
            }
        )
        reply = await future

        if reply.behavior == "allow":
            updates = [dict_to_permission_update(u) for u in (reply.updated_permissions or [])]
            return PermissionResultAllow(
                updated_input=reply.updated_input if reply.updated_input is not None else tool_input,
                updated_permissions=updates or None,
            )
        return PermissionResultDeny(message=reply.message or "User denied this action")

    def _on_stderr(self, line: str) -> None:
        logger.debug(f"[agent stderr] {line.rstrip()}")
