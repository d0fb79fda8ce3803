"""
Chatdesk - Turn State Machine

Consumes decoded TurnEvents for one session and maintains the artifacts
the chat view renders. It guarantees that nothing is left in progress
when a turn ends: open text is finalized and running cards are
completed at message_stop (when no tool was used) or at result.
"""

import logging
from collections.abc import Callable
from typing import Any

from chatdesk.agent.protocol import BlockType, DeltaType, EventKind, TurnEvent
from chatdesk.chat.artifacts import (
    Artifact,
    AssistantText,
    ErrorArtifact,
    HistoryDivider,
    PermissionCard,
    PlanCard,
    QuestionCard,
    SubagentCard,
    SystemNotice,
    ThinkingBlock,
    TodoWidget,
    ToolCard,
    UserMessage,
)
from chatdesk.chat.broker import PermissionRequest
from chatdesk.chat.events import ChatEvent, ChatEventBus, ChatEventType
from chatdesk.chat.tools import (
    SUBAGENT_DETAIL_LIMIT,
    ToolKind,
    classify,
    tool_result_text,
    truncate_detail,
)
from chatdesk.exceptions import ResultError
from chatdesk.state import SessionStatus, StatusTracker
from chatdesk.transcript.reader import HistoryEvent, HistoryKind

logger = logging.getLogger(__name__)


class TurnStateMachine:
    """
    Artifact state for one chat session.

    Per-turn bookkeeping (open blocks, cards by block index) is reset at
    every top-level message_start; cards keyed by tool-use id live until
    the result event closes the turn.
    """

    def __init__(
        self,
        session_id: str,
        bus: ChatEventBus,
        status: StatusTracker,
        on_output: Callable[[], None] | None = None,
    ):
        self.session_id = session_id
        self.bus = bus
        self.status = status
        self.on_output = on_output

        self.artifacts: list[Artifact] = []
        self.todo: TodoWidget | None = None
        self.model = ""
        self.total_tokens = 0
        self.total_cost = 0.0
        self.slash_commands: list[str] = []

        # Open blocks (at most one text, one thinking)
        self._text: AssistantText | None = None
        self._text_index: int | None = None
        self._thinking: list[str] | None = None
        self._thinking_index: int | None = None

        # Blocks of the current message, by index
        self._by_index: dict[int, ToolCard | SubagentCard | None] = {}
        # Sub-agent child blocks: (parent id, index) -> child tool-use id
        self._child_index: dict[tuple[str, int], str | None] = {}

        # Cards of the current turn, by tool-use id
        self._tool_cards: dict[str, ToolCard] = {}
        self._subagents: dict[str, SubagentCard] = {}
        self._permission_cards: dict[str, PermissionCard] = {}

        self.has_tool_use = False
        self.had_assistant_content = False
        self.tool_calls = 0

    # ── Queries ──

    @property
    def open_text(self) -> AssistantText | None:
        return self._text

    @property
    def thinking_open(self) -> bool:
        return self._thinking is not None

    def tool_card(self, tool_use_id: str) -> ToolCard | None:
        return self._tool_cards.get(tool_use_id)

    def subagent(self, tool_use_id: str) -> SubagentCard | None:
        return self._subagents.get(tool_use_id)

    def permission_card(self, request_id: str) -> PermissionCard | None:
        return self._permission_cards.get(request_id)

    def of_type(self, cls: type) -> list[Any]:
        return [a for a in self.artifacts if isinstance(a, cls)]

    # ── Publishing ──

    def _publish(self, event_type: ChatEventType, artifact: Any = None, **payload: Any) -> None:
        self.bus.publish(ChatEvent(self.session_id, event_type, artifact, payload))

    def _add(self, artifact: Artifact) -> Artifact:
        self.artifacts.append(artifact)
        self._publish(ChatEventType.ARTIFACT_ADDED, artifact)
        return artifact

    def _updated(self, artifact: Artifact) -> None:
        self._publish(ChatEventType.ARTIFACT_UPDATED, artifact)

    def _remove(self, artifact: Artifact) -> None:
        if artifact in self.artifacts:
            self.artifacts.remove(artifact)
            self._publish(ChatEventType.ARTIFACT_REMOVED, artifact)

    def _set_status(self, status: SessionStatus, label: str = "") -> None:
        if not self.status.transition_to(status, label):
            logger.debug(f"Ignoring status change {self.status.status.value} -> {status.value}")

    def _publish_stats(self) -> None:
        self._publish(
            ChatEventType.STATS,
            tokens=self.total_tokens,
            cost=self.total_cost,
            model=self.model,
        )

    # ── Artifacts added by the controller ──

    def add_user_message(self, text: str, image_count: int = 0, queued: bool = False) -> UserMessage:
        if self.todo is not None and self.todo.done:
            self._remove(self.todo)
            self.todo = None
        message = UserMessage(text=text, image_count=image_count, queued=queued)
        self._add(message)
        return message

    def add_notice(self, text: str) -> SystemNotice:
        notice = SystemNotice(text=text)
        self._add(notice)
        return notice

    def add_error(self, message: str, error_type: str = "") -> ErrorArtifact:
        error = ErrorArtifact(message=message, error_type=error_type)
        self._add(error)
        self._publish(ChatEventType.ERROR, error, message=message)
        return error

    def add_permission_card(self, request: PermissionRequest) -> PermissionCard:
        kind = classify(request.tool_name)
        common = dict(
            request_id=request.request_id,
            tool_name=request.tool_name,
            tool_input=request.tool_input,
            decision_reason=request.decision_reason,
            suggestions=request.suggestions,
        )
        card: PermissionCard
        if kind == ToolKind.ASK_USER_QUESTION:
            card = QuestionCard(**common)
        elif kind in (ToolKind.EXIT_PLAN_MODE, ToolKind.ENTER_PLAN_MODE):
            plan = request.tool_input.get("plan", "")
            if not plan and kind == ToolKind.EXIT_PLAN_MODE:
                plan = self._take_plan_text()
            card = PlanCard(plan_text=plan, **common)
        else:
            card = PermissionCard(**common)
        self._permission_cards[request.request_id] = card
        self._add(card)
        self._publish(ChatEventType.PERMISSION_REQUEST, card, request_id=request.request_id)
        return card

    def _take_plan_text(self) -> str:
        """Move the assistant text just above into the plan card."""
        if self.artifacts and isinstance(self.artifacts[-1], AssistantText):
            block = self.artifacts[-1]
            if block is self._text:
                self._finalize_text()
            self._remove(block)
            return block.text
        return ""

    def resolve_permission_card(self, request_id: str, outcome: str | None, disabled: bool = False) -> None:
        card = self._permission_cards.pop(request_id, None)
        if card is None or card.resolved:
            return
        card.mark_resolved(outcome, disabled=disabled)
        self._updated(card)

    def disable_pending_cards(self) -> None:
        """Mark every unresolved permission, question and plan card resolved and disabled."""
        for request_id in list(self._permission_cards):
            self.resolve_permission_card(request_id, None, disabled=True)

    # ── Stream events ──

    def handle(self, event: TurnEvent, aborting: bool = False) -> None:
        """Apply one decoded event."""
        if event.is_subagent:
            self._handle_subagent(event)
            return

        kind = event.kind
        if kind == EventKind.MESSAGE_START:
            self._on_message_start()
        elif kind == EventKind.BLOCK_START:
            self._on_block_start(event)
        elif kind == EventKind.BLOCK_DELTA:
            self._on_block_delta(event)
        elif kind == EventKind.BLOCK_STOP:
            self._on_block_stop(event)
        elif kind == EventKind.MESSAGE_DELTA:
            self._on_message_delta(event)
        elif kind == EventKind.MESSAGE_STOP:
            self._on_message_stop()
        elif kind == EventKind.ASSISTANT_FULL:
            self._on_assistant_full(event)
        elif kind == EventKind.TOOL_RESULT:
            self._on_tool_result(event)
        elif kind == EventKind.RESULT:
            self._on_result(event, aborting)
        elif kind == EventKind.SYSTEM_INIT:
            self._on_system_init(event)
        elif kind == EventKind.COMPACT_BOUNDARY:
            self._on_compact_boundary(event)
        elif kind == EventKind.ERROR:
            self.fail(event.text, aborting)
        elif kind == EventKind.DONE:
            self._on_done()
        elif kind == EventKind.IDLE:
            # Informational; turn boundaries come from message_stop and result.
            self._publish(ChatEventType.IDLE)
        else:
            logger.debug(f"Turn state machine ignores {kind.value}")

    def _on_message_start(self) -> None:
        self._finalize_text()
        self._finalize_thinking()
        self._by_index.clear()
        self.has_tool_use = False
        for artifact in self.artifacts:
            if isinstance(artifact, UserMessage) and artifact.queued:
                artifact.queued = False
                self._updated(artifact)
        self._set_status(SessionStatus.THINKING)

    def _on_block_start(self, event: TurnEvent) -> None:
        index = event.index if event.index is not None else -1
        if event.block_type == BlockType.TEXT:
            self._open_text(index, event.text)
            self._set_status(SessionStatus.RESPONDING)
        elif event.block_type == BlockType.THINKING:
            self._finalize_thinking()
            self._thinking = []
            self._thinking_index = index
        elif event.block_type == BlockType.TOOL_USE:
            self._finalize_text()
            self.has_tool_use = True
            self.had_assistant_content = True
            self.tool_calls += 1
            self._open_tool(index, event.tool_use_id, event.tool_name or "")

    def _open_text(self, index: int, initial: str = "") -> None:
        if self._text is not None:
            self._finalize_text()
        self._text = AssistantText(text=initial)
        self._text_index = index
        self._add(self._text)

    def _open_tool(self, index: int, tool_use_id: str | None, name: str) -> None:
        kind = classify(name)
        if kind == ToolKind.TODO_WRITE:
            self._by_index[index] = None
            self._set_status(SessionStatus.WORKING, "Updating tasks...")
            return
        if kind == ToolKind.ASK_USER_QUESTION:
            # The question card arrives with the permission request.
            self._by_index[index] = None
            return
        if kind == ToolKind.TASK and tool_use_id:
            card = self._subagents.get(tool_use_id)
            if card is None:
                card = SubagentCard(tool_use_id=tool_use_id, activity="Agent running...")
                self._subagents[tool_use_id] = card
                self._add(card)
            self._by_index[index] = card
            self._set_status(SessionStatus.WORKING, "Agent running...")
            return
        card = ToolCard(tool_use_id=tool_use_id, tool_name=name)
        if tool_use_id:
            self._tool_cards[tool_use_id] = card
        self._by_index[index] = card
        self._add(card)
        self._set_status(SessionStatus.WORKING, f"{name}...")

    def _on_block_delta(self, event: TurnEvent) -> None:
        if event.delta_type == DeltaType.TEXT:
            if self._text is None:
                self._open_text(event.index if event.index is not None else -1)
                self._set_status(SessionStatus.RESPONDING)
            assert self._text is not None
            self._text.text += event.text
            self.had_assistant_content = True
            self._updated(self._text)
            if self.on_output is not None:
                self.on_output()
        elif event.delta_type == DeltaType.THINKING:
            if self._thinking is None:
                self._thinking = []
                self._thinking_index = event.index
            self._thinking.append(event.text)
        # input_json_delta is buffered by the decoder

    def _on_block_stop(self, event: TurnEvent) -> None:
        if event.block_type == BlockType.TEXT:
            if self._text is not None and event.index in (self._text_index, None):
                self._finalize_text()
        elif event.block_type == BlockType.THINKING:
            self._finalize_thinking()
        elif event.block_type == BlockType.TOOL_USE:
            self._close_tool(event)
            if self._text is None and self._thinking is None:
                self._set_status(SessionStatus.THINKING)

    def _close_tool(self, event: TurnEvent) -> None:
        kind = classify(event.tool_name)
        tool_input = event.tool_input
        if kind == ToolKind.TODO_WRITE:
            if tool_input is not None:
                self._update_todo(tool_input)
            return
        card = self._by_index.get(event.index) if event.index is not None else None
        if isinstance(card, SubagentCard):
            if tool_input is not None:
                card.set_input(tool_input)
                self._updated(card)
        elif isinstance(card, ToolCard):
            if tool_input is not None:
                card.set_input(tool_input)
            elif event.parse_failed:
                card.set_raw_input(event.raw_input)
            self._updated(card)

    def _update_todo(self, tool_input: dict[str, Any]) -> None:
        todos = tool_input.get("todos")
        if not isinstance(todos, list) or not todos:
            return
        if self.todo is None:
            self.todo = TodoWidget()
            self.todo.update(todos)
            self._add(self.todo)
        else:
            self.todo.update(todos)
            self._updated(self.todo)

    def _on_message_delta(self, event: TurnEvent) -> None:
        usage = (event.data.get("event") or {}).get("usage")
        if isinstance(usage, dict):
            self.total_tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
            self._publish_stats()

    def _on_message_stop(self) -> None:
        self._finalize_text()
        self._finalize_thinking()
        if not self.has_tool_use:
            self._complete_all()
            self._set_status(SessionStatus.IDLE)

    def _on_assistant_full(self, event: TurnEvent) -> None:
        body = event.data.get("message") or {}
        if body.get("model"):
            self.model = body["model"]
        for block in body.get("content") or []:
            if not isinstance(block, dict) or block.get("type") != "tool_use":
                continue
            name = block.get("name", "")
            tool_use_id = block.get("id")
            tool_input = block.get("input") if isinstance(block.get("input"), dict) else None
            kind = classify(name)
            if kind == ToolKind.TODO_WRITE:
                if tool_input is not None:
                    self._update_todo(tool_input)
            elif kind == ToolKind.ASK_USER_QUESTION:
                continue
            elif kind == ToolKind.TASK and tool_use_id:
                card = self._subagents.get(tool_use_id)
                if card is None:
                    card = SubagentCard(tool_use_id=tool_use_id, activity="Agent running...")
                    self._subagents[tool_use_id] = card
                    self._add(card)
                    self.has_tool_use = True
                if tool_input is not None:
                    card.set_input(tool_input)
                    self._updated(card)
            elif tool_use_id:
                card = self._tool_cards.get(tool_use_id)
                if card is None:
                    card = ToolCard(tool_use_id=tool_use_id, tool_name=name)
                    self._tool_cards[tool_use_id] = card
                    self._add(card)
                    self.has_tool_use = True
                    self.tool_calls += 1
                if card.tool_input is None and tool_input is not None:
                    card.set_input(tool_input)
                    self._updated(card)

    def _on_tool_result(self, event: TurnEvent) -> None:
        tool_use_id = event.tool_use_id or ""
        output = tool_result_text(event.data.get("content"))
        card = self._tool_cards.get(tool_use_id)
        if card is not None:
            card.output = output
            card.is_error = event.is_error
            card.complete = True
            self._updated(card)
            return
        agent = self._subagents.get(tool_use_id)
        if agent is not None:
            agent.finish(output)
            self._updated(agent)
            return
        logger.debug(f"tool_result for unknown tool use {tool_use_id}")

    def _on_result(self, event: TurnEvent, aborting: bool) -> None:
        data = event.data
        usage = data.get("usage")
        if isinstance(usage, dict) and usage:
            self.total_tokens = int(usage.get("input_tokens") or 0) + int(usage.get("output_tokens") or 0)
        if data.get("total_cost_usd") is not None:
            self.total_cost = float(data["total_cost_usd"])
        if data.get("model"):
            self.model = data["model"]

        self._finalize_text()
        self._finalize_thinking()
        self._complete_all()
        self._publish_stats()

        if event.is_error:
            if aborting:
                logger.debug(f"Suppressed result error ({event.subtype}) after interrupt")
                self._set_status(SessionStatus.IDLE)
            else:
                error = ResultError(event.subtype, data.get("errors"))
                self.add_error(error.user_message(), error_type=error.subtype)
                self._set_status(SessionStatus.ERROR)
        else:
            text = data.get("result")
            if text and not self.had_assistant_content:
                # Slash commands answer through the result only.
                self.add_notice(str(text))
            self._set_status(SessionStatus.IDLE)
        self._end_turn()

    def _on_system_init(self, event: TurnEvent) -> None:
        if event.data.get("model"):
            self.model = event.data["model"]
        commands = event.data.get("slash_commands")
        if isinstance(commands, list):
            self.slash_commands = [str(c) for c in commands]
        self._publish_stats()

    def _on_compact_boundary(self, event: TurnEvent) -> None:
        metadata = event.data.get("compact_metadata") or {}
        pre_tokens = metadata.get("pre_tokens")
        if pre_tokens:
            self.add_notice(f"Conversation compacted ({pre_tokens} tokens before)")
        else:
            self.add_notice("Conversation compacted")
        self._set_status(SessionStatus.IDLE)

    def _on_done(self) -> None:
        self._finalize_text()
        self._finalize_thinking()
        self._complete_all()
        if self.status.status != SessionStatus.ERROR:
            self._set_status(SessionStatus.IDLE)
        self._publish(ChatEventType.DONE)

    def fail(self, message: str, aborting: bool = False) -> None:
        """Stream error: close everything that is open and surface the error once."""
        self.disable_pending_cards()
        self._finalize_text()
        self._finalize_thinking()
        self._complete_all()
        if aborting:
            logger.debug(f"Suppressed stream error after interrupt: {message}")
            self._set_status(SessionStatus.IDLE)
            return
        self.add_error(message or "Unknown error", error_type="stream")
        self._set_status(SessionStatus.ERROR)

    # ── Sub-agents ──

    def _handle_subagent(self, event: TurnEvent) -> None:
        parent = event.parent_tool_use_id or ""
        card = self._subagents.get(parent)
        if card is None:
            logger.debug(f"Dropping {event.kind.value} for unknown sub-agent {parent}")
            return

        if event.kind == EventKind.BLOCK_START and event.block_type == BlockType.TOOL_USE:
            if classify(event.tool_name) != ToolKind.TODO_WRITE and event.index is not None:
                card.add_child(event.tool_use_id, event.tool_name or "")
                self._child_index[(parent, event.index)] = event.tool_use_id
                self._updated(card)
        elif event.kind == EventKind.BLOCK_STOP and event.block_type == BlockType.TOOL_USE:
            if event.tool_input is not None:
                card.update_child(event.tool_use_id, event.tool_input)
                self._updated(card)
            if event.index is not None:
                self._child_index.pop((parent, event.index), None)
        elif event.kind == EventKind.ASSISTANT_FULL:
            self._subagent_message(card, event)
        elif event.kind == EventKind.TOOL_RESULT:
            if card.complete_child(event.tool_use_id):
                self._updated(card)
        elif event.kind == EventKind.RESULT:
            card.finish()
            self._updated(card)

    def _subagent_message(self, card: SubagentCard, event: TurnEvent) -> None:
        body = event.data.get("message") or {}
        for block in body.get("content") or []:
            if not isinstance(block, dict):
                continue
            if block.get("type") == "tool_use" and classify(block.get("name")) != ToolKind.TODO_WRITE:
                card.add_child(block.get("id"), block.get("name", ""))
                if isinstance(block.get("input"), dict):
                    card.update_child(block.get("id"), block["input"])
            elif block.get("type") == "text" and block.get("text", "").strip():
                first_line = block["text"].strip().split("\n")[0]
                card.activity = truncate_detail(first_line, SUBAGENT_DETAIL_LIMIT)
        self._updated(card)

    # ── Closing ──

    def _finalize_text(self) -> None:
        if self._text is None:
            return
        block = self._text
        self._text = None
        self._text_index = None
        block.finalize()
        if block.text:
            self._updated(block)
        else:
            self._remove(block)

    def _finalize_thinking(self) -> None:
        if self._thinking is None:
            return
        text = "".join(self._thinking)
        self._thinking = None
        self._thinking_index = None
        if text.strip():
            self._add(ThinkingBlock(text=text))

    def _complete_all(self) -> None:
        for card in self._tool_cards.values():
            if not card.complete:
                card.complete = True
                self._updated(card)
        for agent in self._subagents.values():
            if not agent.complete:
                agent.finish()
                self._updated(agent)

    def _end_turn(self) -> None:
        self._by_index.clear()
        self._child_index.clear()
        self._tool_cards.clear()
        self._subagents.clear()
        self.has_tool_use = False
        self.had_assistant_content = False
        self.tool_calls = 0

    def begin_turn(self) -> None:
        """Reset per-turn flags before a prompt is delivered."""
        self.had_assistant_content = False

    # ── History ──

    def replay_history(self, events: list[HistoryEvent], mode: str = "resumed") -> None:
        """Render stored transcript events as read-only artifacts."""
        for item in events:
            artifact: Artifact | None = None
            if item.kind == HistoryKind.USER:
                artifact = UserMessage(text=item.text, image_count=item.image_count)
            elif item.kind == HistoryKind.ASSISTANT:
                artifact = AssistantText(text=item.text, streaming=False)
            elif item.kind == HistoryKind.THINKING:
                artifact = ThinkingBlock(text=item.text)
            elif item.kind == HistoryKind.TOOL:
                card = ToolCard(tool_use_id=item.tool_use_id, tool_name=item.tool_name)
                card.set_input(item.tool_input or {})
                card.output = item.output
                card.is_error = item.is_error
                card.complete = True
                artifact = card
            elif item.kind == HistoryKind.SUBAGENT:
                agent = SubagentCard(tool_use_id=item.tool_use_id or "")
                agent.set_input(item.tool_input or {})
                agent.finish(item.output)
                artifact = agent
            if artifact is not None:
                artifact.history = True
                self._add(artifact)
        self._add(HistoryDivider(mode=mode, history=True))
