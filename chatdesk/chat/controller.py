"""
Chatdesk - Session Controller

One controller per chat session. It owns the agent transport, the
permission mode, the prompt queue and the turn state machine, and is
the surface the UI talks to: start, send, interrupt, resolve_permission,
set_always_allow and close.
"""

import asyncio
import logging
import time
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import TYPE_CHECKING, Any

from chatdesk.agent.decoder import StreamDecoder
from chatdesk.agent.protocol import (
    EventKind,
    ImageAttachment,
    Mention,
    TurnEvent,
    UserTurn,
    mint_id,
)
from chatdesk.agent.transport import AgentTransport, PermissionReply, SessionOptions
from chatdesk.chat.broker import PermissionBroker, PermissionDecision, PermissionRequest
from chatdesk.chat.events import ChatEvent, ChatEventBus, ChatEventType
from chatdesk.chat.tools import EDIT_TOOLS, ToolKind, classify, display_detail
from chatdesk.chat.turn import TurnStateMachine
from chatdesk.config import Settings
from chatdesk.exceptions import (
    SessionClosedError,
    SessionError,
    SessionSendFailed,
    SessionStartFailed,
    TranscriptReadFailed,
)
from chatdesk.logging import (
    PermissionLogEntry,
    SessionLogEntry,
    TurnLogEntry,
    now_iso,
    permission_logger,
    session_logger,
    set_session_id,
    turn_logger,
)
from chatdesk.state import SessionStatus, StatusTracker

if TYPE_CHECKING:
    from chatdesk.activity.tracker import ActivityTracker
    from chatdesk.chat.naming import TabNamer
    from chatdesk.chat.registry import SessionRegistry, SlashCommandCache
    from chatdesk.transcript.reader import TranscriptReader

logger = logging.getLogger(__name__)


class PermissionMode(str, Enum):
    """How tool permission requests are handled for a session."""

    DEFAULT = "default"
    ACCEPT_EDITS = "acceptEdits"
    PLAN = "plan"
    BYPASS = "bypassPermissions"
    ALWAYS_ALLOW = "alwaysAllow"

    @property
    def sdk_value(self) -> str:
        # Always-allow is answered locally; the agent keeps asking.
        return "default" if self is PermissionMode.ALWAYS_ALLOW else self.value


# Interactive tools that always need the user, whatever the mode
_INTERACTIVE = {ToolKind.ASK_USER_QUESTION, ToolKind.EXIT_PLAN_MODE, ToolKind.ENTER_PLAN_MODE}


@dataclass
class SessionInfo:
    """Attributes of a chat session."""

    session_id: str
    cwd: str = ""
    permission_mode: PermissionMode = PermissionMode.DEFAULT
    model: str = ""
    project_id: str | None = None
    resume_id: str | None = None
    fork_anchor: str | None = None
    sdk_session_id: str | None = None
    total_cost: float = 0.0
    total_tokens: int = 0
    created_at: datetime = field(default_factory=datetime.now)


class SessionController:
    """
    Drives one conversation with the agent.

    Prompts submitted while a turn is in flight are queued and delivered
    one per turn, in submission order, after each result event.
    """

    def __init__(
        self,
        transport: AgentTransport,
        broker: PermissionBroker,
        bus: ChatEventBus,
        *,
        session_id: str | None = None,
        registry: "SessionRegistry | None" = None,
        activity: "ActivityTracker | None" = None,
        project_id: str | None = None,
        transcripts: "TranscriptReader | None" = None,
        slash_commands: "SlashCommandCache | None" = None,
        namer: "TabNamer | None" = None,
        settings: Settings | None = None,
        output_throttle: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.session_id = session_id or mint_id("chat")
        self.transport = transport
        self.broker = broker
        self.bus = bus
        self.registry = registry
        self.activity = activity
        self.transcripts = transcripts
        self.slash_commands = slash_commands
        self.namer = namer
        self.settings = settings or Settings()
        self.info = SessionInfo(session_id=self.session_id, project_id=project_id)

        self.status = StatusTracker(self._on_status_change)
        self.decoder = StreamDecoder(self.session_id)
        self.turn = TurnStateMachine(self.session_id, bus, self.status, on_output=self._on_output)

        self.aborting = False
        self._queue: deque[UserTurn] = deque()
        self._in_flight = False
        self._started = False
        self._closed = False
        self._allow_rules: set[tuple[str, str | None]] = set()
        self._tasks: set[asyncio.Task[Any]] = set()
        self._clock = clock
        self._output_throttle = output_throttle
        self._last_output_activity: float | None = None

    # ── Properties ──

    @property
    def mode(self) -> PermissionMode:
        return self.info.permission_mode

    @mode.setter
    def mode(self, value: PermissionMode) -> None:
        if value != self.info.permission_mode:
            logger.info(f"[{self.session_id}] permission mode {self.info.permission_mode.value} -> {value.value}")
        self.info.permission_mode = value

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def queued(self) -> list[str]:
        return [t.text for t in self._queue]

    # ── Public operations ──

    async def start(
        self,
        cwd: str,
        initial_prompt: str,
        mode: PermissionMode | str = PermissionMode.DEFAULT,
        resume_id: str | None = None,
        fork_anchor: str | None = None,
        images: list[ImageAttachment] | None = None,
        mentions: list[Mention] | None = None,
        model: str | None = None,
    ) -> None:
        """
        Open the session and issue the first request.

        Raises:
            SessionStartFailed: If the agent refuses the request
            DuplicateSessionError: If the session id is already registered
        """
        if self._started:
            raise SessionError(f"Session {self.session_id} already started")
        self._started = True
        set_session_id(self.session_id)

        self.info.cwd = cwd
        self.info.permission_mode = PermissionMode(mode)
        self.info.model = model or self.settings.default_model
        self.info.resume_id = resume_id
        self.info.fork_anchor = fork_anchor if resume_id else None

        if resume_id:
            await self._replay_history(cwd, resume_id, self.info.fork_anchor)

        if self.registry is not None:
            self.registry.register(self)

        turn = UserTurn(initial_prompt, list(images or []), list(mentions or []))
        self.turn.add_user_message(initial_prompt, image_count=len(turn.images))
        self._begin_turn()

        options = SessionOptions(
            session_id=self.session_id,
            cwd=cwd,
            permission_mode=self.mode.sdk_value,
            model=self.info.model or None,
            resume_id=resume_id,
            fork_anchor=self.info.fork_anchor,
            max_turns=self.settings.max_turns,
            setting_sources=list(self.settings.setting_sources),
        )
        sink = self.registry.dispatch if self.registry is not None else self.handle_message
        try:
            await self.transport.open(options, turn, sink)
        except Exception as e:
            logger.error(f"[{self.session_id}] agent refused session start: {e}")
            self._in_flight = False
            if self.registry is not None:
                self.registry.unregister(self.session_id)
            self.turn.add_error(f"Failed to start session: {e}", error_type="start")
            self.status.transition_to(SessionStatus.ERROR)
            self._log_session("error", error=str(e), error_type=type(e).__name__)
            try:
                await self.transport.close()
            except Exception as close_error:
                logger.warning(f"[{self.session_id}] error closing transport: {close_error}")
            raise SessionStartFailed(
                "Agent refused the initial request", self.session_id, cause=str(e)
            ) from e

        self._log_session("start", prompt_chars=len(initial_prompt))
        if self.namer is not None and not resume_id:
            self._spawn(self._generate_title(initial_prompt))

    async def send(
        self,
        text: str,
        images: list[ImageAttachment] | None = None,
        mentions: list[Mention] | None = None,
    ) -> None:
        """
        Submit a prompt: immediately when idle, else queued behind the running turn.

        Raises:
            SessionClosedError: If the session was closed
            SessionSendFailed: If the agent did not accept the prompt
        """
        if self._closed:
            raise SessionClosedError(f"Session {self.session_id} is closed")
        if not self._started:
            raise SessionError(f"Session {self.session_id} was never started")

        turn = UserTurn(text, list(images or []), list(mentions or []))
        if self.status.status == SessionStatus.ERROR:
            self.status.transition_to(SessionStatus.IDLE)
        self._record_activity()

        if self._in_flight or self._queue:
            self._queue.append(turn)
            self.turn.add_user_message(text, image_count=len(turn.images), queued=True)
            self._log_session("queued", prompt_chars=len(text), queue_length=len(self._queue))
            # Older prompts left behind by an error go first.
            self._drain_queue()
            return

        self.turn.add_user_message(text, image_count=len(turn.images))
        await self._deliver(turn)

    async def interrupt(self) -> None:
        """Ask the agent to abort the current turn. A second call while aborting is a no-op."""
        if self.aborting or not self._in_flight or self._closed:
            return
        self.aborting = True
        self._log_session("interrupt")
        try:
            await self.transport.interrupt()
        except Exception as e:
            logger.warning(f"[{self.session_id}] interrupt failed: {e}")

    def resolve_permission(self, request_id: str, decision: PermissionDecision) -> bool:
        """Answer a pending permission request. Returns False if it was already resolved."""
        resolved = self.broker.resolve(request_id, decision)
        if resolved and decision.allowed:
            self._apply_permission_updates(decision.updated_permissions or [])
        return resolved

    def set_always_allow(self) -> None:
        """Auto-approve every permission request from now on."""
        self.mode = PermissionMode.ALWAYS_ALLOW
        self._log_session("mode", to_state=self.mode.value)

    async def close(self) -> None:
        """Deny pending permissions, drop queued prompts, release the agent, emit done."""
        if self._closed:
            return
        self._closed = True

        self.broker.cancel_all(self.session_id)
        discarded = self._discard_queue()
        self._in_flight = False

        for task in list(self._tasks):
            task.cancel()
        try:
            await self.transport.close()
        except Exception as e:
            logger.warning(f"[{self.session_id}] error closing transport: {e}")
        if self.registry is not None:
            self.registry.unregister(self.session_id)

        self.turn.handle(TurnEvent(kind=EventKind.DONE, session_id=self.session_id), aborting=True)
        self._log_session("close", discarded_prompts=discarded)

    # ── Inbound messages ──

    def handle_message(self, message: dict[str, Any]) -> None:
        """Feed one wire message from the agent through the decoder and turn machine."""
        if self._closed:
            logger.debug(f"[{self.session_id}] message after close dropped")
            return
        for event in self.decoder.decode(message):
            self._apply(event)

    def _apply(self, event: TurnEvent) -> None:
        kind = event.kind
        if kind == EventKind.PERMISSION_REQUEST:
            self._on_permission_request(event)
            return

        if kind == EventKind.RESULT and not event.is_subagent:
            self._on_result(event)
            return

        if kind == EventKind.ERROR:
            aborting = self.aborting
            self.broker.cancel_all(self.session_id, "Stream error")
            self.turn.handle(event, aborting=aborting)
            self._in_flight = False
            self.aborting = False
            if not aborting:
                self._log_session("error", error=event.text, error_type="StreamError")
            self._drain_queue()
            return

        if kind == EventKind.DONE:
            self.broker.cancel_all(self.session_id, "Stream ended")
            self._in_flight = False
            discarded = self._discard_queue()
            if discarded:
                logger.info(f"[{self.session_id}] stream ended, dropped {discarded} queued prompt(s)")
            self.turn.handle(event)
            return

        self.turn.handle(event, aborting=self.aborting)

        if kind == EventKind.SYSTEM_INIT:
            self.info.sdk_session_id = event.data.get("sdk_session_id") or self.info.sdk_session_id
            if self.turn.model:
                self.info.model = self.turn.model
            if self.slash_commands is not None and self.turn.slash_commands:
                self.slash_commands.update(self.turn.slash_commands)

    def _on_result(self, event: TurnEvent) -> None:
        aborted = self.aborting
        # Requests may not outlive the turn that raised them.
        self.broker.cancel_all(self.session_id, "Turn ended")
        tool_calls = self.turn.tool_calls
        self.turn.handle(event, aborting=aborted)

        self.info.total_cost = self.turn.total_cost
        self.info.total_tokens = self.turn.total_tokens
        if self.turn.model:
            self.info.model = self.turn.model
        if event.data.get("sdk_session_id"):
            self.info.sdk_session_id = event.data["sdk_session_id"]

        turn_logger.info(
            TurnLogEntry(
                timestamp=now_iso(),
                session_id=self.session_id,
                subtype=event.subtype,
                is_error=event.is_error,
                aborted=aborted,
                model=self.info.model,
                cost_usd=self.info.total_cost,
                total_tokens=self.info.total_tokens,
                duration_ms=int(event.data.get("duration_ms") or 0),
                num_turns=int(event.data.get("num_turns") or 0),
                tool_calls=tool_calls,
                error="\n".join(str(e) for e in event.data.get("errors") or []) or None,
            ).to_json()
        )

        self.aborting = False
        self._in_flight = False
        self._drain_queue()

    # ── Permissions ──

    def _on_permission_request(self, event: TurnEvent) -> None:
        request = PermissionRequest.from_wire(event.data, self.session_id)
        auto = self._auto_decision(request)
        if auto is not None:
            permission_logger.info(
                PermissionLogEntry(
                    timestamp=now_iso(),
                    session_id=self.session_id,
                    request_id=request.request_id,
                    event_type="auto",
                    tool_name=request.tool_name,
                    behavior=auto.behavior,
                ).to_json()
            )
            self._reply_to_agent(request.request_id, auto)
            return
        self.broker.register(
            request,
            lambda decision: self._reply_to_agent(request.request_id, decision),
            listener=self,
        )

    def _auto_decision(self, request: PermissionRequest) -> PermissionDecision | None:
        if classify(request.tool_name) in _INTERACTIVE:
            return None
        mode = self.mode
        if mode in (PermissionMode.BYPASS, PermissionMode.ALWAYS_ALLOW):
            return PermissionDecision.allow(request.tool_input)
        if mode == PermissionMode.ACCEPT_EDITS and request.tool_name in EDIT_TOOLS:
            return PermissionDecision.allow(request.tool_input)
        detail = display_detail(request.tool_name, request.tool_input)
        if (request.tool_name, None) in self._allow_rules or (request.tool_name, detail) in self._allow_rules:
            return PermissionDecision.allow(request.tool_input)
        return None

    def _reply_to_agent(self, request_id: str, decision: PermissionDecision) -> None:
        self.transport.respond_permission(
            request_id,
            PermissionReply(
                behavior=decision.behavior,
                updated_input=decision.updated_input,
                updated_permissions=decision.updated_permissions,
                message=decision.message,
            ),
        )

    def _apply_permission_updates(self, updates: list[dict[str, Any]]) -> None:
        for update in updates:
            update_type = update.get("type")
            if update_type == "setMode" and update.get("destination", "session") == "session":
                try:
                    self.mode = PermissionMode(update.get("mode"))
                except ValueError:
                    logger.warning(f"[{self.session_id}] unknown permission mode {update.get('mode')!r}")
            elif update_type == "addRules" and update.get("behavior", "allow") == "allow":
                for rule in update.get("rules") or []:
                    tool_name = rule.get("toolName") or rule.get("tool_name")
                    if tool_name:
                        self._allow_rules.add((tool_name, rule.get("ruleContent") or rule.get("rule_content")))

    def on_permission_registered(self, request: PermissionRequest) -> None:
        self.turn.add_permission_card(request)
        self.status.enter_waiting(f"{request.tool_name}: permission needed")

    def on_permission_resolved(
        self, request: PermissionRequest, decision: PermissionDecision, forced: bool
    ) -> None:
        if forced:
            outcome = None
        elif decision.allowed:
            outcome = "always-allow" if decision.updated_permissions else "allow"
        else:
            outcome = "deny"
        self.turn.resolve_permission_card(request.request_id, outcome, disabled=forced)
        if not self.broker.has_pending(self.session_id):
            self.status.leave_waiting()

    # ── Internals ──

    def _begin_turn(self) -> None:
        self.turn.begin_turn()
        self._in_flight = True
        self.status.transition_to(SessionStatus.THINKING)
        self._record_activity()

    async def _deliver(self, turn: UserTurn) -> None:
        self._begin_turn()
        try:
            await self.transport.send(turn)
        except Exception as e:
            logger.error(f"[{self.session_id}] send failed: {e}")
            self._in_flight = False
            self.turn.add_error(f"Failed to send message: {e}", error_type="send")
            self.status.transition_to(SessionStatus.ERROR)
            self._log_session("error", error=str(e), error_type="SessionSendFailed")
            raise SessionSendFailed("Agent did not accept the prompt", self.session_id, cause=str(e)) from e
        self._log_session("send", prompt_chars=len(turn.text), queue_length=len(self._queue))

    def _drain_queue(self) -> None:
        """Hand the oldest queued prompt to the agent when nothing is in flight."""
        if self._closed or self._in_flight or not self._queue:
            return
        next_turn = self._queue.popleft()
        self._in_flight = True
        self._spawn(self._deliver_queued(next_turn))

    def _discard_queue(self) -> int:
        discarded = len(self._queue)
        self._queue.clear()
        for artifact in self.turn.artifacts:
            if getattr(artifact, "queued", False):
                artifact.queued = False
        return discarded

    async def _deliver_queued(self, turn: UserTurn) -> None:
        if self._closed:
            return
        if self.status.status == SessionStatus.ERROR:
            self.status.transition_to(SessionStatus.IDLE)
        try:
            await self._deliver(turn)
        except SessionSendFailed:
            # Already surfaced as an error artifact; the rest still go out.
            self._drain_queue()

    async def _replay_history(self, cwd: str, resume_id: str, fork_anchor: str | None) -> None:
        if self.transcripts is None:
            self.turn.replay_history([], mode="resumed")
            return
        try:
            events = await self.transcripts.read(cwd, resume_id, fork_anchor)
        except TranscriptReadFailed as e:
            logger.warning(f"[{self.session_id}] {e}")
            self.turn.replay_history([], mode="resumed")
            return
        self.turn.replay_history(events, mode="forked" if fork_anchor else "resumed")

    async def _generate_title(self, prompt: str) -> None:
        if self.namer is None:
            return
        title = await self.namer.generate(prompt)
        if title:
            self.bus.publish(ChatEvent(self.session_id, ChatEventType.MESSAGE, payload={"title": title}))

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    def _record_activity(self) -> None:
        if self.activity is not None and self.info.project_id:
            self.activity.record_activity(self.info.project_id)

    def _on_output(self) -> None:
        now = self._clock()
        if self._last_output_activity is not None and now - self._last_output_activity < self._output_throttle:
            return
        self._last_output_activity = now
        self._record_activity()

    def _on_status_change(self, previous: SessionStatus, current: SessionStatus, label: str) -> None:
        self.bus.publish(
            ChatEvent(
                self.session_id,
                ChatEventType.STATUS,
                payload={"status": current.value, "previous": previous.value, "label": label},
            )
        )
        session_logger.debug(
            SessionLogEntry(
                timestamp=now_iso(),
                session_id=self.session_id,
                event_type="status",
                from_state=previous.value,
                to_state=current.value,
            ).to_json()
        )

    def _log_session(self, event_type: str, **fields: Any) -> None:
        session_logger.info(
            SessionLogEntry(
                timestamp=now_iso(),
                session_id=self.session_id,
                event_type=event_type,
                cwd=self.info.cwd,
                project_id=self.info.project_id or "",
                model=self.info.model,
                permission_mode=self.info.permission_mode.value,
                resume_id=self.info.resume_id,
                fork_anchor=self.info.fork_anchor,
                total_cost_usd=self.info.total_cost,
                total_tokens=self.info.total_tokens,
                **fields,
            ).to_json()
        )
