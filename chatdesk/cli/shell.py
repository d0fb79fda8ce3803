"""
Chatdesk CLI - Interactive Chat Shell

The shell owns the process-wide services (session registry, permission
broker, activity tracker, slash-command cache, tab namer), reads prompts
with prompt_toolkit while agent output streams above the input line, and
answers permission cards inline.
"""

import logging
import sys
from collections.abc import Callable

from prompt_toolkit.patch_stdout import patch_stdout
from rich.console import Console
from rich.table import Table

from chatdesk.activity.tracker import ActivityTracker
from chatdesk.agent.transport import AgentTransport, SdkTransport
from chatdesk.chat.artifacts import PermissionCard, PlanCard, QuestionCard
from chatdesk.chat.broker import (
    DENY_MESSAGE,
    PLAN_REJECT_MESSAGE,
    PermissionBroker,
    PermissionDecision,
    PermissionRequest,
)
from chatdesk.chat.controller import PermissionMode, SessionController
from chatdesk.chat.events import ChatEventBus
from chatdesk.chat.naming import TabNamer
from chatdesk.chat.registry import SessionRegistry, SlashCommandCache
from chatdesk.cli.prompt import LOCAL_COMMANDS, create_prompt_session
from chatdesk.cli.render import ChatRenderer, permission_hint, times_table
from chatdesk.config import PERMISSION_MODES, ChatDeskConfig, Project
from chatdesk.exceptions import (
    ConfigError,
    SessionClosedError,
    SessionSendFailed,
    SessionStartFailed,
)
from chatdesk.logging import set_project_id
from chatdesk.transcript.reader import TranscriptReader

logger = logging.getLogger(__name__)

QUIT = "quit"


def _option_labels(answer: str, question: dict | None) -> list[str] | None:
    """Map '1,3' to option labels; None if the answer is not a list of option numbers."""
    options = (question or {}).get("options") or []
    parts = [p.strip() for p in answer.split(",") if p.strip()]
    if not parts or not all(p.isdigit() and 1 <= int(p) <= len(options) for p in parts):
        return None
    return [options[int(p) - 1].get("label", "") for p in parts]


def decide(card: PermissionCard | None, request: PermissionRequest, answer: str) -> PermissionDecision | None:
    """
    Turn a typed answer into a permission decision.

    Question cards take one answer per question and only decide once the
    last one is in. Everything else takes y (allow), a (always allow) or
    n (deny).

    Returns:
        The decision, or None if more input is needed
    """
    answer = answer.strip()
    if isinstance(card, QuestionCard):
        if answer:
            labels = _option_labels(answer, card.current)
            if labels is None:
                card.set_custom_answer(answer)
            else:
                for label in labels:
                    card.select(label)
        if card.next():
            return PermissionDecision.allow(card.updated_input())
        return None

    key = answer.lower()[:1]
    if key == "y":
        return PermissionDecision.allow(request.tool_input)
    if key == "a":
        return PermissionDecision.always_allow(request)
    if key == "n":
        return PermissionDecision.deny(PLAN_REJECT_MESSAGE if isinstance(card, PlanCard) else DENY_MESSAGE)
    return None


class ChatShell:
    """One interactive chat in the terminal."""

    def __init__(
        self,
        config: ChatDeskConfig,
        console: Console | None = None,
        transport_factory: Callable[[], AgentTransport] = SdkTransport,
    ):
        self.config = config
        # Output goes through prompt_toolkit's stdout proxy, which is not a tty.
        self.console = console or Console(force_terminal=sys.stdout.isatty())
        self.transport_factory = transport_factory

        self.bus = ChatEventBus()
        self.broker = PermissionBroker()
        self.registry = SessionRegistry()
        self.slash_commands = SlashCommandCache()
        self.transcripts = TranscriptReader(config.claude_projects_dir)
        self.activity: ActivityTracker | None = None
        self.namer: TabNamer | None = None
        self.renderer = ChatRenderer(self.console)
        self.bus.subscribe(self.renderer)

        self.mode = config.settings.default_permission_mode
        self.controller: SessionController | None = None

    # ── Services ──

    def open_services(self) -> None:
        """Start time tracking and tab naming. Must run inside the event loop."""
        try:
            self.activity = ActivityTracker.from_config(self.config)
        except ConfigError as e:
            logger.warning(f"Time tracking disabled: {e}")
            self.console.print(f"[yellow]Time tracking disabled:[/yellow] {e}")
        if self.config.settings.generate_tab_names:
            self.namer = TabNamer(self.config.settings.naming_model)

    async def shutdown(self) -> None:
        """Close every session, stop the namer and persist tracked time."""
        await self.registry.close_all()
        if self.namer is not None:
            await self.namer.stop()
        if self.activity is not None:
            self.activity.shutdown()
        self.bus.clear()

    # ── Main loop ──

    async def run(
        self,
        cwd: str,
        model: str | None = None,
        mode: str | None = None,
        resume_id: str | None = None,
        fork_anchor: str | None = None,
    ) -> None:
        if mode:
            self.mode = mode
        project = self.config.project_for_path(cwd)
        if project is not None:
            set_project_id(project.id)

        self.open_services()
        try:
            await self._loop(cwd, project, model, resume_id, fork_anchor)
        finally:
            await self.shutdown()

    async def _loop(
        self,
        cwd: str,
        project: Project | None,
        model: str | None,
        resume_id: str | None,
        fork_anchor: str | None,
    ) -> None:
        session = create_prompt_session(self.slash_commands)
        while True:
            try:
                with patch_stdout(raw=True):
                    text = await session.prompt_async(self._prompt_text())
            except KeyboardInterrupt:
                if self.controller is not None and self.controller.in_flight:
                    self.console.print("[yellow]Interrupting...[/yellow]")
                    await self.controller.interrupt()
                else:
                    self.console.print("[dim]Use /quit to exit[/dim]")
                continue
            except EOFError:
                break

            if self.controller is not None and not text.startswith("/"):
                pending = self.broker.pending(self.controller.session_id)
                if pending:
                    self.answer_permission(self.controller, pending[0], text)
                    continue

            text = text.strip()
            if not text:
                continue
            if text.startswith("/"):
                outcome = await self.command(text)
                if outcome == QUIT:
                    break
                if outcome:
                    continue

            if self.controller is None:
                await self._start(cwd, project, text, model, resume_id, fork_anchor)
                continue
            try:
                await self.controller.send(text)
            except (SessionSendFailed, SessionClosedError) as e:
                logger.error(f"Send failed: {e}")

        self.console.print("[yellow]Goodbye![/yellow]")

    async def _start(
        self,
        cwd: str,
        project: Project | None,
        prompt: str,
        model: str | None,
        resume_id: str | None,
        fork_anchor: str | None,
    ) -> None:
        controller = SessionController(
            self.transport_factory(),
            self.broker,
            self.bus,
            registry=self.registry,
            activity=self.activity,
            project_id=project.id if project else None,
            transcripts=self.transcripts,
            slash_commands=self.slash_commands,
            namer=self.namer,
            settings=self.config.settings,
            output_throttle=self.config.output_activity_throttle,
        )
        try:
            await controller.start(
                cwd,
                prompt,
                mode=self.mode,
                resume_id=resume_id,
                fork_anchor=fork_anchor,
                model=model,
            )
        except SessionStartFailed as e:
            # The error artifact is already on screen; the next prompt starts afresh.
            logger.error(f"{e}")
            return
        self.controller = controller

    def _prompt_text(self) -> str:
        if self.controller is not None and self.broker.has_pending(self.controller.session_id):
            return "? "
        return "> "

    # ── Permissions ──

    def answer_permission(self, controller: SessionController, request: PermissionRequest, text: str) -> None:
        card = controller.turn.permission_card(request.request_id)
        decision = decide(card, request, text)
        if decision is None:
            if isinstance(card, QuestionCard) and card.current is not None:
                self.console.print(f"[bold]{card.current.get('question', '')}[/bold]")
            elif card is not None:
                self.console.print(permission_hint(card))
            return
        controller.resolve_permission(request.request_id, decision)

    # ── Local commands ──

    async def command(self, text: str) -> str | bool:
        """
        Run a local slash command.

        Returns:
            QUIT to leave, True if handled, False to pass the text to the agent
        """
        name, _, arg = text.partition(" ")
        name = name.lower()
        arg = arg.strip()

        if name in ("/quit", "/exit"):
            return QUIT
        if name == "/help":
            self._show_help()
        elif name == "/stop":
            if self.controller is not None:
                await self.controller.interrupt()
        elif name == "/mode":
            self._set_mode(arg)
        elif name == "/status":
            self._show_status()
        elif name == "/time":
            self.show_time()
        else:
            return False
        return True

    def _show_help(self) -> None:
        table = Table(show_header=False, box=None)
        for cmd, desc in LOCAL_COMMANDS.items():
            table.add_row(f"[cyan]{cmd}[/cyan]", desc)
        self.console.print(table)
        agent_commands = self.slash_commands.commands
        if agent_commands:
            self.console.print(f"[dim]Agent commands: {' '.join(agent_commands)}[/dim]")

    def _set_mode(self, value: str) -> None:
        if not value:
            current = self.controller.mode.value if self.controller else self.mode
            self.console.print(f"Permission mode: [cyan]{current}[/cyan]")
            return
        if value not in PERMISSION_MODES:
            self.console.print(f"[red]Unknown mode '{value}'.[/red] Choose from: {', '.join(PERMISSION_MODES)}")
            return
        self.mode = value
        if self.controller is not None:
            if value == PermissionMode.ALWAYS_ALLOW.value:
                self.controller.set_always_allow()
            else:
                self.controller.mode = PermissionMode(value)
        self.console.print(f"Permission mode: [cyan]{value}[/cyan]")

    def _show_status(self) -> None:
        controller = self.controller
        if controller is None:
            self.console.print("[dim]No session yet. Type a prompt to start one.[/dim]")
            return
        info = controller.info
        self.console.print(
            f"[bold]Session:[/bold] {info.session_id}\n"
            f"[bold]Status:[/bold] {controller.status.status.value} {controller.status.label}\n"
            f"[bold]Model:[/bold] {info.model or 'default'}\n"
            f"[bold]Mode:[/bold] {info.permission_mode.value}\n"
            f"[bold]Tokens:[/bold] {info.total_tokens:,}  [bold]Cost:[/bold] ${info.total_cost:.4f}\n"
            f"[bold]Queued:[/bold] {len(controller.queued)}"
        )

    def show_time(self) -> None:
        if self.activity is None:
            self.console.print("[dim]Time tracking is disabled[/dim]")
            return
        rows = {p.name: self.activity.project_times(p.id) for p in self.config.projects}
        self.console.print(times_table(rows, self.activity.global_times()))
