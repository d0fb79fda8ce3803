"""
Chatdesk CLI - Artifact Rendering

Prints chat artifacts to a Rich console as the event bus reports them.
Assistant text is streamed in place; cards are printed once they have
something worth showing.
"""

from rich.console import Console
from rich.markdown import Markdown
from rich.markup import escape
from rich.panel import Panel
from rich.rule import Rule
from rich.table import Table
from rich.text import Text

from chatdesk.chat.artifacts import (
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
from chatdesk.chat.events import ChatEvent, ChatEventType

OUTPUT_PREVIEW_LINES = 5

_OUTCOME_LABELS = {
    "allow": "[green]✓ allowed[/green]",
    "always-allow": "[green]✓ always allowed[/green]",
    "deny": "[red]✗ denied[/red]",
}


def format_duration(ms: int) -> str:
    """Render milliseconds as '1h 05m', '12m 03s' or '45s'."""
    seconds = max(0, int(ms) // 1000)
    hours, rest = divmod(seconds, 3600)
    minutes, seconds = divmod(rest, 60)
    if hours:
        return f"{hours}h {minutes:02d}m"
    if minutes:
        return f"{minutes}m {seconds:02d}s"
    return f"{seconds}s"


def permission_hint(card: PermissionCard) -> str:
    if isinstance(card, QuestionCard):
        return "[dim]Answer with option numbers (1,3) or your own text; empty picks the first option[/dim]"
    if isinstance(card, PlanCard):
        return "[dim]" + escape("[y] approve  [a] approve and stop asking  [n] reject") + "[/dim]"
    return "[dim]" + escape("[y] allow  [a] always allow  [n] deny") + "[/dim]"


class ChatRenderer:
    """Event bus listener that writes artifacts to the console."""

    def __init__(self, console: Console):
        self.console = console
        self._streamed: dict[str, int] = {}
        self._printed: set[str] = set()
        self._mid_line = False

    def __call__(self, event: ChatEvent) -> None:
        if event.type in (ChatEventType.ARTIFACT_ADDED, ChatEventType.ARTIFACT_UPDATED):
            self.render(event.artifact, added=event.type == ChatEventType.ARTIFACT_ADDED)
        elif event.type == ChatEventType.MESSAGE and event.payload.get("title"):
            self._line(f"[dim]── {escape(event.payload['title'])} ──[/dim]")

    def _line(self, renderable: object) -> None:
        if self._mid_line:
            self.console.print()
            self._mid_line = False
        self.console.print(renderable)

    def _once(self, artifact_id: str) -> bool:
        if artifact_id in self._printed:
            return False
        self._printed.add(artifact_id)
        return True

    def render(self, artifact: object, added: bool = False) -> None:
        if isinstance(artifact, AssistantText):
            self._render_text(artifact)
        elif isinstance(artifact, UserMessage):
            if added and (artifact.history or artifact.queued):
                suffix = " [dim](queued)[/dim]" if artifact.queued else ""
                images = f" [dim]+{artifact.image_count} image(s)[/dim]" if artifact.image_count else ""
                self._line(f"[bold cyan]>[/bold cyan] {escape(artifact.text)}{images}{suffix}")
        elif isinstance(artifact, ThinkingBlock):
            if self._once(artifact.id):
                self._line("[dim italic]∴ Thinking...[/dim italic]")
        elif isinstance(artifact, ToolCard):
            if artifact.complete and self._once(artifact.id):
                self._render_tool(artifact)
        elif isinstance(artifact, SubagentCard):
            if artifact.complete and self._once(artifact.id):
                self._render_subagent(artifact)
        elif isinstance(artifact, TodoWidget):
            active = f" · {artifact.active_text}" if artifact.active_text else ""
            self._line(f"[magenta]Tasks {artifact.completed}/{artifact.total}[/magenta]{active}")
        elif isinstance(artifact, PermissionCard):
            self._render_permission(artifact, added)
        elif isinstance(artifact, ErrorArtifact):
            if self._once(artifact.id):
                self._line(Panel(Text(artifact.message), title="[bold red]Error[/bold red]", border_style="red"))
        elif isinstance(artifact, SystemNotice):
            if self._once(artifact.id):
                self._line(Text(artifact.text, style="dim"))
        elif isinstance(artifact, HistoryDivider):
            if self._once(artifact.id):
                self._line(Rule(artifact.text, style="dim"))

    def _render_text(self, artifact: AssistantText) -> None:
        if artifact.history:
            if self._once(artifact.id):
                self._line(Markdown(artifact.text))
            return
        shown = self._streamed.get(artifact.id, 0)
        fresh = artifact.text[shown:]
        if fresh:
            self.console.print(fresh, end="", markup=False, highlight=False)
            self._streamed[artifact.id] = len(artifact.text)
            self._mid_line = not artifact.text.endswith("\n")
        if not artifact.streaming and self._mid_line:
            self.console.print()
            self._mid_line = False

    def _render_tool(self, card: ToolCard) -> None:
        style = "red" if card.is_error else "green"
        detail = f"([dim]{escape(card.detail)}[/dim])" if card.detail else ""
        self._line(f"[{style}]●[/{style}] [bold]{card.tool_name}[/bold]{detail}")
        if not card.output:
            return
        pages = card.output_pages()
        lines = pages[0] if pages else []
        preview = lines[:OUTPUT_PREVIEW_LINES]
        for line in preview:
            self.console.print(Text(f"  ⎿ {line}", style="dim"))
        hidden = sum(len(p) for p in pages) - len(preview)
        if hidden > 0:
            self.console.print(f"  [dim]… {hidden} more line(s)[/dim]")

    def _render_subagent(self, card: SubagentCard) -> None:
        label = card.agent_type or "Agent"
        self._line(f"[blue]◆[/blue] [bold]{label}[/bold] {escape(card.description)}")
        for child in card.children.values():
            detail = f" [dim]{escape(child.detail)}[/dim]" if child.detail else ""
            self.console.print(f"    · {child.tool_name}{detail}")

    def _render_permission(self, card: PermissionCard, added: bool) -> None:
        if added:
            if isinstance(card, QuestionCard):
                body = self._question_body(card)
                title = "[bold yellow]Question[/bold yellow]"
            elif isinstance(card, PlanCard):
                body = Markdown(card.plan_text or "(no plan text)")
                title = "[bold yellow]Plan[/bold yellow]"
            else:
                lines = [f"[bold]{card.tool_name}[/bold] {escape(card.detail)}"]
                if card.decision_reason:
                    lines.append(f"[dim]{escape(card.decision_reason)}[/dim]")
                body = "\n".join(lines)
                title = "[bold yellow]Permission needed[/bold yellow]"
            self._line(Panel(body, title=title, border_style="yellow"))
            self.console.print(permission_hint(card))
        elif card.resolved and self._once(f"{card.id}:resolved"):
            if card.disabled:
                self._line("[dim]permission request cancelled[/dim]")
            else:
                self._line(_OUTCOME_LABELS.get(card.outcome or "", card.outcome or ""))

    @staticmethod
    def _question_body(card: QuestionCard) -> str:
        parts = []
        for question in card.questions:
            parts.append(f"[bold]{escape(question.get('question', ''))}[/bold]")
            for i, option in enumerate(question.get("options") or [], 1):
                description = f" [dim]{escape(option['description'])}[/dim]" if option.get("description") else ""
                parts.append(f"  {i}. {escape(option.get('label', ''))}{description}")
        return "\n".join(parts)


def times_table(project_times: dict[str, dict[str, int]], global_times: dict[str, int]) -> Table:
    """Per-project today/total rows followed by the real-time counter."""
    table = Table(show_header=True, header_style="bold")
    table.add_column("Project", style="cyan")
    table.add_column("Today", justify="right")
    table.add_column("Total", justify="right", style="dim")

    for name, times in project_times.items():
        table.add_row(name, format_duration(times["today"]), format_duration(times["total"]))
    table.add_section()
    table.add_row(
        "[bold]All projects[/bold]",
        format_duration(global_times["today"]),
        f"week {format_duration(global_times['week'])} · month {format_duration(global_times['month'])}",
    )
    return table
