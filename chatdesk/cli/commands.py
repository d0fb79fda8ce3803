"""
Chatdesk CLI - Typer Commands

Entry points: interactive chat, stored session listing, transcript
replay and the time report.
"""

import asyncio
import logging
from pathlib import Path

import typer
from rich.console import Console
from rich.table import Table

from chatdesk import __version__
from chatdesk.activity.store import ActivityStore
from chatdesk.activity.tracker import ActivityTracker
from chatdesk.chat.events import ChatEventBus
from chatdesk.chat.turn import TurnStateMachine
from chatdesk.cli.render import ChatRenderer, times_table
from chatdesk.cli.shell import ChatShell
from chatdesk.config import PERMISSION_MODES, ChatDeskConfig, load_config
from chatdesk.exceptions import ConfigError, TranscriptReadFailed
from chatdesk.state import StatusTracker
from chatdesk.transcript.reader import TranscriptReader, list_stored_sessions

logger = logging.getLogger(__name__)
console = Console()

app = typer.Typer(
    name="chatdesk",
    help="Terminal chat sessions with the Claude agent, with per-project time tracking",
    add_completion=False,
)


def _load() -> ChatDeskConfig:
    try:
        return load_config()
    except ConfigError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        raise typer.Exit(1)


def _resolve_path(path: str | None) -> str:
    resolved = Path(path or ".").expanduser().resolve()
    if not resolved.is_dir():
        console.print(f"[red]Not a directory:[/red] {resolved}")
        raise typer.Exit(1)
    return str(resolved)


@app.command()
def chat(
    path: str = typer.Argument(None, help="Working directory (default: current)"),
    model: str = typer.Option(None, "--model", "-m", help="Model for the session"),
    mode: str = typer.Option(None, "--mode", help=f"Permission mode: {', '.join(PERMISSION_MODES)}"),
    resume: str = typer.Option(None, "--resume", "-r", help="Resume a stored session by id"),
    fork_at: str = typer.Option(None, "--fork-at", help="Fork the resumed session at a message uuid"),
) -> None:
    """Start an interactive chat session."""
    config = _load()
    cwd = _resolve_path(path)
    if mode and mode not in PERMISSION_MODES:
        console.print(f"[red]Unknown mode '{mode}'.[/red] Choose from: {', '.join(PERMISSION_MODES)}")
        raise typer.Exit(1)
    if fork_at and not resume:
        console.print("[red]--fork-at needs --resume[/red]")
        raise typer.Exit(1)

    project = config.project_for_path(cwd)
    where = f"[bold]{project.name}[/bold]" if project else "[dim]untracked directory[/dim]"
    console.print(f"chatdesk {__version__} · {where} · {cwd}")
    console.print("[dim]Type a prompt, /help for commands, /quit to exit. Ctrl-C stops the current turn.[/dim]")

    shell = ChatShell(config)
    asyncio.run(shell.run(cwd, model=model, mode=mode, resume_id=resume, fork_anchor=fork_at))


@app.command()
def sessions(
    path: str = typer.Argument(None, help="Project directory (default: current)"),
    limit: int = typer.Option(10, "--limit", "-n", help="Show at most N sessions"),
) -> None:
    """List stored sessions for a directory."""
    config = _load()
    cwd = _resolve_path(path)
    stored = list_stored_sessions(cwd, limit=limit, projects_dir=config.claude_projects_dir)
    if not stored:
        console.print("[dim]No stored sessions found[/dim]")
        return

    table = Table(show_header=True, header_style="bold")
    table.add_column("Session ID", style="cyan")
    table.add_column("Summary")
    table.add_column("Messages", justify="right")
    table.add_column("Branch", style="green")
    table.add_column("Modified", style="dim")
    for s in stored:
        table.add_row(
            s.session_id,
            s.summary[:60],
            str(s.message_count),
            s.git_branch or "-",
            (s.modified or "")[:16] or "-",
        )
    console.print(table)
    console.print("\n[dim]Use 'chatdesk chat --resume <session_id>' to continue one[/dim]")


@app.command()
def history(
    session_id: str = typer.Argument(..., help="Stored session id"),
    path: str = typer.Argument(None, help="Project directory (default: current)"),
    fork_at: str = typer.Option(None, "--fork-at", help="Stop at this message uuid"),
) -> None:
    """Replay a stored transcript."""
    config = _load()
    cwd = _resolve_path(path)
    reader = TranscriptReader(config.claude_projects_dir)
    try:
        events = asyncio.run(reader.read(cwd, session_id, fork_at))
    except TranscriptReadFailed as e:
        console.print(f"[red]Cannot read transcript:[/red] {e}")
        raise typer.Exit(1)

    bus = ChatEventBus()
    bus.subscribe(ChatRenderer(console))
    turn = TurnStateMachine(session_id, bus, StatusTracker())
    turn.replay_history(events, mode="forked" if fork_at else "resumed")


@app.command()
def time() -> None:
    """Show tracked time per project and overall."""
    config = _load()
    store = ActivityStore(config.projects_file)
    try:
        store.load()
    except ConfigError as e:
        console.print(f"[red]Cannot read time tracking:[/red] {e}")
        raise typer.Exit(1)

    tracker = ActivityTracker(store)
    if not config.projects:
        console.print("[dim]No projects configured in[/dim] " + str(config.projects_file))
    rows = {p.name: tracker.project_times(p.id) for p in config.projects}
    console.print(times_table(rows, tracker.global_times()))


def run() -> None:
    """Entry point wrapper that invokes the Typer app."""
    app()


if __name__ == "__main__":
    run()
