"""
Chat prompt with history and slash-command completion.

Uses prompt_toolkit to provide:
- Command history (arrow up/down), persisted across runs
- Tab completion for local commands and the agent's slash commands
"""

from __future__ import annotations

from pathlib import Path
from typing import TYPE_CHECKING

from prompt_toolkit import PromptSession
from prompt_toolkit.auto_suggest import AutoSuggestFromHistory
from prompt_toolkit.completion import Completer, Completion
from prompt_toolkit.history import FileHistory
from prompt_toolkit.styles import Style

if TYPE_CHECKING:
    from prompt_toolkit.document import Document

    from chatdesk.chat.registry import SlashCommandCache


# Commands handled by the shell itself
LOCAL_COMMANDS = {
    "/help": "Show available commands",
    "/quit": "Close the session and exit",
    "/exit": "Close the session and exit",
    "/stop": "Interrupt the running turn",
    "/mode": "Show or change the permission mode",
    "/status": "Show session status",
    "/time": "Show tracked time",
}


class ChatCompleter(Completer):
    """Completes local commands first, then the slash commands the agent reported."""

    def __init__(self, slash_commands: SlashCommandCache | None = None):
        self.slash_commands = slash_commands

    def get_completions(self, document: Document, complete_event):
        text = document.text_before_cursor
        if not text.startswith("/") or " " in text:
            return

        for cmd, desc in LOCAL_COMMANDS.items():
            if cmd.startswith(text):
                yield Completion(cmd, start_position=-len(text), display_meta=desc)

        if self.slash_commands is None:
            return
        for cmd in self.slash_commands.matching(text):
            if cmd not in LOCAL_COMMANDS:
                yield Completion(cmd, start_position=-len(text), display_meta="agent")


def get_history_path() -> Path:
    """Get path to command history file."""
    chatdesk_dir = Path.home() / ".chatdesk"
    chatdesk_dir.mkdir(exist_ok=True)
    return chatdesk_dir / "history"


def create_prompt_session(slash_commands: SlashCommandCache | None = None) -> PromptSession:
    """
    Create a prompt session with history and completion.

    Args:
        slash_commands: Shared cache of the agent's slash commands

    Returns:
        Configured PromptSession
    """
    style = Style.from_dict({"prompt": "ansicyan bold"})

    session: PromptSession = PromptSession(
        history=FileHistory(str(get_history_path())),
        auto_suggest=AutoSuggestFromHistory(),
        completer=ChatCompleter(slash_commands),
        complete_while_typing=False,  # Only complete on Tab
        style=style,
    )
    return session
