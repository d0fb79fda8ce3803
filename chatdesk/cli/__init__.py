"""
Chatdesk CLI components.

Split into focused modules:
- commands.py: Typer entry points (chat, sessions, history, time)
- shell.py: Interactive chat loop and service ownership
- render.py: Rich rendering of chat artifacts
- prompt.py: Prompt with history and slash-command completion
"""

from chatdesk.cli.commands import app, run
from chatdesk.cli.prompt import LOCAL_COMMANDS, ChatCompleter, create_prompt_session
from chatdesk.cli.render import ChatRenderer, format_duration
from chatdesk.cli.shell import ChatShell, decide

__all__ = [
    "app",
    "run",
    "LOCAL_COMMANDS",
    "ChatCompleter",
    "create_prompt_session",
    "ChatRenderer",
    "format_duration",
    "ChatShell",
    "decide",
]
