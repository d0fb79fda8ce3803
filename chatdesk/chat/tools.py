"""
Chatdesk - Tool Variants

The agent's tool set is open-ended. Each tool name maps to a ToolKind;
display detail and the expanded view are looked up per kind, and any
unknown tool falls back to GENERIC.
"""

import json
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

CARD_DETAIL_LIMIT = 80
SUBAGENT_DETAIL_LIMIT = 60
PERMISSION_DETAIL_LIMIT = 100
OUTPUT_PAGE_SIZE = 50


class ToolKind(Enum):
    """Tools with dedicated presentation. Everything else is GENERIC."""

    READ = "Read"
    WRITE = "Write"
    EDIT = "Edit"
    BASH = "Bash"
    GREP = "Grep"
    GLOB = "Glob"
    TASK = "Task"
    TODO_WRITE = "TodoWrite"
    ASK_USER_QUESTION = "AskUserQuestion"
    EXIT_PLAN_MODE = "ExitPlanMode"
    ENTER_PLAN_MODE = "EnterPlanMode"
    GENERIC = "*"


_BY_NAME = {k.value.lower(): k for k in ToolKind if k != ToolKind.GENERIC}

# Tools auto-approved when the session runs in acceptEdits mode
EDIT_TOOLS = frozenset({"Edit", "Write", "MultiEdit", "NotebookEdit"})


def classify(tool_name: str | None) -> ToolKind:
    """Map a tool name to its kind (case-insensitive)."""
    return _BY_NAME.get((tool_name or "").lower(), ToolKind.GENERIC)


def truncate_detail(detail: str, limit: int = CARD_DETAIL_LIMIT) -> str:
    """Keep the tail of long details: paths and commands end in the interesting part."""
    if len(detail) <= limit:
        return detail
    return "..." + detail[-(limit - 3):]


def display_detail(tool_name: str | None, tool_input: dict[str, Any] | None) -> str:
    """One-line summary of what a tool call is about."""
    if not tool_input:
        return ""
    kind = classify(tool_name)
    if kind == ToolKind.BASH:
        value = tool_input.get("command")
    elif kind in (ToolKind.READ, ToolKind.WRITE, ToolKind.EDIT):
        value = tool_input.get("file_path")
    elif kind in (ToolKind.GREP, ToolKind.GLOB):
        value = tool_input.get("pattern")
    elif kind == ToolKind.TASK:
        value = tool_input.get("description") or tool_input.get("subagent_type")
    else:
        value = None
        for key in ("file_path", "path", "command", "query", "pattern", "url"):
            if tool_input.get(key):
                value = tool_input[key]
                break
    return str(value) if value else ""


def tool_result_text(content: Any) -> str:
    """Normalise tool_result content (string or list of blocks) to text."""
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = []
        for block in content:
            if isinstance(block, dict):
                if block.get("type") == "text":
                    parts.append(block.get("text", ""))
                elif block.get("type") == "image":
                    parts.append("[image]")
            elif isinstance(block, str):
                parts.append(block)
        return "\n".join(parts)
    return json.dumps(content, default=str)


@dataclass
class DiffLine:
    """A numbered line in an expanded view."""

    number: int
    sign: str  # "+", "-" or " "
    text: str


@dataclass
class ExpandedView:
    """What an expanded tool card shows."""

    path: str = ""
    meta: str = ""
    lines: list[DiffLine] = field(default_factory=list)


def numbered(text: str, sign: str = " ", start: int = 1) -> list[DiffLine]:
    return [DiffLine(start + i, sign, line) for i, line in enumerate(text.split("\n"))]


def infer_line_offset(file_path: str, needle: str) -> int:
    """
    Line number at which needle starts in file_path.

    Returns 1 when the file can't be read or the text isn't found, which
    is the case once the edit has already been applied.
    """
    if not file_path or not needle:
        return 1
    try:
        content = Path(file_path).read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return 1
    idx = content.find(needle)
    if idx == -1:
        return 1
    return content.count("\n", 0, idx) + 1


def _expand_write(tool_input: dict[str, Any]) -> ExpandedView:
    return ExpandedView(
        path=tool_input.get("file_path", ""),
        lines=numbered(tool_input.get("content", ""), "+"),
    )


def _expand_edit(tool_input: dict[str, Any]) -> ExpandedView:
    path = tool_input.get("file_path", "")
    old = tool_input.get("old_string", "")
    new = tool_input.get("new_string", "")
    start = infer_line_offset(path, old)
    return ExpandedView(path=path, lines=numbered(old, "-", start) + numbered(new, "+", start))


def _expand_bash(tool_input: dict[str, Any]) -> ExpandedView:
    return ExpandedView(
        meta=tool_input.get("description", ""),
        lines=numbered(tool_input.get("command", "")),
    )


def _expand_read(tool_input: dict[str, Any]) -> ExpandedView:
    offset = int(tool_input.get("offset") or 1)
    limit = tool_input.get("limit")
    if limit:
        meta = f"lines {offset}–{offset + int(limit) - 1}"
    elif offset > 1:
        meta = f"from line {offset}"
    else:
        meta = ""
    return ExpandedView(path=tool_input.get("file_path", ""), meta=meta)


def _expand_search(tool_input: dict[str, Any]) -> ExpandedView:
    return ExpandedView(
        path=tool_input.get("pattern", ""),
        meta=tool_input.get("path", ""),
    )


def _expand_generic(tool_input: dict[str, Any]) -> ExpandedView:
    return ExpandedView(lines=numbered(json.dumps(tool_input, indent=2, default=str)))


_EXPANDERS: dict[ToolKind, Callable[[dict[str, Any]], ExpandedView]] = {
    ToolKind.WRITE: _expand_write,
    ToolKind.EDIT: _expand_edit,
    ToolKind.BASH: _expand_bash,
    ToolKind.READ: _expand_read,
    ToolKind.GREP: _expand_search,
    ToolKind.GLOB: _expand_search,
}


def expand(tool_name: str | None, tool_input: dict[str, Any] | None) -> ExpandedView:
    """Format a tool's parsed input for the expanded card."""
    expander = _EXPANDERS.get(classify(tool_name), _expand_generic)
    return expander(tool_input or {})


def paginate(output: str, page_size: int = OUTPUT_PAGE_SIZE) -> list[list[str]]:
    """Split tool output into pages of page_size lines."""
    lines = output.split("\n")
    if lines and lines[-1] == "":
        lines.pop()
    if not lines:
        return []
    return [lines[i : i + page_size] for i in range(0, len(lines), page_size)]
