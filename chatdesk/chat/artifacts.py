"""
Chatdesk - Turn Artifacts

Everything a chat view renders: user and assistant messages, thinking,
tool and sub-agent cards, the todo widget, permission cards, notices
and errors. Artifacts are plain dataclasses owned by the turn state
machine; the UI receives them through the event bus and re-renders on
update.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from chatdesk.agent.protocol import mint_id
from chatdesk.chat.tools import (
    CARD_DETAIL_LIMIT,
    OUTPUT_PAGE_SIZE,
    PERMISSION_DETAIL_LIMIT,
    SUBAGENT_DETAIL_LIMIT,
    ExpandedView,
    ToolKind,
    classify,
    display_detail,
    expand,
    paginate,
    truncate_detail,
)

CURSOR_GLYPH = "▌"


def _artifact_id() -> str:
    return mint_id("art")


@dataclass
class Artifact:
    """Base class for anything rendered in the chat view."""

    id: str = field(default_factory=_artifact_id, kw_only=True)
    history: bool = field(default=False, kw_only=True)

    @property
    def kind(self) -> str:
        return type(self).__name__


@dataclass
class UserMessage(Artifact):
    text: str
    image_count: int = 0
    queued: bool = False


@dataclass
class AssistantText(Artifact):
    """Streaming text block; `streaming` is true until the block stops."""

    text: str = ""
    streaming: bool = True

    @property
    def rendered(self) -> str:
        return self.text + CURSOR_GLYPH if self.streaming else self.text

    def finalize(self) -> None:
        self.streaming = False


@dataclass
class ThinkingBlock(Artifact):
    """Collapsed thinking, shown only on demand."""

    text: str = ""
    collapsed: bool = True


@dataclass
class ToolCard(Artifact):
    tool_use_id: str | None
    tool_name: str
    detail: str = ""
    tool_input: dict[str, Any] | None = None
    output: str | None = None
    is_error: bool = False
    complete: bool = False

    @property
    def tool_kind(self) -> ToolKind:
        return classify(self.tool_name)

    @property
    def expandable(self) -> bool:
        return self.tool_input is not None

    def set_input(self, tool_input: dict[str, Any]) -> None:
        self.tool_input = tool_input
        self.detail = truncate_detail(display_detail(self.tool_name, tool_input), CARD_DETAIL_LIMIT)

    def set_raw_input(self, raw: str) -> None:
        """Unparseable input: keep the raw text as detail."""
        self.detail = truncate_detail(raw.replace("\n", " "), CARD_DETAIL_LIMIT)

    def expanded(self) -> ExpandedView:
        return expand(self.tool_name, self.tool_input)

    def output_pages(self, page_size: int = OUTPUT_PAGE_SIZE) -> list[list[str]]:
        return paginate(self.output or "", page_size)


@dataclass
class MiniToolCard:
    """A child tool call shown inside a sub-agent card."""

    tool_use_id: str | None
    tool_name: str
    detail: str = ""
    complete: bool = False


@dataclass
class SubagentCard(Artifact):
    tool_use_id: str
    agent_type: str = ""
    description: str = ""
    activity: str = ""
    children: dict[str, MiniToolCard] = field(default_factory=dict)
    output: str | None = None
    complete: bool = False

    def set_input(self, tool_input: dict[str, Any]) -> None:
        self.agent_type = tool_input.get("subagent_type", self.agent_type)
        self.description = tool_input.get("description", self.description)

    def add_child(self, tool_use_id: str | None, tool_name: str) -> MiniToolCard:
        key = tool_use_id or f"{tool_name}-{len(self.children)}"
        child = self.children.get(key)
        if child is None:
            child = MiniToolCard(tool_use_id=tool_use_id, tool_name=tool_name)
            self.children[key] = child
        self.activity = f"{tool_name}..."
        return child

    def update_child(self, tool_use_id: str | None, tool_input: dict[str, Any]) -> None:
        child = self.children.get(tool_use_id or "")
        if child is None:
            return
        child.detail = truncate_detail(
            display_detail(child.tool_name, tool_input), SUBAGENT_DETAIL_LIMIT
        )
        if child.detail:
            self.activity = f"{child.tool_name}: {child.detail}"

    def complete_child(self, tool_use_id: str | None) -> bool:
        child = self.children.get(tool_use_id or "")
        if child is None or child.complete:
            return False
        child.complete = True
        return True

    def finish(self, output: str | None = None) -> None:
        """Complete the card and every child still running."""
        self.complete = True
        if output is not None:
            self.output = output
        for child in self.children.values():
            child.complete = True
        self.activity = ""


def _todo_text(item: dict[str, Any]) -> str:
    for key in ("content", "subject", "text", "title", "description", "activeForm"):
        if item.get(key):
            return str(item[key])
    return ""


@dataclass
class TodoItem:
    text: str
    status: str = "pending"  # pending, in_progress, completed
    active_form: str = ""

    @property
    def label(self) -> str:
        if self.status == "in_progress" and self.active_form:
            return self.active_form
        return self.text


@dataclass
class TodoWidget(Artifact):
    items: list[TodoItem] = field(default_factory=list)

    def update(self, todos: list[dict[str, Any]]) -> None:
        self.items = [
            TodoItem(
                text=_todo_text(t),
                status=t.get("status", "pending"),
                active_form=t.get("activeForm", ""),
            )
            for t in todos
            if isinstance(t, dict)
        ]

    @property
    def completed(self) -> int:
        return sum(1 for i in self.items if i.status == "completed")

    @property
    def total(self) -> int:
        return len(self.items)

    @property
    def percent(self) -> int:
        return round(self.completed / self.total * 100) if self.items else 0

    @property
    def done(self) -> bool:
        return bool(self.items) and self.completed == self.total

    @property
    def active_text(self) -> str:
        for item in self.items:
            if item.status == "in_progress":
                return item.label
        return "All done" if self.done else ""


class PermissionVariant(Enum):
    TOOL = "tool"
    QUESTION = "question"
    PLAN = "plan"


@dataclass
class PermissionCard(Artifact):
    request_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    decision_reason: str | None = None
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    resolved: bool = False
    disabled: bool = False
    outcome: str | None = None  # "allow", "always-allow", "deny"

    variant = PermissionVariant.TOOL

    @property
    def detail(self) -> str:
        return truncate_detail(display_detail(self.tool_name, self.tool_input), PERMISSION_DETAIL_LIMIT)

    def mark_resolved(self, outcome: str | None, disabled: bool = False) -> None:
        self.resolved = True
        self.outcome = outcome
        self.disabled = disabled


@dataclass
class QuestionCard(PermissionCard):
    """
    Structured questions asked by the agent, answered one step at a time.

    Each answer is the user's own text if given, else the selected option
    labels joined with ", ", else the first option's label.
    """

    step: int = 0
    answers: dict[str, str] = field(default_factory=dict)
    _selected: set[str] = field(default_factory=set, repr=False)
    _custom: str = field(default="", repr=False)

    variant = PermissionVariant.QUESTION

    @property
    def questions(self) -> list[dict[str, Any]]:
        return list(self.tool_input.get("questions") or [])

    @property
    def current(self) -> dict[str, Any] | None:
        qs = self.questions
        return qs[self.step] if self.step < len(qs) else None

    @property
    def finished(self) -> bool:
        return self.step >= len(self.questions)

    def select(self, label: str) -> None:
        """Toggle an option (multi-select) or pick it (single-select)."""
        question = self.current
        if question is None:
            return
        if question.get("multiSelect"):
            if label in self._selected:
                self._selected.discard(label)
            else:
                self._selected.add(label)
        else:
            self._selected = {label}

    def set_custom_answer(self, text: str) -> None:
        self._custom = text.strip()

    def _collect(self) -> str:
        question = self.current or {}
        if self._custom:
            return self._custom
        labels = [o.get("label", "") for o in question.get("options") or []]
        if self._selected:
            ordered = [label for label in labels if label in self._selected]
            ordered += sorted(self._selected - set(ordered))
            return ", ".join(ordered)
        return labels[0] if labels else ""

    def next(self) -> bool:
        """Record the current answer and advance. Returns True when all are answered."""
        question = self.current
        if question is not None:
            self.answers[question.get("question", f"q{self.step}")] = self._collect()
            self.step += 1
            self._selected = set()
            self._custom = ""
        return self.finished

    def updated_input(self) -> dict[str, Any]:
        return {"questions": self.questions, "answers": dict(self.answers)}


@dataclass
class PlanCard(PermissionCard):
    plan_text: str = ""

    variant = PermissionVariant.PLAN

    @property
    def is_exit(self) -> bool:
        return classify(self.tool_name) == ToolKind.EXIT_PLAN_MODE


@dataclass
class ErrorArtifact(Artifact):
    message: str
    error_type: str = ""


@dataclass
class SystemNotice(Artifact):
    text: str


@dataclass
class HistoryDivider(Artifact):
    mode: str = "resumed"  # "resumed" or "forked"

    @property
    def text(self) -> str:
        return "Conversation forked" if self.mode == "forked" else "Conversation resumed"
