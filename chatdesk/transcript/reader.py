"""
Chatdesk - Transcript Reader

Reads the JSONL transcript the agent stores for each conversation and
turns it into history events for resume and fork. Tool results are
joined to their tool calls in a first pass, so each tool appears once
with its input and output.
"""

import asyncio
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any

from chatdesk.config import CLAUDE_PROJECTS_DIR
from chatdesk.exceptions import TranscriptReadFailed

logger = logging.getLogger(__name__)

_SKIPPED_TOOLS = {"TodoWrite"}


def encode_project_path(project_path: str) -> str:
    """Directory name the agent uses for a project's transcripts."""
    return project_path.replace(":", "-").replace("\\", "-").replace("/", "-")


class HistoryKind(Enum):
    USER = "user"
    ASSISTANT = "assistant"
    THINKING = "thinking"
    TOOL = "tool"
    SUBAGENT = "subagent"


@dataclass
class HistoryEvent:
    """One read-only item replayed from a transcript."""

    kind: HistoryKind
    text: str = ""
    uuid: str | None = None
    tool_use_id: str | None = None
    tool_name: str = ""
    tool_input: dict[str, Any] | None = None
    output: str | None = None
    is_error: bool = False
    image_count: int = 0


@dataclass
class StoredSession:
    """An entry of the agent's per-project session index."""

    session_id: str
    summary: str = "Untitled"
    first_prompt: str = ""
    message_count: int = 0
    created: str | None = None
    modified: str | None = None
    git_branch: str | None = None

    @classmethod
    def from_entry(cls, entry: dict[str, Any]) -> "StoredSession":
        return cls(
            session_id=entry["sessionId"],
            summary=entry.get("summary") or "Untitled",
            first_prompt=entry.get("firstPrompt") or "",
            message_count=int(entry.get("messageCount") or 0),
            created=entry.get("created"),
            modified=entry.get("modified"),
            git_branch=entry.get("gitBranch"),
        )


def _result_text(content: Any) -> str:
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        return "\n".join(
            b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"
        )
    return ""


def _parse_time(value: str | None) -> datetime:
    if not value:
        return datetime.min
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00")).replace(tzinfo=None)
    except ValueError:
        return datetime.min


@dataclass
class _Results:
    outputs: dict[str, tuple[str, bool]] = field(default_factory=dict)


class TranscriptReader:
    """Reads stored transcripts from the agent's projects directory."""

    def __init__(self, projects_dir: Path | None = None):
        self.projects_dir = projects_dir or CLAUDE_PROJECTS_DIR

    def transcript_path(self, cwd: str, session_id: str) -> Path:
        return self.projects_dir / encode_project_path(cwd) / f"{session_id}.jsonl"

    async def read(self, cwd: str, session_id: str, fork_anchor: str | None = None) -> list[HistoryEvent]:
        """
        Read a transcript as history events.

        With fork_anchor, the history ends at the message with that uuid.

        Raises:
            TranscriptReadFailed: If the transcript can't be read
        """
        path = self.transcript_path(cwd, session_id)
        records = await asyncio.to_thread(self._load, path)
        return self.to_history(records, fork_anchor)

    def _load(self, path: Path) -> list[dict[str, Any]]:
        try:
            with open(path, encoding="utf-8") as f:
                lines = f.readlines()
        except OSError as e:
            raise TranscriptReadFailed(f"Cannot read transcript: {e.strerror or e}", str(path)) from e

        records = []
        skipped = 0
        for line in lines:
            line = line.strip()
            if not line:
                continue
            try:
                record = json.loads(line)
            except json.JSONDecodeError:
                skipped += 1
                continue
            if isinstance(record, dict):
                records.append(record)
        if skipped:
            logger.warning(f"Skipped {skipped} malformed line(s) in {path.name}")
        return records

    def to_history(self, records: list[dict[str, Any]], fork_anchor: str | None = None) -> list[HistoryEvent]:
        """Two passes: join tool results, then emit events in transcript order."""
        records = [r for r in records if not r.get("isSidechain")]
        if fork_anchor:
            records = self._truncate(records, fork_anchor)

        results = _Results()
        for record in records:
            if record.get("type") != "user":
                continue
            content = (record.get("message") or {}).get("content")
            if not isinstance(content, list):
                continue
            for block in content:
                if isinstance(block, dict) and block.get("type") == "tool_result":
                    results.outputs[block.get("tool_use_id", "")] = (
                        _result_text(block.get("content")),
                        bool(block.get("is_error")),
                    )

        events: list[HistoryEvent] = []
        for record in records:
            record_type = record.get("type")
            if record_type == "user" and not record.get("isMeta"):
                event = self._user_event(record)
                if event is not None:
                    events.append(event)
            elif record_type == "assistant":
                events.extend(self._assistant_events(record, results))
        return events

    @staticmethod
    def _truncate(records: list[dict[str, Any]], anchor: str) -> list[dict[str, Any]]:
        for i, record in enumerate(records):
            if record.get("uuid") == anchor:
                return records[: i + 1]
        logger.warning(f"Fork anchor {anchor} not found; replaying the whole transcript")
        return records

    @staticmethod
    def _user_event(record: dict[str, Any]) -> HistoryEvent | None:
        content = (record.get("message") or {}).get("content")
        if isinstance(content, str):
            text, images = content, 0
        elif isinstance(content, list):
            # Tool results are folded into their tool cards.
            texts = [b.get("text", "") for b in content if isinstance(b, dict) and b.get("type") == "text"]
            images = sum(1 for b in content if isinstance(b, dict) and b.get("type") == "image")
            text = "\n".join(texts)
        else:
            return None
        if not text.strip() and not images:
            return None
        return HistoryEvent(HistoryKind.USER, text=text, uuid=record.get("uuid"), image_count=images)

    @staticmethod
    def _assistant_events(record: dict[str, Any], results: _Results) -> list[HistoryEvent]:
        content = (record.get("message") or {}).get("content")
        if not isinstance(content, list):
            return []
        uuid = record.get("uuid")
        events = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text" and block.get("text", "").strip():
                events.append(HistoryEvent(HistoryKind.ASSISTANT, text=block["text"], uuid=uuid))
            elif block_type == "thinking" and block.get("thinking", "").strip():
                events.append(HistoryEvent(HistoryKind.THINKING, text=block["thinking"], uuid=uuid))
            elif block_type == "tool_use":
                name = block.get("name", "")
                if name in _SKIPPED_TOOLS:
                    continue
                tool_use_id = block.get("id")
                output, is_error = results.outputs.get(tool_use_id or "", (None, False))
                events.append(
                    HistoryEvent(
                        HistoryKind.SUBAGENT if name == "Task" else HistoryKind.TOOL,
                        uuid=uuid,
                        tool_use_id=tool_use_id,
                        tool_name=name,
                        tool_input=block.get("input") if isinstance(block.get("input"), dict) else {},
                        output=output,
                        is_error=is_error,
                    )
                )
        return events


def list_stored_sessions(
    cwd: str,
    limit: int = 10,
    projects_dir: Path | None = None,
) -> list[StoredSession]:
    """Most recently modified stored sessions for a project, sidechains excluded."""
    index_path = (projects_dir or CLAUDE_PROJECTS_DIR) / encode_project_path(cwd) / "sessions-index.json"
    if not index_path.exists():
        return []
    try:
        with open(index_path, encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, json.JSONDecodeError) as e:
        logger.warning(f"Cannot read session index {index_path}: {e}")
        return []

    entries = data.get("entries") if isinstance(data, dict) else None
    if not isinstance(entries, list):
        return []
    sessions = []
    for entry in entries:
        if not isinstance(entry, dict) or entry.get("isSidechain") or not entry.get("sessionId"):
            continue
        sessions.append(StoredSession.from_entry(entry))
    sessions.sort(key=lambda s: _parse_time(s.modified), reverse=True)
    return sessions[:limit]
