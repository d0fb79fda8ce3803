"""Test doubles and wire message builders shared by the test modules."""

from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from chatdesk.agent.transport import AgentTransport, PermissionReply, SessionOptions


class FakeClock:
    """A settable wall clock."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _Timer:
    def __init__(self, due: datetime, seq: int, callback: Callable[[], None]):
        self.due = due
        self.seq = seq
        self.callback = callback
        self.cancelled = False

    def cancel(self) -> None:
        self.cancelled = True


class ManualScheduler:
    """Scheduler whose timers fire only when advance() moves the clock past them."""

    def __init__(self, clock: FakeClock):
        self.clock = clock
        self._timers: list[_Timer] = []
        self._seq = 0

    def call_later(self, delay: float, callback: Callable[[], None]) -> _Timer:
        self._seq += 1
        timer = _Timer(self.clock.now + timedelta(seconds=delay), self._seq, callback)
        self._timers.append(timer)
        return timer

    @property
    def pending(self) -> int:
        return sum(1 for t in self._timers if not t.cancelled)

    def advance(self, seconds: float) -> None:
        """Move the clock forward, firing due timers in order."""
        target = self.clock.now + timedelta(seconds=seconds)
        while True:
            due = [t for t in self._timers if not t.cancelled and t.due <= target]
            if not due:
                break
            timer = min(due, key=lambda t: (t.due, t.seq))
            self._timers.remove(timer)
            self.clock.now = max(self.clock.now, timer.due)
            timer.callback()
        self.clock.now = target

    def jump(self, seconds: float) -> None:
        """Move the clock without firing anything, like a suspended machine."""
        self.clock.now += timedelta(seconds=seconds)


class FakeTransport(AgentTransport):
    """Records what the controller sends; tests push wire messages through emit()."""

    def __init__(self, fail_open: Exception | None = None, fail_send: Exception | None = None):
        self.fail_open = fail_open
        self.fail_send = fail_send
        self.options: SessionOptions | None = None
        self.sink: Callable[[dict[str, Any]], None] | None = None
        self.turns: list[Any] = []
        self.replies: dict[str, PermissionReply] = {}
        self.interrupts = 0
        self.closed = False

    async def open(self, options, first_turn, sink) -> None:
        if self.fail_open is not None:
            raise self.fail_open
        self.options = options
        self.sink = sink
        self.turns.append(first_turn)

    async def send(self, turn) -> None:
        if self.fail_send is not None:
            raise self.fail_send
        self.turns.append(turn)

    async def interrupt(self) -> None:
        self.interrupts += 1

    def respond_permission(self, request_id, reply) -> None:
        self.replies[request_id] = reply

    async def close(self) -> None:
        self.closed = True

    def emit(self, message: dict[str, Any]) -> None:
        assert self.sink is not None, "transport was never opened"
        message.setdefault("session_id", self.options.session_id)
        self.sink(message)


# Wire message builders


def stream(event: dict[str, Any], parent: str | None = None) -> dict[str, Any]:
    return {"type": "stream_event", "event": event, "parent_tool_use_id": parent}


def message_start() -> dict[str, Any]:
    return stream({"type": "message_start", "message": {}})


def message_stop() -> dict[str, Any]:
    return stream({"type": "message_stop"})


def text_start(index: int = 0) -> dict[str, Any]:
    return stream({"type": "content_block_start", "index": index, "content_block": {"type": "text", "text": ""}})


def text_delta(text: str, index: int = 0) -> dict[str, Any]:
    return stream({"type": "content_block_delta", "index": index, "delta": {"type": "text_delta", "text": text}})


def block_stop(index: int = 0, parent: str | None = None) -> dict[str, Any]:
    return stream({"type": "content_block_stop", "index": index}, parent)


def tool_start(index: int, tool_use_id: str, name: str, parent: str | None = None) -> dict[str, Any]:
    return stream(
        {
            "type": "content_block_start",
            "index": index,
            "content_block": {"type": "tool_use", "id": tool_use_id, "name": name, "input": {}},
        },
        parent,
    )


def input_delta(index: int, fragment: str, parent: str | None = None) -> dict[str, Any]:
    return stream(
        {
            "type": "content_block_delta",
            "index": index,
            "delta": {"type": "input_json_delta", "partial_json": fragment},
        },
        parent,
    )


def tool_result(tool_use_id: str, content: Any = "ok", is_error: bool = False, parent: str | None = None):
    return {
        "type": "tool_result",
        "tool_use_id": tool_use_id,
        "content": content,
        "is_error": is_error,
        "parent_tool_use_id": parent,
    }


def result(subtype: str = "success", is_error: bool = False, **extra: Any) -> dict[str, Any]:
    return {"type": "result", "subtype": subtype, "is_error": is_error, **extra}


def permission_request(request_id: str, tool_name: str, tool_input: dict[str, Any] | None = None, **extra):
    return {
        "type": "permission_request",
        "request_id": request_id,
        "tool_name": tool_name,
        "input": tool_input or {},
        **extra,
    }
