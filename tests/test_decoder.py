"""Tests for decoder module - wire messages to turn events."""

import pytest

from chatdesk.agent.decoder import StreamDecoder
from chatdesk.agent.protocol import BlockType, DeltaType, EventKind
from helpers import (
    block_stop,
    input_delta,
    message_start,
    message_stop,
    permission_request,
    result,
    stream,
    text_delta,
    text_start,
    tool_result,
    tool_start,
)


class TestStreamDecoder:
    """Tests for StreamDecoder."""

    @pytest.fixture
    def decoder(self):
        return StreamDecoder("chat-1")

    def decode_all(self, decoder, messages):
        events = []
        for message in messages:
            events.extend(decoder.decode(message))
        return events

    def test_text_block_sequence(self, decoder):
        """Text blocks decode to start, deltas and stop in order."""
        events = self.decode_all(
            decoder,
            [message_start(), text_start(0), text_delta("Hel"), text_delta("lo"), block_stop(0), message_stop()],
        )
        kinds = [e.kind for e in events]
        assert kinds == [
            EventKind.MESSAGE_START,
            EventKind.BLOCK_START,
            EventKind.BLOCK_DELTA,
            EventKind.BLOCK_DELTA,
            EventKind.BLOCK_STOP,
            EventKind.MESSAGE_STOP,
        ]
        assert events[2].delta_type == DeltaType.TEXT
        assert "".join(e.text for e in events if e.kind == EventKind.BLOCK_DELTA) == "Hello"
        assert events[4].block_type == BlockType.TEXT
        assert all(e.session_id == "chat-1" for e in events)

    def test_tool_input_buffered_until_stop(self, decoder):
        """Partial JSON is parsed once the block closes."""
        events = self.decode_all(
            decoder,
            [
                message_start(),
                tool_start(1, "tu-1", "Bash"),
                input_delta(1, '{"comm'),
                input_delta(1, 'and": "ls"}'),
            ],
        )
        assert decoder.has_buffer(1)
        assert all(e.tool_input is None for e in events)

        stop = decoder.decode(block_stop(1))[0]
        assert stop.kind == EventKind.BLOCK_STOP
        assert stop.tool_use_id == "tu-1"
        assert stop.tool_name == "Bash"
        assert stop.tool_input == {"command": "ls"}
        assert not decoder.has_buffer(1)

    def test_empty_tool_input(self, decoder):
        """A tool block with no fragments parses to an empty object."""
        self.decode_all(decoder, [message_start(), tool_start(0, "tu-1", "Read")])
        stop = decoder.decode(block_stop(0))[0]
        assert stop.tool_input == {}
        assert not stop.parse_failed

    def test_invalid_json_flags_parse_failure(self, decoder):
        """Malformed input keeps the raw text and does not raise."""
        self.decode_all(decoder, [message_start(), tool_start(0, "tu-1", "Edit"), input_delta(0, '{"file_path": ')])
        stop = decoder.decode(block_stop(0))[0]
        assert stop.parse_failed
        assert stop.tool_input is None
        assert stop.raw_input == '{"file_path": '

    def test_non_object_json_is_failure(self, decoder):
        """Input must be a JSON object."""
        self.decode_all(decoder, [message_start(), tool_start(0, "tu-1", "Edit"), input_delta(0, "[1, 2]")])
        assert decoder.decode(block_stop(0))[0].parse_failed

    def test_stop_without_start_is_dropped(self, decoder):
        """A content_block_stop with no open block yields nothing."""
        assert decoder.decode(block_stop(5)) == []

    def test_delta_without_index_uses_last_block(self, decoder):
        """Deltas missing an index go to the most recent block."""
        self.decode_all(decoder, [message_start(), tool_start(2, "tu-1", "Grep")])
        decoder.decode(stream({"type": "content_block_delta", "delta": {"type": "input_json_delta", "partial_json": '{"pattern": "x"}'}}))
        stop = decoder.decode(stream({"type": "content_block_stop"}))[0]
        assert stop.index == 2
        assert stop.tool_input == {"pattern": "x"}

    def test_subagent_blocks_are_separate(self, decoder):
        """Sub-agent blocks with the same index do not collide."""
        self.decode_all(
            decoder,
            [
                message_start(),
                tool_start(0, "task-1", "Task"),
                tool_start(0, "child-1", "Read", parent="task-1"),
                input_delta(0, '{"file_path": "/a"}', parent="task-1"),
                input_delta(0, '{"description": "look"}'),
            ],
        )
        assert decoder.open_buffers == 2
        child = decoder.decode(block_stop(0, parent="task-1"))[0]
        assert child.parent_tool_use_id == "task-1"
        assert child.is_subagent
        assert child.tool_input == {"file_path": "/a"}
        top = decoder.decode(block_stop(0))[0]
        assert top.tool_input == {"description": "look"}

    def test_message_start_drops_unterminated_blocks(self, decoder):
        """A new message forgets blocks left open by the previous one."""
        self.decode_all(decoder, [message_start(), tool_start(0, "tu-1", "Bash")])
        decoder.decode(message_start())
        assert decoder.open_buffers == 0

    def test_result_resets_buffers(self, decoder):
        """A top-level result clears every buffer."""
        self.decode_all(decoder, [message_start(), tool_start(0, "tu-1", "Bash"), input_delta(0, "{")])
        event = decoder.decode(result())[0]
        assert event.kind == EventKind.RESULT
        assert not event.is_error
        assert decoder.open_buffers == 0

    def test_result_error_flags(self, decoder):
        """Non-success subtypes are errors even without is_error."""
        event = decoder.decode(result("error_max_turns"))[0]
        assert event.is_error
        assert event.subtype == "error_max_turns"

    def test_ignored_deltas_and_blocks(self, decoder):
        """Signature deltas and unknown blocks produce nothing."""
        decoder.decode(message_start())
        assert decoder.decode(stream({"type": "content_block_delta", "index": 0, "delta": {"type": "signature_delta"}})) == []
        assert decoder.decode(stream({"type": "content_block_start", "index": 3, "content_block": {"type": "server_tool_use"}})) == []

    def test_thinking_delta(self, decoder):
        """Thinking deltas carry their text."""
        decoder.decode(message_start())
        decoder.decode(stream({"type": "content_block_start", "index": 0, "content_block": {"type": "thinking"}}))
        event = decoder.decode(
            stream({"type": "content_block_delta", "index": 0, "delta": {"type": "thinking_delta", "thinking": "hmm"}})
        )[0]
        assert event.block_type == BlockType.THINKING
        assert event.text == "hmm"

    def test_system_messages(self, decoder):
        """init and compact_boundary are decoded; other subtypes ignored."""
        assert decoder.decode({"type": "system", "subtype": "init"})[0].kind == EventKind.SYSTEM_INIT
        assert decoder.decode({"type": "system", "subtype": "compact_boundary"})[0].kind == EventKind.COMPACT_BOUNDARY
        assert decoder.decode({"type": "system", "subtype": "hook_response"}) == []

    def test_tool_result_and_permission(self, decoder):
        """Tool results and permission requests keep their ids."""
        tr = decoder.decode(tool_result("tu-9", is_error=True))[0]
        assert tr.kind == EventKind.TOOL_RESULT
        assert tr.tool_use_id == "tu-9"
        assert tr.is_error

        perm = decoder.decode(permission_request("perm-1", "Bash", {"command": "rm"}))[0]
        assert perm.kind == EventKind.PERMISSION_REQUEST
        assert perm.tool_name == "Bash"
        assert perm.tool_input == {"command": "rm"}

    def test_error_done_idle(self, decoder):
        """Terminal and informational messages decode directly."""
        error = decoder.decode({"type": "error", "error": "boom"})[0]
        assert error.kind == EventKind.ERROR
        assert error.text == "boom"
        assert decoder.decode({"type": "done"})[0].kind == EventKind.DONE
        assert decoder.decode({"type": "idle"})[0].kind == EventKind.IDLE

    @pytest.mark.parametrize(
        "message",
        [
            "not a dict",
            {"type": "stream_event"},
            {"type": "stream_event", "event": {"type": "content_block_start", "index": 0}},
            {"type": "tool_result"},
            {"type": "permission_request", "request_id": "", "tool_name": "Bash"},
            {"type": "mystery"},
        ],
    )
    def test_malformed_messages_dropped(self, decoder, message):
        """Bad input is dropped without raising."""
        assert decoder.decode(message) == []
