"""Tests for exception hierarchy."""

import pytest

from chatdesk.exceptions import (
    ChatDeskError,
    ConfigError,
    DuplicateSessionError,
    PartialJSONParseFailed,
    ProjectNotFoundError,
    ResultError,
    SanitizerDropped,
    SessionClosedError,
    SessionError,
    SessionNotFoundError,
    SessionSendFailed,
    SessionStartFailed,
    StateTransitionError,
    StreamError,
    TranscriptReadFailed,
)


class TestChatDeskError:
    """Tests for base ChatDeskError."""

    def test_basic_error(self):
        """Test basic error creation."""
        err = ChatDeskError("Something went wrong")
        assert err.message == "Something went wrong"
        assert err.details == {}
        assert str(err) == "Something went wrong"

    def test_error_with_details(self):
        """Test error with details dict."""
        err = ChatDeskError("Error occurred", {"code": 500, "reason": "internal"})
        assert err.details == {"code": 500, "reason": "internal"}
        assert "code" in str(err)
        assert "500" in str(err)


class TestConfigErrors:
    """Tests for configuration errors."""

    def test_config_error(self):
        """Test ConfigError inherits from ChatDeskError."""
        err = ConfigError("Bad config")
        assert isinstance(err, ChatDeskError)

    def test_project_not_found_error(self):
        """Test ProjectNotFoundError inherits from ConfigError."""
        err = ProjectNotFoundError("Project not found")
        assert isinstance(err, ConfigError)
        assert isinstance(err, ChatDeskError)


class TestSessionErrors:
    """Tests for session lifecycle errors."""

    def test_start_failed(self):
        """SessionStartFailed keeps the session id and cause."""
        err = SessionStartFailed("Refused", "chat-1", cause="auth")
        assert isinstance(err, SessionError)
        assert err.session_id == "chat-1"
        assert err.cause == "auth"
        assert err.details == {"session_id": "chat-1", "cause": "auth"}

    def test_send_failed(self):
        """SessionSendFailed keeps the session id."""
        err = SessionSendFailed("Not delivered", "chat-2")
        assert isinstance(err, SessionError)
        assert err.session_id == "chat-2"
        assert err.cause is None

    @pytest.mark.parametrize(
        "cls", [SessionNotFoundError, DuplicateSessionError, SessionClosedError]
    )
    def test_registry_errors_are_session_errors(self, cls):
        """Registry and lifecycle errors share the SessionError base."""
        assert isinstance(cls("x"), SessionError)


class TestStreamErrors:
    """Tests for stream and result errors."""

    def test_stream_error(self):
        """StreamError records the session when known."""
        err = StreamError("pipe closed", session_id="chat-1")
        assert err.session_id == "chat-1"
        assert err.details == {"session_id": "chat-1"}
        assert StreamError("pipe closed").details == {}

    def test_result_error_known_subtype(self):
        """Known subtypes map to fixed messages."""
        err = ResultError("error_max_turns")
        assert err.user_message() == "Maximum number of turns reached"
        assert err.details["subtype"] == "error_max_turns"

    def test_result_error_joins_errors(self):
        """Unknown subtypes show the reported errors."""
        err = ResultError("error_custom", ["first", "", "second"])
        assert err.user_message() == "first\nsecond"

    def test_result_error_falls_back_to_subtype(self):
        """Without errors, the subtype itself is shown."""
        assert ResultError("error_custom").user_message() == "error_custom"
        assert ResultError("").subtype == "error"

    def test_partial_json_parse_failed(self):
        """Parse failures keep index and raw text."""
        err = PartialJSONParseFailed("bad json", 2, '{"a":')
        assert err.index == 2
        assert err.raw == '{"a":'
        assert err.details["raw_length"] == 5


class TestOtherErrors:
    """Tests for transcript, sanitizer and state errors."""

    def test_transcript_read_failed(self):
        """TranscriptReadFailed keeps the path."""
        err = TranscriptReadFailed("missing", "/tmp/x.jsonl")
        assert err.path == "/tmp/x.jsonl"

    def test_sanitizer_dropped(self):
        """SanitizerDropped carries per-category counts."""
        counts = {"totals": 1, "dates": 0, "segments": 3}
        err = SanitizerDropped("cleaned", counts)
        assert err.counts == counts
        assert err.details["counts"] == counts

    def test_state_transition_error(self):
        """StateTransitionError includes state info."""
        err = StateTransitionError(
            "Invalid transition",
            from_state="IDLE",
            to_state="IDLE",
        )
        assert err.from_state == "IDLE"
        assert err.details["to_state"] == "IDLE"

    def test_catch_all_chatdesk_errors(self):
        """All custom errors can be caught with ChatDeskError."""
        errors = [
            ConfigError("config"),
            SessionStartFailed("start", "s"),
            StreamError("stream"),
            ResultError("error_max_turns"),
            TranscriptReadFailed("read", "p"),
            SanitizerDropped("clean", {}),
        ]
        for err in errors:
            with pytest.raises(ChatDeskError):
                raise err
