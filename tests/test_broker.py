"""Tests for broker module - pending permission requests."""

from unittest.mock import MagicMock

import pytest

from chatdesk.chat.broker import (
    CLOSED_MESSAGE,
    SESSION_BYPASS,
    PermissionBroker,
    PermissionDecision,
    PermissionRequest,
)


def make_request(request_id="perm-1", session_id="chat-1", **kwargs):
    return PermissionRequest(request_id=request_id, session_id=session_id, tool_name="Bash", **kwargs)


class TestPermissionDecision:
    """Tests for PermissionDecision."""

    def test_allow_to_dict(self):
        """Allow carries the (possibly updated) input."""
        decision = PermissionDecision.allow({"command": "ls"})
        assert decision.allowed
        assert decision.to_dict() == {"behavior": "allow", "updatedInput": {"command": "ls"}}

    def test_deny_to_dict(self):
        """Deny carries a message."""
        decision = PermissionDecision.deny("nope")
        assert not decision.allowed
        assert decision.to_dict() == {"behavior": "deny", "message": "nope"}

    def test_always_allow_uses_suggestions(self):
        """Always-allow applies the request's own suggestions."""
        suggestion = {"type": "addRules", "rules": [{"toolName": "Bash"}], "behavior": "allow"}
        request = make_request(tool_input={"command": "ls"}, suggestions=[suggestion])
        decision = PermissionDecision.always_allow(request)
        assert decision.updated_permissions == [suggestion]
        assert decision.to_dict()["updatedPermissions"] == [suggestion]
        assert decision.mode_update() is None

    def test_always_allow_without_suggestions(self):
        """Without suggestions, always-allow switches the session to bypass."""
        decision = PermissionDecision.always_allow(make_request())
        assert decision.updated_permissions == [SESSION_BYPASS]
        assert decision.mode_update() == "bypassPermissions"

    def test_from_wire(self):
        """Wire requests map onto PermissionRequest."""
        request = PermissionRequest.from_wire(
            {
                "request_id": "perm-9",
                "tool_name": "Edit",
                "input": {"file_path": "/a"},
                "decision_reason": "outside cwd",
                "suggestions": [{"type": "setMode", "mode": "acceptEdits"}],
                "tool_use_id": "tu-1",
            },
            "chat-3",
        )
        assert request.session_id == "chat-3"
        assert request.tool_input == {"file_path": "/a"}
        assert request.decision_reason == "outside cwd"
        assert request.tool_use_id == "tu-1"


class TestPermissionBroker:
    """Tests for PermissionBroker."""

    @pytest.fixture
    def broker(self):
        return PermissionBroker()

    @pytest.fixture
    def listener(self):
        return MagicMock()

    def test_register_notifies_listener(self, broker, listener):
        """Registration stores the request and tells the listener."""
        request = make_request()
        broker.register(request, MagicMock(), listener)
        assert "perm-1" in broker
        assert broker.get("perm-1") is request
        listener.on_permission_registered.assert_called_once_with(request)

    def test_resolve_exactly_once(self, broker, listener):
        """The reply runs once; a second resolve returns False."""
        reply = MagicMock()
        broker.register(make_request(), reply, listener)
        decision = PermissionDecision.allow({})

        assert broker.resolve("perm-1", decision)
        assert not broker.resolve("perm-1", PermissionDecision.deny())
        reply.assert_called_once_with(decision)
        listener.on_permission_resolved.assert_called_once()
        assert len(broker) == 0

    def test_resolve_unknown(self, broker):
        """Unknown ids are ignored."""
        assert not broker.resolve("nope", PermissionDecision.deny())

    def test_duplicate_register_ignored(self, broker):
        """The first registration wins."""
        first, second = MagicMock(), MagicMock()
        broker.register(make_request(), first)
        broker.register(make_request(), second)
        broker.resolve("perm-1", PermissionDecision.deny())
        first.assert_called_once()
        second.assert_not_called()

    def test_pending_per_session_in_order(self, broker):
        """pending() lists a session's requests oldest first."""
        broker.register(make_request("a"), MagicMock())
        broker.register(make_request("b", session_id="other"), MagicMock())
        broker.register(make_request("c"), MagicMock())
        assert [r.request_id for r in broker.pending("chat-1")] == ["a", "c"]
        assert broker.has_pending("other")
        assert not broker.has_pending("nobody")

    def test_cancel_all_denies_session_requests(self, broker, listener):
        """cancel_all force-denies only the given session."""
        reply_a, reply_b = MagicMock(), MagicMock()
        broker.register(make_request("a"), reply_a, listener)
        broker.register(make_request("b", session_id="other"), reply_b)

        assert broker.cancel_all("chat-1") == 1
        decision = reply_a.call_args[0][0]
        assert decision.behavior == "deny"
        assert decision.message == CLOSED_MESSAGE
        assert listener.on_permission_resolved.call_args[0][2] is True
        reply_b.assert_not_called()
        assert "b" in broker

    def test_failing_reply_still_resolves(self, broker, listener):
        """A reply callback that raises does not keep the request pending."""
        broker.register(make_request(), MagicMock(side_effect=RuntimeError("gone")), listener)
        assert broker.resolve("perm-1", PermissionDecision.deny())
        assert "perm-1" not in broker
        listener.on_permission_resolved.assert_called_once()
