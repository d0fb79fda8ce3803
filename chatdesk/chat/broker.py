"""
Chatdesk - Permission Broker

Pending permission requests keyed by request id. The agent is suspended
on each request until the user decides; the broker makes sure every
request gets exactly one answer, including the forced denials issued
when a session closes.
"""

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Protocol

from chatdesk.logging import PermissionLogEntry, now_iso, permission_logger

logger = logging.getLogger(__name__)

DENY_MESSAGE = "User denied this action"
PLAN_REJECT_MESSAGE = "User rejected the plan"
CLOSED_MESSAGE = "Session closed"

# Used for "always allow" when the request carries no suggestions
SESSION_BYPASS = {"type": "setMode", "mode": "bypassPermissions", "destination": "session"}


@dataclass
class PermissionRequest:
    """A tool invocation waiting for the user's decision."""

    request_id: str
    session_id: str
    tool_name: str
    tool_input: dict[str, Any] = field(default_factory=dict)
    decision_reason: str | None = None
    suggestions: list[dict[str, Any]] = field(default_factory=list)
    tool_use_id: str | None = None
    created_at: float = field(default_factory=time.monotonic)

    @classmethod
    def from_wire(cls, message: dict[str, Any], session_id: str) -> "PermissionRequest":
        return cls(
            request_id=message["request_id"],
            session_id=session_id,
            tool_name=message.get("tool_name", ""),
            tool_input=dict(message.get("input") or {}),
            decision_reason=message.get("decision_reason"),
            suggestions=list(message.get("suggestions") or []),
            tool_use_id=message.get("tool_use_id"),
        )


@dataclass
class PermissionDecision:
    """Either {allow, updated_input, updated_permissions?} or {deny, message}."""

    behavior: str
    updated_input: dict[str, Any] | None = None
    updated_permissions: list[dict[str, Any]] | None = None
    message: str = ""

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    @classmethod
    def allow(
        cls,
        updated_input: dict[str, Any] | None = None,
        updated_permissions: list[dict[str, Any]] | None = None,
    ) -> "PermissionDecision":
        return cls("allow", updated_input=updated_input, updated_permissions=updated_permissions)

    @classmethod
    def deny(cls, message: str = DENY_MESSAGE) -> "PermissionDecision":
        return cls("deny", message=message)

    @classmethod
    def always_allow(cls, request: PermissionRequest) -> "PermissionDecision":
        """Allow, and keep allowing: the request's own suggestions, else a session bypass."""
        updates = [dict(s) for s in request.suggestions] or [dict(SESSION_BYPASS)]
        return cls.allow(request.tool_input, updates)

    def mode_update(self) -> str | None:
        """The session-scoped permission mode this decision switches to, if any."""
        for update in self.updated_permissions or []:
            if update.get("type") == "setMode" and update.get("destination", "session") == "session":
                return update.get("mode")
        return None

    def to_dict(self) -> dict[str, Any]:
        if self.allowed:
            data: dict[str, Any] = {"behavior": "allow", "updatedInput": self.updated_input or {}}
            if self.updated_permissions:
                data["updatedPermissions"] = self.updated_permissions
            return data
        return {"behavior": "deny", "message": self.message}


class PermissionListener(Protocol):
    """Receives broker lifecycle notifications for one session."""

    def on_permission_registered(self, request: PermissionRequest) -> None: ...

    def on_permission_resolved(
        self, request: PermissionRequest, decision: PermissionDecision, forced: bool
    ) -> None: ...


Reply = Callable[[PermissionDecision], None]


@dataclass
class _Pending:
    request: PermissionRequest
    reply: Reply
    listener: PermissionListener | None


class PermissionBroker:
    """
    Process-wide table of pending permission requests.

    Nothing here blocks: the agent side supplies a reply callback when
    registering, and resolve() invokes it once.
    """

    def __init__(self) -> None:
        self._pending: dict[str, _Pending] = {}

    def __len__(self) -> int:
        return len(self._pending)

    def __contains__(self, request_id: object) -> bool:
        return request_id in self._pending

    def get(self, request_id: str) -> PermissionRequest | None:
        entry = self._pending.get(request_id)
        return entry.request if entry else None

    def pending(self, session_id: str) -> list[PermissionRequest]:
        """Pending requests for a session, oldest first."""
        return [e.request for e in self._pending.values() if e.request.session_id == session_id]

    def has_pending(self, session_id: str) -> bool:
        return any(e.request.session_id == session_id for e in self._pending.values())

    def register(
        self,
        request: PermissionRequest,
        reply: Reply,
        listener: PermissionListener | None = None,
    ) -> None:
        """Store a request and tell the session's listener a decision is needed."""
        if request.request_id in self._pending:
            logger.warning(f"Permission request {request.request_id} registered twice; ignoring")
            return
        self._pending[request.request_id] = _Pending(request, reply, listener)
        logger.debug(f"Permission {request.request_id} pending for {request.tool_name}")
        permission_logger.info(
            PermissionLogEntry(
                timestamp=now_iso(),
                session_id=request.session_id,
                request_id=request.request_id,
                event_type="registered",
                tool_name=request.tool_name,
            ).to_json()
        )
        if listener is not None:
            listener.on_permission_registered(request)

    def resolve(self, request_id: str, decision: PermissionDecision) -> bool:
        """
        Apply a decision exactly once.

        Returns:
            True if the request was pending, False for unknown or already
            resolved ids
        """
        return self._resolve(request_id, decision, forced=False)

    def cancel_all(self, session_id: str, message: str = CLOSED_MESSAGE) -> int:
        """Deny every pending request of a session. Returns how many were denied."""
        ids = [rid for rid, e in self._pending.items() if e.request.session_id == session_id]
        for request_id in ids:
            self._resolve(request_id, PermissionDecision.deny(message), forced=True)
        if ids:
            logger.info(f"Force-denied {len(ids)} permission request(s) for {session_id}")
        return len(ids)

    def _resolve(self, request_id: str, decision: PermissionDecision, forced: bool) -> bool:
        entry = self._pending.pop(request_id, None)
        if entry is None:
            logger.debug(f"Permission {request_id} already resolved or unknown")
            return False

        request = entry.request
        permission_logger.info(
            PermissionLogEntry(
                timestamp=now_iso(),
                session_id=request.session_id,
                request_id=request_id,
                event_type="cancelled" if forced else "resolved",
                tool_name=request.tool_name,
                behavior=decision.behavior,
                mode_update=decision.mode_update(),
                latency_ms=int((time.monotonic() - request.created_at) * 1000),
                message=decision.message or None,
            ).to_json()
        )
        try:
            entry.reply(decision)
        except Exception as e:
            logger.error(f"Failed to deliver permission decision {request_id}: {e}")
        if entry.listener is not None:
            entry.listener.on_permission_resolved(request, decision, forced)
        return True
