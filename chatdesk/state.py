"""
Chatdesk - Session Status Machine

Tracks the externally observable status of a chat session so the UI can
show what the agent is doing and when the input bar is usable again.
"""

from collections.abc import Callable
from datetime import datetime
from enum import Enum


class SessionStatus(Enum):
    """
    Observable status of a chat session.

    State transitions:
    IDLE -> THINKING (message_start)
    THINKING -> RESPONDING (first text block)
    THINKING <-> WORKING (tool-use block open / no block open)
    Any -> WAITING (permission registered), WAITING -> previous (resolved)
    Any -> ERROR (stream error), ERROR -> IDLE (next user send)
    Any -> IDLE (result, turn concluded)
    """

    IDLE = "idle"
    THINKING = "thinking"
    RESPONDING = "responding"
    WORKING = "working"
    WAITING = "waiting"
    ERROR = "error"


_BUSY = {SessionStatus.THINKING, SessionStatus.RESPONDING, SessionStatus.WORKING}

# Valid status transitions
VALID_TRANSITIONS: dict[SessionStatus, set[SessionStatus]] = {
    SessionStatus.IDLE: _BUSY | {SessionStatus.WAITING, SessionStatus.ERROR},
    SessionStatus.THINKING: {
        SessionStatus.RESPONDING,
        SessionStatus.WORKING,
        SessionStatus.WAITING,
        SessionStatus.ERROR,
        SessionStatus.IDLE,
    },
    SessionStatus.RESPONDING: {
        SessionStatus.THINKING,
        SessionStatus.WORKING,
        SessionStatus.WAITING,
        SessionStatus.ERROR,
        SessionStatus.IDLE,
    },
    SessionStatus.WORKING: {
        SessionStatus.THINKING,
        SessionStatus.RESPONDING,
        SessionStatus.WAITING,
        SessionStatus.ERROR,
        SessionStatus.IDLE,
    },
    SessionStatus.WAITING: _BUSY | {SessionStatus.ERROR, SessionStatus.IDLE},
    SessionStatus.ERROR: {SessionStatus.IDLE, SessionStatus.WAITING},
}

StatusListener = Callable[[SessionStatus, SessionStatus, str], None]


class StatusTracker:
    """
    Holds the current status of one session and notifies a listener on change.

    Waiting is stacked on top of whatever the session was doing: the status
    in effect when the first permission request arrived is restored once
    the last one is resolved.
    """

    def __init__(self, listener: StatusListener | None = None):
        self.status = SessionStatus.IDLE
        self.label = ""
        self.changed_at = datetime.now()
        self._resume_to: SessionStatus | None = None
        self._listener = listener

    @property
    def is_busy(self) -> bool:
        return self.status in _BUSY or self.status == SessionStatus.WAITING

    def can_transition_to(self, new_status: SessionStatus) -> bool:
        """Check if transition to new_status is valid from current status."""
        return new_status in VALID_TRANSITIONS.get(self.status, set())

    def transition_to(self, new_status: SessionStatus, label: str = "") -> bool:
        """
        Attempt to transition to a new status.

        A transition to the current status only refreshes the label.

        Args:
            new_status: The target status
            label: Short activity text shown next to the status

        Returns:
            True if the status is now new_status, False if the move was invalid
        """
        if new_status == self.status:
            if label and label != self.label:
                self.label = label
                self._notify(self.status)
            return True
        if not self.can_transition_to(new_status):
            return False
        # A waiting session keeps the last busy status to come back to.
        if self.status == SessionStatus.WAITING and new_status in _BUSY:
            self._resume_to = new_status
            return True
        previous = self.status
        self.status = new_status
        self.label = label
        self.changed_at = datetime.now()
        if new_status != SessionStatus.WAITING:
            self._resume_to = None
        self._notify(previous)
        return True

    def require_transition(self, new_status: SessionStatus, label: str = "") -> None:
        """
        Transition to a new status, raising an exception if invalid.

        Raises:
            StateTransitionError: If the transition is not valid
        """
        from chatdesk.exceptions import StateTransitionError

        if not self.transition_to(new_status, label):
            valid_targets = VALID_TRANSITIONS.get(self.status, set())
            valid_names = ", ".join(sorted(s.name for s in valid_targets)) or "none"
            raise StateTransitionError(
                f"Invalid status transition: {self.status.name} -> {new_status.name}. "
                f"Valid transitions from {self.status.name}: {valid_names}",
                from_state=self.status.name,
                to_state=new_status.name,
            )

    def enter_waiting(self, label: str = "") -> None:
        """Suspend the current status while a permission decision is pending."""
        if self.status == SessionStatus.WAITING:
            return
        self._resume_to = self.status
        self.transition_to(SessionStatus.WAITING, label)

    def leave_waiting(self) -> None:
        """Restore the status that was in effect before waiting."""
        if self.status != SessionStatus.WAITING:
            return
        target = self._resume_to or SessionStatus.THINKING
        if target == SessionStatus.WAITING or target == SessionStatus.ERROR:
            target = SessionStatus.THINKING
        self._resume_to = None
        previous = self.status
        self.status = target
        self.label = ""
        self.changed_at = datetime.now()
        self._notify(previous)

    def _notify(self, previous: SessionStatus) -> None:
        if self._listener is not None:
            self._listener(previous, self.status, self.label)
